"""Per-kind projectors.

Every projector records the raw event first. Staking events additionally
refresh the wallet aggregate, the daily rollup and create one notification.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar

from stake_event_indexer.events.models import (
    EventKind,
    RawEvent,
    RewardPayload,
    StakePayload,
    TransferPayload,
    format_ether,
)
from stake_event_indexer.projector.aggregates import refresh_daily, refresh_user, utc_day
from stake_event_indexer.projector.base import notify_once, record_contract_event

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

NOTIFICATION_SUCCESS = "success"
NOTIFICATION_INFO = "info"


class _StakingProjector:
    """Shared flow for events emitted by the staking contract."""

    kind: ClassVar[EventKind]
    title: ClassVar[str]
    message_template: ClassVar[str]

    async def apply(self, session: AsyncSession, event: RawEvent) -> None:
        payload = event.payload
        if not isinstance(payload, (StakePayload, RewardPayload)):
            raise TypeError(f"{type(self).__name__} cannot apply {type(payload).__name__}")

        await record_contract_event(session, event)
        await refresh_user(session, payload.user)
        await refresh_daily(session, utc_day(event.observed_at))

        created = await notify_once(
            session,
            event,
            wallet=payload.user,
            title=self.title,
            message=self.message_template.format(amount=format_ether(payload.amount_wei)),
            kind=NOTIFICATION_SUCCESS,
        )
        if created:
            logger.info(
                "%s: %s %s (block %d)",
                self.title,
                payload.user,
                format_ether(payload.amount_wei),
                event.block_number,
            )


class StakeOpenedProjector(_StakingProjector):
    kind = EventKind.STAKE_OPENED
    title = "Stake Successful"
    message_template = "You have successfully staked {amount} ETH"


class StakeClosedProjector(_StakingProjector):
    kind = EventKind.STAKE_CLOSED
    title = "Unstake Successful"
    message_template = "You have successfully unstaked {amount} ETH"


class RewardClaimedProjector(_StakingProjector):
    kind = EventKind.REWARD_CLAIMED
    title = "Rewards Claimed"
    message_template = "You have claimed {amount} MNT tokens as rewards"


class TokenTransferProjector:
    """Records reward token transfers.

    Only transfers sent by the staking contract are reward distributions and
    get a notification for the recipient.
    """

    kind = EventKind.TOKEN_TRANSFER

    def __init__(self, stake_contract_address: str) -> None:
        self._stake_contract = stake_contract_address.lower()

    async def apply(self, session: AsyncSession, event: RawEvent) -> None:
        payload = event.payload
        if not isinstance(payload, TransferPayload):
            raise TypeError(f"TokenTransferProjector cannot apply {type(payload).__name__}")

        await record_contract_event(session, event)
        if payload.sender != self._stake_contract:
            return

        amount = format_ether(payload.amount_wei)
        created = await notify_once(
            session,
            event,
            wallet=payload.recipient,
            title="Reward Distributed",
            message=f"{amount} MNT was sent to your wallet",
            kind=NOTIFICATION_INFO,
        )
        if created:
            logger.info("Reward distributed: %s MNT to %s", amount, payload.recipient)
