"""Projector interface, errors and shared write helpers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar, Protocol

from stake_event_indexer.events.models import EventKind, RawEvent
from stake_event_indexer.storage.repos import (
    ContractEventDTO,
    ContractEventRepository,
    NotificationDTO,
    NotificationRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class ProjectionError(Exception):
    """Base exception for projection errors."""


class ProjectionWriteError(ProjectionError):
    """Raised when the store rejects a projection write."""

    def __init__(self, event: RawEvent, cause: Exception) -> None:
        super().__init__(
            f"Failed to project {event.kind.value} tx={event.transaction_hash} "
            f"index={event.log_index}: {cause}"
        )
        self.event = event
        self.cause = cause


class Projector(Protocol):
    """Applies one event kind to the read-models.

    `apply` must be idempotent: applying the same event twice leaves the
    store as if it had been applied once.
    """

    kind: ClassVar[EventKind]

    async def apply(self, session: AsyncSession, event: RawEvent) -> None: ...


def contract_event_dto(event: RawEvent) -> ContractEventDTO:
    amount = event.amount_wei
    return ContractEventDTO(
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        event_name=event.kind.event_name,
        event_kind=event.kind.value,
        contract_address=event.contract_address,
        block_number=event.block_number,
        user_address=event.user_address,
        amount_wei=str(amount) if amount is not None else None,
        observed_at=event.observed_at,
        arguments=dict(event.arguments),
    )


async def record_contract_event(session: AsyncSession, event: RawEvent) -> bool:
    """Write the raw event row; a no-op when the identity already exists."""
    inserted = await ContractEventRepository(session).upsert(contract_event_dto(event))
    if not inserted:
        logger.debug(
            "Contract event tx=%s index=%d already recorded",
            event.transaction_hash,
            event.log_index,
        )
    return inserted


async def notify_once(
    session: AsyncSession,
    event: RawEvent,
    *,
    wallet: str,
    title: str,
    message: str,
    kind: str,
) -> bool:
    """Create the notification for `event` unless one already exists."""
    return await NotificationRepository(session).insert_if_absent(
        NotificationDTO(
            user_wallet=wallet,
            title=title,
            message=message,
            kind=kind,
            source_transaction_hash=event.transaction_hash,
            source_log_index=event.log_index,
        )
    )
