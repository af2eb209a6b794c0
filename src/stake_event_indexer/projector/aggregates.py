"""Recompute per-user and daily aggregates from the contract event log.

Aggregates are always rebuilt from history instead of being incremented, so
replaying an event (or a projection/checkpoint write that was not atomic)
cannot double count. The folding happens in SQL; only per-kind totals are
read back.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from stake_event_indexer.events.models import EventKind, wei_to_ether
from stake_event_indexer.storage.repos import (
    ContractEventRepository,
    DailyStatsDTO,
    DailyStatsRepository,
    KindTotals,
    UserAggregateDTO,
    UserRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

STAKE_KINDS = (EventKind.STAKE_OPENED.value, EventKind.STAKE_CLOSED.value)
AGGREGATE_KINDS = (*STAKE_KINDS, EventKind.REWARD_CLAIMED.value)

_EMPTY = KindTotals()


def _amount(totals: Mapping[str, KindTotals], kind: EventKind) -> int:
    return totals.get(kind.value, _EMPTY).amount_wei


def _net_staked_wei(totals: Mapping[str, KindTotals]) -> int:
    return _amount(totals, EventKind.STAKE_OPENED) - _amount(totals, EventKind.STAKE_CLOSED)


def build_user_aggregate(
    wallet_address: str, totals: Mapping[str, KindTotals]
) -> UserAggregateDTO:
    """Turn a wallet's per-kind totals into its aggregate."""
    observed = [t.last_observed_at for t in totals.values() if t.last_observed_at is not None]
    return UserAggregateDTO(
        wallet_address=wallet_address.lower(),
        total_staked=wei_to_ether(_net_staked_wei(totals)),
        total_rewards_earned=wei_to_ether(_amount(totals, EventKind.REWARD_CLAIMED)),
        stake_count=sum(totals.get(kind, _EMPTY).count for kind in STAKE_KINDS),
        last_activity_at=max(observed, default=None),
    )


def build_daily_stats(
    day: date, totals: Mapping[str, KindTotals], total_users: int
) -> DailyStatsDTO:
    """Turn the per-kind totals up to the end of `day` into that day's rollup."""
    total_staked = wei_to_ether(_net_staked_wei(totals))
    average = total_staked / total_users if total_users else Decimal(0)
    return DailyStatsDTO(
        date=day,
        total_staked=total_staked,
        total_users=total_users,
        total_rewards_distributed=wei_to_ether(_amount(totals, EventKind.REWARD_CLAIMED)),
        average_stake_amount=average,
    )


def utc_day(moment: datetime) -> date:
    """UTC calendar day of a timestamp (naive values are taken as UTC)."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(UTC).date()


async def refresh_user(session: AsyncSession, wallet_address: str) -> UserAggregateDTO:
    """Recompute and store the aggregate for one wallet."""
    totals = await ContractEventRepository(session).totals_by_kind(
        kinds=AGGREGATE_KINDS, user_address=wallet_address
    )
    aggregate = build_user_aggregate(wallet_address, totals)
    await UserRepository(session).upsert(aggregate)
    logger.debug(
        "User %s: staked=%s rewards=%s events=%d",
        aggregate.wallet_address,
        aggregate.total_staked,
        aggregate.total_rewards_earned,
        aggregate.stake_count,
    )
    return aggregate


async def refresh_daily(session: AsyncSession, day: date) -> DailyStatsDTO:
    """Recompute and store the rollup for one UTC day.

    Only `day` is rewritten. Rows for later days are refreshed when an event
    on those days is projected.
    """
    end_of_day = datetime.combine(day + timedelta(days=1), time.min, tzinfo=UTC)
    events = ContractEventRepository(session)
    totals = await events.totals_by_kind(kinds=AGGREGATE_KINDS, before=end_of_day)
    total_users = await events.count_users(kinds=STAKE_KINDS, before=end_of_day)
    stats = build_daily_stats(day, totals, total_users)
    await DailyStatsRepository(session).upsert(stats)
    return stats
