"""Repository pattern implementations for data access.

This module provides data access abstractions for contract events, user
aggregates, daily stats, notifications and system configuration. Writes
are idempotent (upsert / insert-if-absent) so redelivered events are safe.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from stake_event_indexer.storage.models import (
    ContractEventModel,
    DailyStatsModel,
    NotificationModel,
    SystemConfigModel,
    UserModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _wei_sum(session: AsyncSession, column: Any) -> Any:
    """Dialect-specific SUM over a uint256 decimal-string column."""
    if session.get_bind().dialect.name == "sqlite":
        # SQLite integers are 64-bit and sum() raises on overflow; total() sums as REAL.
        return sa.func.total(sa.cast(column, sa.Numeric))
    return sa.cast(sa.func.sum(sa.cast(column, sa.Numeric(78, 0))), sa.String)


def _to_wei(value: Any) -> int:
    if value is None:
        return 0
    return int(Decimal(str(value)))


@dataclass
class KindTotals:
    """Per event kind totals over the contract event log."""

    amount_wei: int = 0
    count: int = 0
    last_observed_at: datetime | None = None


@dataclass
class ContractEventDTO:
    """Data transfer object for persisted contract events."""

    transaction_hash: str
    log_index: int
    event_name: str
    event_kind: str
    contract_address: str
    block_number: int
    user_address: str | None
    amount_wei: str | None
    observed_at: datetime
    arguments: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ContractEventModel) -> ContractEventDTO:
        return cls(
            transaction_hash=model.transaction_hash,
            log_index=model.log_index,
            event_name=model.event_name,
            event_kind=model.event_kind,
            contract_address=model.contract_address,
            block_number=model.block_number,
            user_address=model.user_address,
            amount_wei=model.amount_wei,
            observed_at=model.observed_at,
            arguments=dict(model.arguments or {}),
            created_at=model.created_at,
        )


@dataclass
class UserAggregateDTO:
    """Data transfer object for per-wallet aggregates."""

    wallet_address: str
    total_staked: Decimal
    total_rewards_earned: Decimal
    stake_count: int
    last_activity_at: datetime | None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: UserModel) -> UserAggregateDTO:
        return cls(
            wallet_address=model.wallet_address,
            total_staked=model.total_staked,
            total_rewards_earned=model.total_rewards_earned,
            stake_count=model.stake_count,
            last_activity_at=model.last_activity_at,
            updated_at=model.updated_at,
        )


@dataclass
class DailyStatsDTO:
    """Data transfer object for daily rollups."""

    date: date
    total_staked: Decimal
    total_users: int
    total_rewards_distributed: Decimal
    average_stake_amount: Decimal
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: DailyStatsModel) -> DailyStatsDTO:
        return cls(
            date=model.date,
            total_staked=model.total_staked,
            total_users=model.total_users,
            total_rewards_distributed=model.total_rewards_distributed,
            average_stake_amount=model.average_stake_amount,
            updated_at=model.updated_at,
        )


@dataclass
class NotificationDTO:
    """Data transfer object for user notifications."""

    user_wallet: str
    title: str
    message: str
    kind: str
    source_transaction_hash: str
    source_log_index: int
    read: bool = False
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: NotificationModel) -> NotificationDTO:
        return cls(
            id=model.id,
            user_wallet=model.user_wallet,
            title=model.title,
            message=model.message,
            kind=model.kind,
            read=model.read,
            source_transaction_hash=model.source_transaction_hash,
            source_log_index=model.source_log_index,
            created_at=model.created_at,
        )


class ContractEventRepository:
    """Repository for the raw contract event log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, transaction_hash: str, log_index: int) -> ContractEventDTO | None:
        result = await self.session.execute(
            select(ContractEventModel).where(
                (ContractEventModel.transaction_hash == transaction_hash.lower())
                & (ContractEventModel.log_index == log_index)
            )
        )
        model = result.scalar_one_or_none()
        return ContractEventDTO.from_model(model) if model else None

    async def upsert(self, dto: ContractEventDTO) -> bool:
        """Persist an event keyed by (transaction_hash, log_index).

        Events are immutable, so redelivery of an existing identity leaves the
        stored row untouched.

        Returns:
            True if a new row was written.
        """
        values = {
            "transaction_hash": dto.transaction_hash.lower(),
            "log_index": dto.log_index,
            "event_name": dto.event_name,
            "event_kind": dto.event_kind,
            "contract_address": dto.contract_address.lower(),
            "block_number": dto.block_number,
            "user_address": dto.user_address.lower() if dto.user_address else None,
            "amount_wei": dto.amount_wei,
            "arguments": dto.arguments,
            "observed_at": dto.observed_at,
            "created_at": datetime.now(UTC),
        }
        stmt = _insert_for(self.session, ContractEventModel).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=["transaction_hash", "log_index"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def list_for_user(
        self,
        wallet_address: str,
        *,
        kinds: Sequence[str] | None = None,
    ) -> list[ContractEventDTO]:
        """Full event history for a wallet, oldest first."""
        stmt = select(ContractEventModel).where(
            ContractEventModel.user_address == wallet_address.lower()
        )
        if kinds:
            stmt = stmt.where(ContractEventModel.event_kind.in_(list(kinds)))
        stmt = stmt.order_by(ContractEventModel.block_number.asc(), ContractEventModel.log_index.asc())
        result = await self.session.execute(stmt)
        return [ContractEventDTO.from_model(m) for m in result.scalars().all()]

    async def totals_by_kind(
        self,
        *,
        kinds: Sequence[str],
        user_address: str | None = None,
        before: datetime | None = None,
    ) -> dict[str, KindTotals]:
        """Amount sum, row count and latest observation per event kind, computed in SQL."""
        stmt = select(
            ContractEventModel.event_kind,
            _wei_sum(self.session, ContractEventModel.amount_wei),
            sa.func.count(),
            sa.func.max(ContractEventModel.observed_at),
        ).where(ContractEventModel.event_kind.in_(list(kinds)))
        if user_address:
            stmt = stmt.where(ContractEventModel.user_address == user_address.lower())
        if before is not None:
            stmt = stmt.where(ContractEventModel.observed_at < before)
        result = await self.session.execute(stmt.group_by(ContractEventModel.event_kind))
        return {
            kind: KindTotals(
                amount_wei=_to_wei(amount), count=int(count), last_observed_at=last_observed_at
            )
            for kind, amount, count, last_observed_at in result.all()
        }

    async def count_users(self, *, kinds: Sequence[str], before: datetime | None = None) -> int:
        """Distinct wallets with at least one event of the given kinds."""
        stmt = select(sa.func.count(sa.distinct(ContractEventModel.user_address))).where(
            ContractEventModel.event_kind.in_(list(kinds))
            & ContractEventModel.user_address.is_not(None)
        )
        if before is not None:
            stmt = stmt.where(ContractEventModel.observed_at < before)
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def query(
        self,
        *,
        contract_address: str | None = None,
        user_address: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
        descending: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ContractEventDTO]:
        """Filtered, ordered, paginated event listing."""
        stmt = select(ContractEventModel)
        if contract_address:
            stmt = stmt.where(ContractEventModel.contract_address == contract_address.lower())
        if user_address:
            stmt = stmt.where(ContractEventModel.user_address == user_address.lower())
        if from_block is not None:
            stmt = stmt.where(ContractEventModel.block_number >= from_block)
        if to_block is not None:
            stmt = stmt.where(ContractEventModel.block_number <= to_block)
        if descending:
            stmt = stmt.order_by(
                ContractEventModel.block_number.desc(), ContractEventModel.log_index.desc()
            )
        else:
            stmt = stmt.order_by(
                ContractEventModel.block_number.asc(), ContractEventModel.log_index.asc()
            )
        result = await self.session.execute(stmt.limit(limit).offset(offset))
        return [ContractEventDTO.from_model(m) for m in result.scalars().all()]

    async def count(self) -> int:
        result = await self.session.execute(select(sa.func.count()).select_from(ContractEventModel))
        return int(result.scalar_one() or 0)


class UserRepository:
    """Repository for per-wallet aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, wallet_address: str) -> UserAggregateDTO | None:
        result = await self.session.execute(
            select(UserModel).where(UserModel.wallet_address == wallet_address.lower())
        )
        model = result.scalar_one_or_none()
        return UserAggregateDTO.from_model(model) if model else None

    async def upsert(self, dto: UserAggregateDTO) -> None:
        """Replace the aggregate for a wallet (values are recomputed, never incremented)."""
        now = datetime.now(UTC)
        values = {
            "wallet_address": dto.wallet_address.lower(),
            "total_staked": dto.total_staked,
            "total_rewards_earned": dto.total_rewards_earned,
            "stake_count": dto.stake_count,
            "last_activity_at": dto.last_activity_at,
        }
        stmt = _insert_for(self.session, UserModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address"],
            set_={
                "total_staked": stmt.excluded.total_staked,
                "total_rewards_earned": stmt.excluded.total_rewards_earned,
                "stake_count": stmt.excluded.stake_count,
                "last_activity_at": stmt.excluded.last_activity_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def count(self) -> int:
        result = await self.session.execute(select(sa.func.count()).select_from(UserModel))
        return int(result.scalar_one() or 0)


class DailyStatsRepository:
    """Repository for daily rollups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, day: date) -> DailyStatsDTO | None:
        result = await self.session.execute(select(DailyStatsModel).where(DailyStatsModel.date == day))
        model = result.scalar_one_or_none()
        return DailyStatsDTO.from_model(model) if model else None

    async def upsert(self, dto: DailyStatsDTO) -> None:
        now = datetime.now(UTC)
        values = {
            "date": dto.date,
            "total_staked": dto.total_staked,
            "total_users": dto.total_users,
            "total_rewards_distributed": dto.total_rewards_distributed,
            "average_stake_amount": dto.average_stake_amount,
        }
        stmt = _insert_for(self.session, DailyStatsModel).values(**values, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["date"],
            set_={
                "total_staked": stmt.excluded.total_staked,
                "total_users": stmt.excluded.total_users,
                "total_rewards_distributed": stmt.excluded.total_rewards_distributed,
                "average_stake_amount": stmt.excluded.average_stake_amount,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_recent(self, days: int = 30) -> list[DailyStatsDTO]:
        result = await self.session.execute(
            select(DailyStatsModel).order_by(DailyStatsModel.date.desc()).limit(days)
        )
        return [DailyStatsDTO.from_model(m) for m in result.scalars().all()]


class NotificationRepository:
    """Repository for user notifications."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_source(self, transaction_hash: str, log_index: int) -> NotificationDTO | None:
        result = await self.session.execute(
            select(NotificationModel).where(
                (NotificationModel.source_transaction_hash == transaction_hash.lower())
                & (NotificationModel.source_log_index == log_index)
            )
        )
        model = result.scalar_one_or_none()
        return NotificationDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: NotificationDTO) -> bool:
        """Insert a notification unless one exists for the same source event.

        Returns:
            True if a notification was created.
        """
        existing = await self.get_by_source(dto.source_transaction_hash, dto.source_log_index)
        if existing is not None:
            return False

        values = {
            "user_wallet": dto.user_wallet.lower(),
            "title": dto.title,
            "message": dto.message,
            "kind": dto.kind,
            "read": False,
            "source_transaction_hash": dto.source_transaction_hash.lower(),
            "source_log_index": dto.source_log_index,
            "created_at": datetime.now(UTC),
        }
        stmt = _insert_for(self.session, NotificationModel).values(**values)
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["source_transaction_hash", "source_log_index"]
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def list_for_user(
        self,
        wallet_address: str,
        *,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationDTO]:
        stmt = select(NotificationModel).where(
            NotificationModel.user_wallet == wallet_address.lower()
        )
        if unread_only:
            stmt = stmt.where(NotificationModel.read.is_(False))
        stmt = stmt.order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
        result = await self.session.execute(stmt.limit(limit).offset(offset))
        return [NotificationDTO.from_model(m) for m in result.scalars().all()]

    async def mark_read(self, notification_id: int) -> bool:
        """Flag a notification as read (called by the application, never the indexer)."""
        result = await self.session.execute(
            update(NotificationModel)
            .where(NotificationModel.id == notification_id)
            .values(read=True, updated_at=datetime.now(UTC))
        )
        await self.session.flush()
        return bool(result.rowcount)


class SystemConfigRepository:
    """Repository for key/value system configuration."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(
            select(SystemConfigModel.value).where(SystemConfigModel.key == key)
        )
        return result.scalar_one_or_none()

    async def upsert(self, key: str, value: str, *, description: str | None = None) -> None:
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, SystemConfigModel).values(
            key=key, value=value, description=description, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={
                "value": stmt.excluded.value,
                "description": stmt.excluded.description,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
