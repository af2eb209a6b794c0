"""SQLAlchemy models for persistent storage.

This module defines the database schema for raw contract events, the
read-models derived from them (users, daily stats, notifications) and the
key/value system configuration that holds the indexer checkpoint.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ContractEventModel(Base):
    """Append-only audit log of normalized contract events."""

    __tablename__ = "contract_events"

    transaction_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)

    event_name: Mapped[str] = mapped_column(String(32), nullable=False)
    event_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    # uint256 as a decimal string; summed in SQL as NUMERIC(78, 0).
    amount_wei: Mapped[str | None] = mapped_column(String(78), nullable=True)
    arguments: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_contract_events_user_kind", "user_address", "event_kind"),
        Index("idx_contract_events_block", "block_number", "log_index"),
        Index("idx_contract_events_observed_at", "observed_at"),
    )


class UserModel(Base):
    """Per-wallet aggregate recomputed from the wallet's event history."""

    __tablename__ = "users"

    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    total_staked: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    total_rewards_earned: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    stake_count: Mapped[int] = mapped_column(Integer, nullable=False)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class DailyStatsModel(Base):
    """Cumulative protocol state at the end of a UTC calendar day."""

    __tablename__ = "daily_stats"

    date: Mapped[date] = mapped_column(Date, primary_key=True)
    total_staked: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    total_users: Mapped[int] = mapped_column(Integer, nullable=False)
    total_rewards_distributed: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    average_stake_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class NotificationModel(Base):
    """User notification created once per triggering event."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    title: Mapped[str] = mapped_column(String(120), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # success/warning/info
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    source_transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    source_log_index: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "source_transaction_hash",
            "source_log_index",
            name="uq_notifications_source_event",
        ),
        Index("idx_notifications_user_created", "user_wallet", "created_at"),
    )


class SystemConfigModel(Base):
    """Free-form key/value configuration (holds the indexer checkpoint)."""

    __tablename__ = "system_config"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
