"""Initial schema for contract events, read-models and system config.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Raw contract events (audit log)
    op.create_table(
        "contract_events",
        sa.Column("transaction_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("event_name", sa.String(32), nullable=False),
        sa.Column("event_kind", sa.String(32), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("user_address", sa.String(42), nullable=True),
        sa.Column("amount_wei", sa.String(78), nullable=True),
        sa.Column("arguments", sa.JSON(), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("transaction_hash", "log_index"),
    )
    op.create_index(
        "idx_contract_events_user_kind", "contract_events", ["user_address", "event_kind"]
    )
    op.create_index("idx_contract_events_block", "contract_events", ["block_number", "log_index"])
    op.create_index("idx_contract_events_observed_at", "contract_events", ["observed_at"])

    # Per-wallet aggregates
    op.create_table(
        "users",
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("total_staked", sa.Numeric(38, 18), nullable=False),
        sa.Column("total_rewards_earned", sa.Numeric(38, 18), nullable=False),
        sa.Column("stake_count", sa.Integer(), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address"),
    )

    # Daily rollups
    op.create_table(
        "daily_stats",
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("total_staked", sa.Numeric(38, 18), nullable=False),
        sa.Column("total_users", sa.Integer(), nullable=False),
        sa.Column("total_rewards_distributed", sa.Numeric(38, 18), nullable=False),
        sa.Column("average_stake_amount", sa.Numeric(38, 18), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("date"),
    )

    # Notifications (one per source event)
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_wallet", sa.String(42), nullable=False),
        sa.Column("title", sa.String(120), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("source_transaction_hash", sa.String(66), nullable=False),
        sa.Column("source_log_index", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "source_transaction_hash",
            "source_log_index",
            name="uq_notifications_source_event",
        ),
    )
    op.create_index(
        "idx_notifications_user_created", "notifications", ["user_wallet", "created_at"]
    )

    # Key/value configuration (indexer checkpoint)
    op.create_table(
        "system_config",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("system_config")

    op.drop_index("idx_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")

    op.drop_table("daily_stats")
    op.drop_table("users")

    op.drop_index("idx_contract_events_observed_at", table_name="contract_events")
    op.drop_index("idx_contract_events_block", table_name="contract_events")
    op.drop_index("idx_contract_events_user_kind", table_name="contract_events")
    op.drop_table("contract_events")
