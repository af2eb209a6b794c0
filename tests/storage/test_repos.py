"""Tests for storage repositories."""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from stake_event_indexer.storage.models import Base
from stake_event_indexer.storage.repos import (
    ContractEventDTO,
    ContractEventRepository,
    DailyStatsDTO,
    DailyStatsRepository,
    NotificationDTO,
    NotificationRepository,
    SystemConfigRepository,
    UserAggregateDTO,
    UserRepository,
)

WALLET = "0x00000000000000000000000000000000000000aa"
OTHER = "0x00000000000000000000000000000000000000bb"
STAKE_CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


def _event(
    block: int,
    log_index: int = 0,
    *,
    kind: str = "stake_opened",
    user: str | None = WALLET,
    amount_wei: str | None = "1000000000000000000",
    observed_at: datetime | None = None,
) -> ContractEventDTO:
    return ContractEventDTO(
        transaction_hash="0x" + format(block, "032x") + format(log_index, "032X"),
        log_index=log_index,
        event_name="Staked",
        event_kind=kind,
        contract_address=STAKE_CONTRACT,
        block_number=block,
        user_address=user,
        amount_wei=amount_wei,
        observed_at=observed_at or datetime(2026, 10, 1, 12, 0, tzinfo=UTC),
        arguments={"user": user or "", "amount": amount_wei or "0"},
    )


@pytest.fixture
def sample_notification() -> NotificationDTO:
    """Create a sample notification DTO."""
    return NotificationDTO(
        user_wallet=WALLET,
        title="Stake Successful",
        message="You have successfully staked 1.0 ETH",
        kind="success",
        source_transaction_hash="0x" + "AB" * 32,
        source_log_index=2,
    )


# ============================================================================
# ContractEventRepository Tests
# ============================================================================


class TestContractEventRepository:
    """Tests for ContractEventRepository."""

    @pytest.mark.asyncio
    async def test_get_not_found(self, async_session: AsyncSession) -> None:
        repo = ContractEventRepository(async_session)
        assert await repo.get("0x" + "00" * 32, 0) is None

    @pytest.mark.asyncio
    async def test_upsert_creates_and_lowercases(self, async_session: AsyncSession) -> None:
        repo = ContractEventRepository(async_session)
        dto = _event(100, 3)

        assert await repo.upsert(dto) is True
        await async_session.commit()

        stored = await repo.get(dto.transaction_hash, 3)
        assert stored is not None
        assert stored.transaction_hash == dto.transaction_hash.lower()
        assert stored.block_number == 100
        assert stored.amount_wei == "1000000000000000000"
        assert stored.arguments["user"] == WALLET

    @pytest.mark.asyncio
    async def test_upsert_same_identity_is_noop(self, async_session: AsyncSession) -> None:
        repo = ContractEventRepository(async_session)
        dto = _event(100, 3)

        assert await repo.upsert(dto) is True
        assert await repo.upsert(dto) is False
        await async_session.commit()

        assert await repo.count() == 1

    @pytest.mark.asyncio
    async def test_list_for_user_filters_kinds_and_orders(self, async_session: AsyncSession) -> None:
        repo = ContractEventRepository(async_session)
        await repo.upsert(_event(105, 0))
        await repo.upsert(_event(100, 2))
        await repo.upsert(_event(100, 1, kind="token_transfer"))
        await repo.upsert(_event(101, 0, user=OTHER))
        await async_session.commit()

        events = await repo.list_for_user(WALLET, kinds=["stake_opened"])

        assert [(e.block_number, e.log_index) for e in events] == [(100, 2), (105, 0)]

    @pytest.mark.asyncio
    async def test_totals_by_kind_sums_in_sql(self, async_session: AsyncSession) -> None:
        repo = ContractEventRepository(async_session)
        noon = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
        await repo.upsert(_event(1, amount_wei="1500000000000000000", observed_at=noon))
        await repo.upsert(
            _event(2, amount_wei="2000000000000000000", observed_at=noon + timedelta(hours=2))
        )
        await repo.upsert(
            _event(3, kind="stake_closed", amount_wei="500000000000000000", observed_at=noon)
        )
        await repo.upsert(_event(4, kind="token_transfer"))
        await repo.upsert(_event(5, user=OTHER, amount_wei="7000000000000000000"))
        await async_session.commit()

        totals = await repo.totals_by_kind(
            kinds=["stake_opened", "stake_closed"], user_address=WALLET
        )

        assert set(totals) == {"stake_opened", "stake_closed"}
        assert totals["stake_opened"].amount_wei == 3_500_000_000_000_000_000
        assert totals["stake_opened"].count == 2
        assert totals["stake_closed"].amount_wei == 500_000_000_000_000_000
        last = totals["stake_opened"].last_observed_at
        assert last is not None
        assert last.replace(tzinfo=None) == datetime(2026, 10, 1, 14, 0)

    @pytest.mark.asyncio
    async def test_totals_by_kind_before(self, async_session: AsyncSession) -> None:
        repo = ContractEventRepository(async_session)
        day = datetime(2026, 10, 1, tzinfo=UTC)
        await repo.upsert(_event(1, observed_at=day + timedelta(hours=1)))
        await repo.upsert(_event(2, observed_at=day + timedelta(days=1, hours=1)))
        await async_session.commit()

        totals = await repo.totals_by_kind(kinds=["stake_opened"], before=day + timedelta(days=1))

        assert totals["stake_opened"].count == 1
        assert totals["stake_opened"].amount_wei == 10**18
        assert await repo.totals_by_kind(kinds=["stake_opened"], before=day) == {}

    @pytest.mark.asyncio
    async def test_count_users_is_distinct(self, async_session: AsyncSession) -> None:
        repo = ContractEventRepository(async_session)
        day = datetime(2026, 10, 1, tzinfo=UTC)
        await repo.upsert(_event(1, observed_at=day))
        await repo.upsert(_event(2, kind="stake_closed", observed_at=day))
        await repo.upsert(_event(3, user=OTHER, observed_at=day + timedelta(days=1)))
        await repo.upsert(_event(4, user=None, observed_at=day))
        await repo.upsert(_event(5, kind="reward_claimed", user=OTHER, observed_at=day))
        await async_session.commit()

        kinds = ["stake_opened", "stake_closed"]
        assert await repo.count_users(kinds=kinds) == 2
        assert await repo.count_users(kinds=kinds, before=day + timedelta(hours=1)) == 1

    @pytest.mark.asyncio
    async def test_query_with_filters_order_and_pagination(
        self, async_session: AsyncSession
    ) -> None:
        repo = ContractEventRepository(async_session)
        for block in range(10, 20):
            await repo.upsert(_event(block))
        await async_session.commit()

        page = await repo.query(from_block=12, to_block=17, descending=True, limit=3, offset=1)

        assert [e.block_number for e in page] == [16, 15, 14]

        by_user = await repo.query(user_address=WALLET.upper().replace("0X", "0x"), limit=100)
        assert len(by_user) == 10


# ============================================================================
# UserRepository Tests
# ============================================================================


class TestUserRepository:
    """Tests for UserRepository."""

    @pytest.mark.asyncio
    async def test_upsert_replaces_values(self, async_session: AsyncSession) -> None:
        repo = UserRepository(async_session)
        now = datetime(2026, 10, 1, tzinfo=UTC)

        await repo.upsert(
            UserAggregateDTO(
                wallet_address=WALLET,
                total_staked=Decimal("1.0"),
                total_rewards_earned=Decimal("0"),
                stake_count=1,
                last_activity_at=now,
            )
        )
        await repo.upsert(
            UserAggregateDTO(
                wallet_address=WALLET,
                total_staked=Decimal("1.5"),
                total_rewards_earned=Decimal("0.25"),
                stake_count=2,
                last_activity_at=now,
            )
        )
        await async_session.commit()

        user = await repo.get(WALLET)
        assert user is not None
        assert user.total_staked == Decimal("1.5")
        assert user.total_rewards_earned == Decimal("0.25")
        assert user.stake_count == 2
        assert await repo.count() == 1


# ============================================================================
# DailyStatsRepository Tests
# ============================================================================


class TestDailyStatsRepository:
    """Tests for DailyStatsRepository."""

    @pytest.mark.asyncio
    async def test_upsert_and_list_recent(self, async_session: AsyncSession) -> None:
        repo = DailyStatsRepository(async_session)
        for offset in range(3):
            await repo.upsert(
                DailyStatsDTO(
                    date=date(2026, 10, 1) + timedelta(days=offset),
                    total_staked=Decimal(offset + 1),
                    total_users=offset + 1,
                    total_rewards_distributed=Decimal("0"),
                    average_stake_amount=Decimal("1"),
                )
            )
        await repo.upsert(
            DailyStatsDTO(
                date=date(2026, 10, 3),
                total_staked=Decimal("10"),
                total_users=4,
                total_rewards_distributed=Decimal("2"),
                average_stake_amount=Decimal("2.5"),
            )
        )
        await async_session.commit()

        recent = await repo.list_recent(days=2)

        assert [s.date for s in recent] == [date(2026, 10, 3), date(2026, 10, 2)]
        assert recent[0].total_staked == Decimal("10")
        assert recent[0].total_users == 4


# ============================================================================
# NotificationRepository Tests
# ============================================================================


class TestNotificationRepository:
    """Tests for NotificationRepository."""

    @pytest.mark.asyncio
    async def test_insert_if_absent_once_per_source(
        self, async_session: AsyncSession, sample_notification: NotificationDTO
    ) -> None:
        repo = NotificationRepository(async_session)

        assert await repo.insert_if_absent(sample_notification) is True
        assert await repo.insert_if_absent(sample_notification) is False
        await async_session.commit()

        notifications = await repo.list_for_user(WALLET)
        assert len(notifications) == 1
        assert notifications[0].read is False
        assert notifications[0].source_transaction_hash == "0x" + "ab" * 32

    @pytest.mark.asyncio
    async def test_get_by_source(
        self, async_session: AsyncSession, sample_notification: NotificationDTO
    ) -> None:
        repo = NotificationRepository(async_session)
        await repo.insert_if_absent(sample_notification)
        await async_session.commit()

        found = await repo.get_by_source("0x" + "ab" * 32, 2)
        assert found is not None
        assert found.title == "Stake Successful"
        assert await repo.get_by_source("0x" + "ab" * 32, 3) is None

    @pytest.mark.asyncio
    async def test_mark_read_and_unread_filter(
        self, async_session: AsyncSession, sample_notification: NotificationDTO
    ) -> None:
        repo = NotificationRepository(async_session)
        await repo.insert_if_absent(sample_notification)
        await async_session.commit()
        [created] = await repo.list_for_user(WALLET)

        assert await repo.mark_read(created.id) is True
        await async_session.commit()

        assert await repo.list_for_user(WALLET, unread_only=True) == []
        assert len(await repo.list_for_user(WALLET)) == 1
        assert await repo.mark_read(9999) is False


# ============================================================================
# SystemConfigRepository Tests
# ============================================================================


class TestSystemConfigRepository:
    """Tests for SystemConfigRepository."""

    @pytest.mark.asyncio
    async def test_get_missing(self, async_session: AsyncSession) -> None:
        assert await SystemConfigRepository(async_session).get("missing") is None

    @pytest.mark.asyncio
    async def test_upsert_overwrites(self, async_session: AsyncSession) -> None:
        repo = SystemConfigRepository(async_session)
        await repo.upsert("last_processed_block", "10", description="checkpoint")
        await repo.upsert("last_processed_block", "25", description="checkpoint")
        await async_session.commit()

        assert await repo.get("last_processed_block") == "25"
