"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from stake_event_indexer.chain.client import ChainConnectionError, RangeTooLargeError
from stake_event_indexer.chain.models import LogFilter, RawLogEntry
from stake_event_indexer.events.normalizer import (
    REWARDS_CLAIMED_TOPIC,
    STAKED_TOPIC,
    TRANSFER_TOPIC,
    UNSTAKED_TOPIC,
)
from stake_event_indexer.storage.database import DatabaseManager

STAKE_CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
TOKEN_CONTRACT = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
WALLET_A = "0x00000000000000000000000000000000000000aa"
WALLET_B = "0x00000000000000000000000000000000000000bb"

GENESIS_TIMESTAMP = 1_760_000_000  # 2025-10-09T08:53:20Z
BLOCK_TIME_SECONDS = 12

ONE_ETHER = 10**18


def _word(value: int) -> str:
    return format(value, "064x")


def _address_topic(address: str) -> str:
    return "0x" + address.removeprefix("0x").rjust(64, "0")


def _tx_hash(block: int, log_index: int) -> str:
    return "0x" + format(block, "032x") + format(log_index, "032x")


def build_stake_log(
    topic: str,
    user: str,
    amount_wei: int,
    *,
    block: int,
    log_index: int = 0,
    timestamp: int | None = None,
    tx_hash: str | None = None,
    contract: str = STAKE_CONTRACT,
    indexed_user: bool = True,
) -> RawLogEntry:
    ts = timestamp if timestamp is not None else GENESIS_TIMESTAMP + block * BLOCK_TIME_SECONDS
    if indexed_user:
        topics = (topic, _address_topic(user))
        data = "0x" + _word(amount_wei) + _word(ts)
    else:
        topics = (topic,)
        data = "0x" + _word(int(user, 16)) + _word(amount_wei) + _word(ts)
    return RawLogEntry(
        address=contract,
        topics=topics,
        data=data,
        block_number=block,
        transaction_hash=tx_hash or _tx_hash(block, log_index),
        log_index=log_index,
    )


def build_transfer_log(
    sender: str,
    recipient: str,
    value_wei: int,
    *,
    block: int,
    log_index: int = 0,
    tx_hash: str | None = None,
    contract: str = TOKEN_CONTRACT,
) -> RawLogEntry:
    return RawLogEntry(
        address=contract,
        topics=(TRANSFER_TOPIC, _address_topic(sender), _address_topic(recipient)),
        data="0x" + _word(value_wei),
        block_number=block,
        transaction_hash=tx_hash or _tx_hash(block, log_index),
        log_index=log_index,
    )


class FakeSubscription:
    """Stand-in for LogSubscription that tests drive by hand."""

    _ids = 0

    def __init__(self, on_event, on_block) -> None:
        FakeSubscription._ids += 1
        self.id = FakeSubscription._ids
        self.on_event = on_event
        self.on_block = on_block
        self.is_connected = True
        self.closed = False


class FakeChain:
    """In-memory chain adapter.

    Logs are served from `self.logs` (optionally in reverse order); failures,
    range limits and a gate that blocks a log query can be configured per test.
    """

    def __init__(self, height: int = 100) -> None:
        self.height = height
        self.logs: list[RawLogEntry] = []
        self.timestamps: dict[int, int] = {}
        self.range_calls: list[tuple[int, int]] = []
        self.height_failures = 0
        self.height_calls = 0
        self.max_range: int | None = None
        self.fail_block: int | None = None
        self.fail_times = 0
        self.gate_block: int | None = None
        self.gate = asyncio.Event()
        self.gate_entered = asyncio.Event()
        self.subscriptions: list[FakeSubscription] = []
        self.unsubscribed: list[FakeSubscription] = []
        self.last_filter: LogFilter | None = None
        # Newest first, like an adapter without an ordering guarantee.
        self.reverse_logs = False

    def add(self, *entries: RawLogEntry) -> None:
        self.logs.extend(entries)

    def timestamp_for(self, block: int) -> int:
        return self.timestamps.get(block, GENESIS_TIMESTAMP + block * BLOCK_TIME_SECONDS)

    async def current_height(self) -> int:
        self.height_calls += 1
        if self.height_failures > 0:
            self.height_failures -= 1
            raise ChainConnectionError("node unreachable")
        return self.height

    async def logs_in_range(
        self, from_block: int, to_block: int, log_filter: LogFilter
    ) -> list[RawLogEntry]:
        self.range_calls.append((from_block, to_block))
        self.last_filter = log_filter
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise RangeTooLargeError(from_block, to_block, "query returned more than 10000 results")
        if (
            self.fail_block is not None
            and from_block <= self.fail_block <= to_block
            and self.fail_times > 0
        ):
            self.fail_times -= 1
            raise ChainConnectionError("eth_getLogs timed out")
        if self.gate_block is not None and from_block <= self.gate_block <= to_block:
            self.gate_entered.set()
            await self.gate.wait()
        entries = [e for e in self.logs if from_block <= e.block_number <= to_block]
        entries.sort(key=lambda e: e.ordering_key, reverse=self.reverse_logs)
        return await self.attach_timestamps(entries)

    async def attach_timestamps(self, entries: list[RawLogEntry]) -> list[RawLogEntry]:
        return [e.with_timestamp(self.timestamp_for(e.block_number)) for e in entries]

    def subscribe(self, log_filter: LogFilter, on_event, on_block) -> FakeSubscription:
        subscription = FakeSubscription(on_event, on_block)
        self.subscriptions.append(subscription)
        return subscription

    async def unsubscribe(self, handle: FakeSubscription) -> None:
        handle.closed = True
        handle.is_connected = False
        self.unsubscribed.append(handle)

    async def emit_log(self, entry: RawLogEntry) -> None:
        await self.subscriptions[-1].on_event(entry)

    async def emit_block(self, number: int) -> None:
        await self.subscriptions[-1].on_block(number)


@pytest.fixture
def sample_wallet() -> str:
    """Sample wallet address for testing."""
    return WALLET_A


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def stake_log() -> Callable[..., RawLogEntry]:
    """Factory for Staked logs."""

    def _make(user: str, amount_wei: int, **kwargs) -> RawLogEntry:
        return build_stake_log(STAKED_TOPIC, user, amount_wei, **kwargs)

    return _make


@pytest.fixture
def unstake_log() -> Callable[..., RawLogEntry]:
    """Factory for Unstaked logs."""

    def _make(user: str, amount_wei: int, **kwargs) -> RawLogEntry:
        return build_stake_log(UNSTAKED_TOPIC, user, amount_wei, **kwargs)

    return _make


@pytest.fixture
def reward_log() -> Callable[..., RawLogEntry]:
    """Factory for RewardsClaimed logs."""

    def _make(user: str, amount_wei: int, **kwargs) -> RawLogEntry:
        return build_stake_log(REWARDS_CLAIMED_TOPIC, user, amount_wei, **kwargs)

    return _make


@pytest.fixture
def transfer_log() -> Callable[..., RawLogEntry]:
    """Factory for ERC20 Transfer logs."""
    return build_transfer_log


@pytest.fixture
async def db_manager(tmp_path: Path):
    """DatabaseManager backed by a temporary SQLite file with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
