"""Tests for the durable checkpoint store."""

from __future__ import annotations

import asyncio

import pytest

from stake_event_indexer.storage.checkpoint import (
    CHECKPOINT_DESCRIPTION,
    CHECKPOINT_KEY,
    CheckpointStore,
    parse_checkpoint,
)
from stake_event_indexer.storage.database import DatabaseManager
from stake_event_indexer.storage.models import SystemConfigModel
from stake_event_indexer.storage.repos import SystemConfigRepository


class TestCheckpointStore:
    @pytest.mark.asyncio
    async def test_load_when_absent(self, db_manager: DatabaseManager) -> None:
        store = CheckpointStore(db_manager.get_async_session)
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, db_manager: DatabaseManager) -> None:
        store = CheckpointStore(db_manager.get_async_session)

        assert await store.save(120) is True

        assert await store.load() == 120
        async with db_manager.get_async_session() as session:
            row = await session.get(SystemConfigModel, CHECKPOINT_KEY)
        assert row is not None
        assert row.value == "120"
        assert row.description == CHECKPOINT_DESCRIPTION

    @pytest.mark.asyncio
    async def test_never_moves_backwards(self, db_manager: DatabaseManager) -> None:
        store = CheckpointStore(db_manager.get_async_session)

        await store.save(200)
        assert await store.save(150) is False
        assert await store.save(200) is False

        assert await store.load() == 200

    @pytest.mark.asyncio
    async def test_monotonic_across_restart(self, db_manager: DatabaseManager) -> None:
        await CheckpointStore(db_manager.get_async_session).save(300)

        restarted = CheckpointStore(db_manager.get_async_session)
        assert await restarted.save(250) is False
        assert await restarted.load() == 300
        assert await restarted.save(301) is True
        assert await restarted.load() == 301

    @pytest.mark.asyncio
    async def test_concurrent_saves_keep_highest(self, db_manager: DatabaseManager) -> None:
        store = CheckpointStore(db_manager.get_async_session)

        await asyncio.gather(*(store.save(n) for n in (5, 9, 7, 3, 8)))

        assert await store.load() == 9

    @pytest.mark.asyncio
    async def test_rejects_negative(self, db_manager: DatabaseManager) -> None:
        with pytest.raises(ValueError):
            await CheckpointStore(db_manager.get_async_session).save(-1)

    @pytest.mark.asyncio
    async def test_malformed_value_is_ignored_by_load_and_save(
        self, db_manager: DatabaseManager
    ) -> None:
        async with db_manager.get_async_session() as session:
            await SystemConfigRepository(session).upsert(CHECKPOINT_KEY, "12abc")
        store = CheckpointStore(db_manager.get_async_session)

        assert await store.load() is None
        assert await store.save(10) is True
        assert await store.load() == 10

    @pytest.mark.asyncio
    async def test_save_reads_stored_value_like_load(self, db_manager: DatabaseManager) -> None:
        async with db_manager.get_async_session() as session:
            await SystemConfigRepository(session).upsert(CHECKPOINT_KEY, " 500 ")
        store = CheckpointStore(db_manager.get_async_session)

        assert await store.save(400) is False
        assert await store.load() == 500


@pytest.mark.parametrize(
    ("stored", "expected"),
    [
        ("120", 120),
        (" 500 ", 500),
        ("0", 0),
        (None, None),
        ("", None),
        ("12abc", None),
        ("-3", None),
    ],
)
def test_parse_checkpoint(stored: str | None, expected: int | None) -> None:
    assert parse_checkpoint(stored) == expected
