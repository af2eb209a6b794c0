"""Durable "last processed block" watermark."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from sqlalchemy.ext.asyncio import AsyncSession

from stake_event_indexer.storage.repos import SystemConfigRepository

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "last_processed_block"
CHECKPOINT_DESCRIPTION = "Last processed block number for event listener"

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def parse_checkpoint(value: str | None) -> int | None:
    """Parse a stored checkpoint; None when missing or malformed."""
    if value is None:
        return None
    try:
        block = int(value)
    except ValueError:
        logger.warning("Ignoring malformed checkpoint value %r", value)
        return None
    if block < 0:
        logger.warning("Ignoring negative checkpoint value %r", value)
        return None
    return block


class CheckpointStore:
    """Loads and saves the indexer checkpoint in the `system_config` table.

    Writes are serialized; a block number lower than or equal to the highest
    one already saved is ignored, so the stored value never goes backwards.
    """

    def __init__(self, session_factory: SessionFactory, *, key: str = CHECKPOINT_KEY) -> None:
        """Initialize the store.

        Args:
            session_factory: Returns a transactional session context manager
                (e.g. `DatabaseManager.get_async_session`).
            key: system_config key holding the checkpoint.
        """
        self._session_factory = session_factory
        self._key = key
        self._lock = asyncio.Lock()
        self._high_water: int | None = None

    async def _read(self) -> int | None:
        async with self._session_factory() as session:
            value = await SystemConfigRepository(session).get(self._key)
        return parse_checkpoint(value)

    async def load(self) -> int | None:
        """Return the stored checkpoint, or None if none was ever saved."""
        block = await self._read()
        if block is None:
            return None
        async with self._lock:
            if self._high_water is None or block > self._high_water:
                self._high_water = block
        return block

    async def save(self, block_number: int) -> bool:
        """Persist `block_number` if it advances the checkpoint.

        Returns:
            True if the value was written.
        """
        if block_number < 0:
            raise ValueError(f"Invalid checkpoint {block_number}")
        async with self._lock:
            if self._high_water is None:
                self._high_water = await self._read()
            if self._high_water is not None and block_number <= self._high_water:
                return False
            async with self._session_factory() as session:
                await SystemConfigRepository(session).upsert(
                    self._key,
                    str(block_number),
                    description=CHECKPOINT_DESCRIPTION,
                )
            self._high_water = block_number
        logger.debug("Checkpoint advanced to %d", block_number)
        return True
