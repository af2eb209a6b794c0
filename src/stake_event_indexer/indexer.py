"""Event indexer state machine.

This module provides the EventIndexer class that backfills contract events
from the stored checkpoint, follows the chain live, and periodically
reconciles any gap between the chain head and the checkpoint.

States:
    STOPPED → INITIALIZING → BACKFILLING → LIVE ⇄ RECONCILING → STOPPED

A single worker task owns the checkpoint and applies events. Subscription
callbacks and the reconciliation timer only enqueue messages for it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar, Union

from sqlalchemy.exc import SQLAlchemyError

from stake_event_indexer.chain.client import (
    ChainClientError,
    ChainConnectionError,
    RangeTooLargeError,
)
from stake_event_indexer.chain.models import LogFilter, RawLogEntry
from stake_event_indexer.config import IndexerSettings
from stake_event_indexer.events.models import RawEvent
from stake_event_indexer.events.normalizer import (
    TOPIC_KINDS,
    EventNormalizer,
    UnknownEventKindError,
)
from stake_event_indexer.projector.base import ProjectionWriteError

if TYPE_CHECKING:
    from stake_event_indexer.chain.client import ChainClient
    from stake_event_indexer.chain.subscription import LogSubscription
    from stake_event_indexer.projector.registry import ProjectorRegistry
    from stake_event_indexer.storage.checkpoint import CheckpointStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IndexerState(str, Enum):
    """Indexer lifecycle states."""

    STOPPED = "stopped"
    INITIALIZING = "initializing"
    BACKFILLING = "backfilling"
    LIVE = "live"
    RECONCILING = "reconciling"


_LISTENING_STATES = frozenset(
    {IndexerState.BACKFILLING, IndexerState.LIVE, IndexerState.RECONCILING}
)


@dataclass(frozen=True)
class IndexerStatus:
    """Snapshot of the indexer's in-memory state."""

    is_listening: bool
    state: IndexerState
    last_processed_block: int
    current_block: int
    watched_contracts: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "isListening": self.is_listening,
            "state": self.state.value,
            "lastProcessedBlock": self.last_processed_block,
            "currentBlock": self.current_block,
            "watchedContracts": list(self.watched_contracts),
        }


@dataclass
class IndexerStats:
    """Statistics for the indexer."""

    started_at: datetime | None = None
    events_processed: int = 0
    events_skipped: int = 0
    projection_failures: int = 0
    batches_processed: int = 0
    batches_failed: int = 0
    reconciliations: int = 0
    last_error: str | None = None


class IndexerError(Exception):
    """Base exception for indexer errors."""


class IndexerStartError(IndexerError):
    """Raised when the indexer cannot initialize (e.g. the node is unreachable)."""


@dataclass(frozen=True)
class LiveLog:
    entry: RawLogEntry


@dataclass(frozen=True)
class NewBlock:
    number: int


@dataclass(frozen=True)
class ReconcileTick:
    pass


@dataclass(frozen=True)
class _Shutdown:
    pass


InboxMessage = Union[LiveLog, NewBlock, ReconcileTick, _Shutdown]


@dataclass
class _FailedRange:
    from_block: int
    to_block: int


class EventIndexer:
    """Indexes staking contract events into the read-models.

    Example:
        ```python
        indexer = EventIndexer(
            chain,
            CheckpointStore(db.get_async_session),
            ProjectorRegistry.default(db.get_async_session, stake_contract_address=stake),
            watched_contracts=settings.chain.watched_contracts,
            settings=settings.indexer,
        )
        await indexer.start()
        print(indexer.status().to_dict())
        await indexer.stop()
        ```
    """

    def __init__(
        self,
        chain: ChainClient,
        checkpoint_store: CheckpointStore,
        registry: ProjectorRegistry,
        *,
        watched_contracts: tuple[str, ...],
        settings: IndexerSettings | None = None,
        normalizer: EventNormalizer | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            chain: Chain client adapter.
            checkpoint_store: Durable last-processed-block store.
            registry: Projector registry events are dispatched to.
            watched_contracts: Contract addresses whose logs are indexed.
            settings: Batching/retry/reconciliation settings.
            normalizer: Log normalizer (defaults to EventNormalizer()).
        """
        if not watched_contracts:
            raise ValueError("At least one watched contract is required")

        self._chain = chain
        self._checkpoints = checkpoint_store
        self._registry = registry
        self._settings = settings or IndexerSettings()
        self._normalizer = normalizer or EventNormalizer()
        self._watched_contracts = tuple(a.lower() for a in watched_contracts)
        self._log_filter = LogFilter(
            addresses=self._watched_contracts,
            topics=tuple(TOPIC_KINDS),
        )

        self._state = IndexerState.STOPPED
        self._stats = IndexerStats()
        self._last_processed_block = 0
        self._current_block = 0
        self._failed_range: _FailedRange | None = None

        self._lifecycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._inbox: asyncio.Queue[InboxMessage] = asyncio.Queue(
            maxsize=self._settings.inbox_max_size
        )
        self._subscription: LogSubscription | None = None
        self._worker_task: asyncio.Task[None] | None = None
        self._timer_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> IndexerState:
        """Current indexer state."""
        return self._state

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    @property
    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    def status(self) -> IndexerStatus:
        """Report cached state. Never touches the network or the store."""
        subscription_ok = self._subscription is None or self._subscription.is_connected
        return IndexerStatus(
            is_listening=self._state in _LISTENING_STATES and subscription_ok,
            state=self._state,
            last_processed_block=self._last_processed_block,
            current_block=self._current_block,
            watched_contracts=self._watched_contracts,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start indexing. A no-op unless the indexer is stopped.

        Raises:
            IndexerStartError: If initialization fails (the indexer stays stopped).
        """
        async with self._lifecycle_lock:
            if self._state != IndexerState.STOPPED:
                logger.info("Indexer already running (state=%s)", self._state.value)
                return

            self._state = IndexerState.INITIALIZING
            self._stop_event.clear()
            self._inbox = asyncio.Queue(maxsize=self._settings.inbox_max_size)
            self._failed_range = None
            logger.info("Starting event indexer for %s", ", ".join(self._watched_contracts))

            try:
                checkpoint = await self._with_init_retry(self._initial_checkpoint, "load checkpoint")
                self._last_processed_block = checkpoint
                # Subscribe before reading the height so nothing falls between
                # the backfill's upper bound and the first live message.
                self._subscription = self._chain.subscribe(
                    self._log_filter, self._on_live_log, self._on_new_block
                )
                height = await self._with_init_retry(self._chain.current_height, "read chain height")
            except Exception as e:
                self._stats.last_error = str(e)
                await self._release_subscription()
                self._state = IndexerState.STOPPED
                logger.error("Failed to start event indexer: %s", e)
                if isinstance(e, IndexerStartError):
                    raise
                raise IndexerStartError(f"Indexer initialization failed: {e}") from e

            if self._stopping:
                await self._release_subscription()
                self._state = IndexerState.STOPPED
                logger.info("Indexer stopped during initialization")
                return

            self._current_block = max(height, checkpoint)
            self._stats.started_at = datetime.now(UTC)
            self._state = IndexerState.BACKFILLING
            self._worker_task = asyncio.create_task(self._run(height), name="event-indexer-worker")
            logger.info(
                "Event indexer started: checkpoint=%d height=%d", checkpoint, height
            )

    async def stop(self) -> None:
        """Stop indexing. Idempotent.

        The batch in flight is allowed to finish for up to
        `stop_timeout_seconds`, after which the worker is cancelled.
        """
        if self._state == IndexerState.STOPPED and self._worker_task is None:
            return

        self._stop_event.set()
        async with self._lifecycle_lock:
            if self._state == IndexerState.STOPPED and self._worker_task is None:
                return

            logger.info("Stopping event indexer...")
            await self._cancel_timer()
            await self._release_subscription()

            if self._worker_task is not None:
                with contextlib.suppress(asyncio.QueueFull):
                    self._inbox.put_nowait(_Shutdown())
                try:
                    await asyncio.wait_for(
                        asyncio.shield(self._worker_task),
                        timeout=self._settings.stop_timeout_seconds,
                    )
                except TimeoutError:
                    logger.warning(
                        "Indexer worker did not stop within %.1fs; cancelling",
                        self._settings.stop_timeout_seconds,
                    )
                    self._worker_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await self._worker_task
                self._worker_task = None

            self._state = IndexerState.STOPPED
            logger.info("Event indexer stopped at block %d", self._last_processed_block)

    async def _initial_checkpoint(self) -> int:
        stored = await self._checkpoints.load()
        if stored is not None:
            return stored
        height = await self._chain.current_height()
        await self._checkpoints.save(height)
        logger.info("No checkpoint found; starting from current height %d", height)
        return height

    async def _with_init_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        attempts = self._settings.init_max_retries
        delay = self._settings.init_retry_delay_seconds
        last_error: ChainConnectionError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except ChainConnectionError as e:
                last_error = e
                logger.warning(
                    "Failed to %s (attempt %d/%d): %s", description, attempt, attempts, e
                )
                if attempt < attempts:
                    await asyncio.sleep(delay)
                    delay *= 2
        raise IndexerStartError(
            f"Failed to {description} after {attempts} attempts: {last_error}"
        ) from last_error

    async def _cancel_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _release_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await self._chain.unsubscribe(subscription)
            except Exception as e:
                logger.warning("Failed to release subscription: %s", e)

    # ------------------------------------------------------------------
    # Inbox producers
    # ------------------------------------------------------------------

    async def _on_live_log(self, entry: RawLogEntry) -> None:
        if not self._stopping:
            await self._inbox.put(LiveLog(entry))

    async def _on_new_block(self, number: int) -> None:
        if not self._stopping:
            await self._inbox.put(NewBlock(number))

    async def request_reconciliation(self) -> None:
        """Ask the worker to check for (and repair) a gap behind the chain head."""
        if not self._stopping:
            await self._inbox.put(ReconcileTick())

    async def _reconcile_timer(self) -> None:
        interval = self._settings.reconciliation_interval_seconds
        while not self._stopping:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            if self._stopping:
                return
            await self.request_reconciliation()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run(self, height_at_start: int) -> None:
        try:
            await self._process_range(self._last_processed_block + 1, height_at_start)
            if self._stopping:
                return

            self._state = IndexerState.LIVE
            self._timer_task = asyncio.create_task(
                self._reconcile_timer(), name="event-indexer-reconcile-timer"
            )
            logger.info("Backfill complete; following chain at block %d", self._current_block)

            while not self._stopping:
                message = await self._inbox.get()
                if isinstance(message, _Shutdown) or self._stopping:
                    break
                await self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Indexer worker failed: %s", e)
            self._stats.last_error = str(e)
            self._state = IndexerState.STOPPED
            self._stop_event.set()
            await self._cancel_timer()
            await self._release_subscription()

    async def _handle_message(self, message: InboxMessage) -> None:
        try:
            if isinstance(message, LiveLog):
                await self._handle_live_log(message.entry)
            elif isinstance(message, NewBlock):
                await self._handle_new_block(message.number)
            elif isinstance(message, ReconcileTick):
                await self._reconcile()
        except (ChainClientError, SQLAlchemyError) as e:
            self._stats.last_error = str(e)
            logger.error("Failed to handle %s: %s", type(message).__name__, e)

    async def _handle_live_log(self, entry: RawLogEntry) -> None:
        if entry.block_timestamp is None:
            try:
                entry = (await self._chain.attach_timestamps([entry]))[0]
            except ChainClientError as e:
                logger.debug("No timestamp for block %d: %s", entry.block_number, e)

        try:
            event = self._normalizer.normalize(entry)
        except UnknownEventKindError as e:
            self._stats.events_skipped += 1
            logger.info("Skipping live log: %s", e)
            return

        self._current_block = max(self._current_block, entry.block_number)
        await self._dispatch(event)

    async def _handle_new_block(self, number: int) -> None:
        self._current_block = max(self._current_block, number)
        if self._failed_range is not None:
            # The checkpoint stays behind the unrepaired range.
            return
        if number > self._last_processed_block:
            await self._advance_checkpoint(number)

    async def _reconcile(self) -> None:
        height = await self._chain.current_height()
        self._current_block = max(self._current_block, height)
        gap = height - self._last_processed_block
        if self._failed_range is None and gap <= self._settings.reconciliation_gap_threshold_blocks:
            logger.debug("No reconciliation needed (gap=%d)", gap)
            return

        logger.info(
            "Reconciling blocks %d-%d (gap=%d, outstanding_failure=%s)",
            self._last_processed_block + 1,
            height,
            gap,
            self._failed_range is not None,
        )
        self._state = IndexerState.RECONCILING
        self._stats.reconciliations += 1
        try:
            await self._process_range(self._last_processed_block + 1, height)
        finally:
            if not self._stopping:
                self._state = IndexerState.LIVE

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def _process_range(self, from_block: int, to_block: int) -> None:
        """Process [from_block, to_block] in ascending batches.

        Stops at the first batch that fails after all attempts; that range is
        recorded and the checkpoint is not advanced past it.
        """
        if from_block > to_block:
            self._failed_range = None
            return

        logger.info("Processing blocks %d-%d", from_block, to_block)
        batch_size = self._settings.batch_size_blocks
        start = from_block
        while start <= to_block:
            if self._stopping:
                return
            end = min(start + batch_size - 1, to_block)
            if not await self._process_batch(start, end):
                self._failed_range = _FailedRange(start, end)
                logger.error(
                    "Batch %d-%d failed; checkpoint held at %d until it is repaired",
                    start,
                    end,
                    self._last_processed_block,
                )
                return
            start = end + 1
        self._failed_range = None

    async def _process_batch(self, from_block: int, to_block: int) -> bool:
        attempts = self._settings.batch_max_attempts
        delay = self._settings.batch_retry_delay_seconds
        for attempt in range(1, attempts + 1):
            try:
                entries = await self._fetch_logs(from_block, to_block)
                events = self._normalize(entries)
                for event in events:
                    await self._dispatch(event)
                await self._advance_checkpoint(to_block)
                self._stats.batches_processed += 1
                logger.debug(
                    "Batch %d-%d: %d events", from_block, to_block, len(events)
                )
                return True
            except (ChainClientError, SQLAlchemyError) as e:
                self._stats.last_error = str(e)
                logger.warning(
                    "Batch %d-%d failed (attempt %d/%d): %s",
                    from_block,
                    to_block,
                    attempt,
                    attempts,
                    e,
                )
                if attempt < attempts:
                    with contextlib.suppress(TimeoutError):
                        await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    if self._stopping:
                        return False
                    delay *= 2

        self._stats.batches_failed += 1
        return False

    async def _fetch_logs(self, from_block: int, to_block: int) -> list[RawLogEntry]:
        """Fetch logs, halving the range while the node reports it too large."""
        try:
            return await self._chain.logs_in_range(from_block, to_block, self._log_filter)
        except RangeTooLargeError:
            if from_block >= to_block:
                raise
            mid = (from_block + to_block) // 2
            logger.info(
                "Range %d-%d too large; splitting at %d", from_block, to_block, mid
            )
            left = await self._fetch_logs(from_block, mid)
            right = await self._fetch_logs(mid + 1, to_block)
            return left + right

    def _normalize(self, entries: list[RawLogEntry]) -> list[RawEvent]:
        return self._normalizer.normalize_batch(entries, on_skip=self._count_skipped)

    def _count_skipped(self, error: UnknownEventKindError) -> None:
        self._stats.events_skipped += 1

    async def _dispatch(self, event: RawEvent) -> None:
        try:
            handled = await self._registry.dispatch(event)
        except ProjectionWriteError as e:
            self._stats.projection_failures += 1
            self._stats.last_error = str(e)
            logger.error("%s", e)
            return
        if handled:
            self._stats.events_processed += 1
        else:
            self._stats.events_skipped += 1

    async def _advance_checkpoint(self, block_number: int) -> None:
        if block_number <= self._last_processed_block:
            return
        await self._checkpoints.save(block_number)
        self._last_processed_block = block_number
