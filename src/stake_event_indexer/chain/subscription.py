"""Live log and block-header subscription over WebSocket JSON-RPC.

Uses `eth_subscribe` for `logs` (filtered by the watched contracts) and
`newHeads`. The stream reconnects with exponential backoff; anything missed
while disconnected is picked up by the indexer's reconciliation pass.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from stake_event_indexer.chain.models import LogFilter, RawLogEntry, to_int

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 30  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1  # seconds

_handle_ids = itertools.count(1)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class StreamStats:
    logs_received: int = 0
    blocks_received: int = 0
    removed_logs_skipped: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


class SubscriptionError(Exception):
    """Base exception for subscription errors."""


class SubscriptionConnectionError(SubscriptionError):
    """Raised when connection to the WebSocket endpoint fails."""


LogCallback = Callable[[RawLogEntry], Awaitable[None]]
BlockCallback = Callable[[int], Awaitable[None]]


class LogSubscription:
    """Subscription handle returned by `ChainClient.subscribe`.

    Delivery order relative to historical `eth_getLogs` queries is not
    guaranteed, and events may be delivered more than once (for example
    after a reconnect).
    """

    def __init__(
        self,
        ws_url: str,
        log_filter: LogFilter,
        *,
        on_event: LogCallback,
        on_block: BlockCallback,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        max_reconnect_delay: int = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: int = DEFAULT_INITIAL_RECONNECT_DELAY,
    ) -> None:
        self.id = next(_handle_ids)
        self._ws_url = ws_url
        self._filter = log_filter
        self._on_event = on_event
        self._on_block = on_block
        self._ping_interval = ping_interval
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay

        self._state = ConnectionState.DISCONNECTED
        self._stats = StreamStats()

        self._ws: ClientConnection | None = None
        self._running = False
        self._closed = False
        self._task: asyncio.Task[None] | None = None

        # Server subscription id -> "logs" | "newHeads"
        self._subscriptions: dict[str, str] = {}
        self._pending_requests: dict[int, str] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def closed(self) -> bool:
        return self._closed

    def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Log subscription %d state: %s -> %s", self.id, old.value, new_state.value)

    def start(self) -> None:
        """Start the background stream task."""
        if self._running:
            raise RuntimeError("Subscription already running")
        if self._closed:
            raise RuntimeError("Subscription is closed")
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"log-subscription-{self.id}")

    async def close(self) -> None:
        """Stop the stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._running = False
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def _connect(self) -> ClientConnection:
        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(
                self._ws_url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise SubscriptionConnectionError(f"Failed to connect to {self._ws_url}: {e}") from e

        self._subscriptions.clear()
        self._pending_requests = {1: "logs", 2: "newHeads"}
        await ws.send(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "id": 1,
                    "method": "eth_subscribe",
                    "params": ["logs", self._filter.to_params()],
                }
            )
        )
        await ws.send(
            json.dumps({"jsonrpc": "2.0", "id": 2, "method": "eth_subscribe", "params": ["newHeads"]})
        )

        self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        logger.info("Subscribed to logs and new heads: %s", self._ws_url)
        return ws

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON message on subscription stream")
            return

        request_id = data.get("id")
        if request_id is not None:
            kind = self._pending_requests.pop(request_id, None)
            if kind is None:
                return
            if "error" in data:
                raise SubscriptionError(f"eth_subscribe {kind} rejected: {data['error']}")
            self._subscriptions[str(data["result"])] = kind
            return

        if data.get("method") != "eth_subscription":
            logger.debug("Ignoring subscription message: %r", data.get("method"))
            return

        params: dict[str, Any] = data.get("params") or {}
        kind = self._subscriptions.get(str(params.get("subscription")))
        result = params.get("result")
        if kind is None or result is None:
            return

        self._stats.last_message_time = time.time()
        if kind == "newHeads":
            self._stats.blocks_received += 1
            await self._on_block(to_int(result["number"]))
            return

        try:
            entry = RawLogEntry.from_rpc(result)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse subscribed log: %s", e)
            return
        if entry.removed:
            self._stats.removed_logs_skipped += 1
            logger.info(
                "Skipping removed log tx=%s index=%d", entry.transaction_hash, entry.log_index
            )
            return
        self._stats.logs_received += 1
        await self._on_event(entry)

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            async for message in ws:
                if not self._running:
                    break
                if isinstance(message, str):
                    await self._handle_message(message)
                else:
                    logger.debug("Ignoring non-text subscription message")
            if self._running:
                raise SubscriptionConnectionError("Subscription stream ended")
        except websockets.ConnectionClosed as e:
            logger.warning("Subscription connection closed: %s", e)
            raise

    async def _run(self) -> None:
        delay = self._initial_reconnect_delay
        while self._running:
            try:
                self._ws = await self._connect()
                delay = self._initial_reconnect_delay
                await self._listen(self._ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._running:
                    break
                self._stats.reconnect_count += 1
                self._stats.last_error = str(e)
                logger.warning("Log subscription error, reconnecting in %ss: %s", delay, e)
                self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(delay)
                delay = min(self._max_reconnect_delay, delay * 2)
            finally:
                with contextlib.suppress(Exception):
                    if self._ws:
                        await self._ws.close()
                self._ws = None

        self._set_state(ConnectionState.DISCONNECTED)
