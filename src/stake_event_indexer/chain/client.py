"""EVM chain client adapter with retry, failover and caching.

This module provides the chain client used by the event indexer with:
- Rate limiting to respect provider limits
- Per-request timeouts
- Retry logic with exponential backoff
- Failover to a secondary RPC URL
- Optional Redis caching of (immutable) block timestamps
- Live log/new-head subscriptions over WebSocket
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from stake_event_indexer.chain.models import LogFilter, RawLogEntry
from stake_event_indexer.chain.subscription import BlockCallback, LogCallback, LogSubscription

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_TIMESTAMP_CACHE_SIZE = 4096

# Block timestamps never change once mined
BLOCK_TIMESTAMP_CACHE_TTL_SECONDS = 24 * 3600

# Provider messages for eth_getLogs ranges/result sets that are too large.
_RANGE_TOO_LARGE_MARKERS = (
    "query returned more than",
    "block range is too large",
    "block range too large",
    "exceed maximum block range",
    "block range exceeds",
    "range too large",
    "range is too large",
    "too many blocks",
    "log response size exceeded",
    "response size exceeded",
)

# Throttling messages; these are retried, never split.
_RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "request count exceeded",
    "429",
)

# Failures of a single RPC attempt that are worth retrying or failing over.
_TRANSIENT_ERRORS = (Web3Exception, aiohttp.ClientError, OSError, TimeoutError)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class ChainConnectionError(ChainClientError):
    """Raised when the node is unreachable after all retries and failover."""


class RangeTooLargeError(ChainClientError):
    """Raised when the node rejects a log query range; the caller must shrink it."""

    def __init__(self, from_block: int, to_block: int, message: str) -> None:
        super().__init__(f"Log range {from_block}-{to_block} too large: {message}")
        self.from_block = from_block
        self.to_block = to_block


def _is_range_too_large(error: Exception) -> bool:
    text = str(error).lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return False
    return any(marker in text for marker in _RANGE_TOO_LARGE_MARKERS)


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Chain client adapter used by the event indexer.

    Example:
        ```python
        client = ChainClient(
            "http://127.0.0.1:8545",
            ws_url="ws://127.0.0.1:8545",
        )
        height = await client.current_height()
        logs = await client.logs_in_range(100, 200, LogFilter(addresses=("0x...",)))
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        ws_url: str,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            ws_url: WebSocket endpoint used for live subscriptions.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block timestamps.
            request_timeout_seconds: Timeout applied to every RPC call.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts on failure.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._ws_url = ws_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._timeout = request_timeout_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "chain:"
        self._timestamps: OrderedDict[int, int] = OrderedDict()
        self._subscriptions: dict[int, LogSubscription] = {}

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": self._timeout}))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call(self, w3: AsyncWeb3[AsyncHTTPProvider], func_name: str, *args: Any) -> Any:
        method = getattr(w3.eth, func_name)
        return await asyncio.wait_for(method(*args), timeout=self._timeout)

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            RangeTooLargeError: If the node rejects a log range (never retried).
            ChainConnectionError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        targets: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = []
        if self._w3_fallback is None or self._should_try_primary():
            targets.append(("Primary", self._w3))
        if self._w3_fallback is not None:
            targets.append(("Fallback", self._w3_fallback))

        for label, w3 in targets:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await self._call(w3, func_name, *args)
                    if w3 is self._w3:
                        self._primary_healthy = True
                    else:
                        logger.info("Fallback RPC succeeded for %s", func_name)
                    return result
                except _TRANSIENT_ERRORS as e:
                    if func_name == "get_logs" and _is_range_too_large(e):
                        params = args[0] if args else {}
                        raise RangeTooLargeError(
                            int(params.get("fromBlock", 0)), int(params.get("toBlock", 0)), str(e)
                        ) from e
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label,
                        func_name,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2

            if w3 is self._w3:
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise ChainConnectionError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def current_height(self) -> int:
        """Get the latest block number.

        Raises:
            ChainConnectionError: If the node is unreachable.
        """
        return int(await self._execute_with_retry("get_block_number"))

    async def logs_in_range(
        self,
        from_block: int,
        to_block: int,
        log_filter: LogFilter,
    ) -> list[RawLogEntry]:
        """Fetch logs for an inclusive block range, ordered by (block, log index).

        Block timestamps are attached to every returned entry. Logs flagged
        `removed` by the node are dropped.

        Raises:
            RangeTooLargeError: The node refused the range; retry with a smaller one.
            ChainConnectionError: The node is unreachable.
        """
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range {from_block}-{to_block}")

        params: dict[str, Any] = {
            "address": [AsyncWeb3.to_checksum_address(a) for a in log_filter.addresses],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        if log_filter.topics:
            params["topics"] = [list(log_filter.topics)]

        logs = await self._execute_with_retry("get_logs", params)
        entries = [RawLogEntry.from_rpc(dict(log)) for log in logs]
        entries = [e for e in entries if not e.removed]
        entries.sort(key=lambda e: e.ordering_key)
        return await self.attach_timestamps(entries)

    async def block_timestamp(self, block_number: int) -> int:
        """Get a block's unix timestamp (cached in-process and in Redis)."""
        cached_local = self._timestamps.get(block_number)
        if cached_local is not None:
            return cached_local

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            timestamp = int(cached)
        else:
            block = await self._execute_with_retry("get_block", block_number)
            timestamp = int(block["timestamp"])
            await self._set_cached(cache_key, str(timestamp), BLOCK_TIMESTAMP_CACHE_TTL_SECONDS)

        self._timestamps[block_number] = timestamp
        while len(self._timestamps) > DEFAULT_TIMESTAMP_CACHE_SIZE:
            self._timestamps.popitem(last=False)
        return timestamp

    async def attach_timestamps(self, entries: Sequence[RawLogEntry]) -> list[RawLogEntry]:
        """Return copies of `entries` with their block timestamps set."""
        if not entries:
            return []
        block_numbers = sorted({e.block_number for e in entries if e.block_timestamp is None})
        results = await asyncio.gather(
            *(self.block_timestamp(n) for n in block_numbers), return_exceptions=True
        )
        timestamps: dict[int, int] = {}
        for number, result in zip(block_numbers, results, strict=True):
            if isinstance(result, BaseException):
                raise ChainConnectionError(f"Failed to get block {number}: {result}") from result
            timestamps[number] = result
        return [
            e if e.block_timestamp is not None else e.with_timestamp(timestamps[e.block_number])
            for e in entries
        ]

    def subscribe(
        self,
        log_filter: LogFilter,
        on_event: LogCallback,
        on_block: BlockCallback,
    ) -> LogSubscription:
        """Subscribe to live logs and new block numbers.

        Returns:
            The subscription handle; pass it to `unsubscribe` to release it.
        """
        subscription = LogSubscription(
            self._ws_url,
            log_filter,
            on_event=on_event,
            on_block=on_block,
        )
        subscription.start()
        self._subscriptions[subscription.id] = subscription
        return subscription

    async def unsubscribe(self, handle: LogSubscription) -> None:
        """Release a subscription. Safe to call on an already-closed handle."""
        self._subscriptions.pop(handle.id, None)
        await handle.close()

    async def health_check(self) -> bool:
        try:
            await self._execute_with_retry("get_block_number")
            return True
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        """Close subscriptions and HTTP provider sessions."""
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription)

        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
