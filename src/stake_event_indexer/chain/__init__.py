"""Chain access layer - Historical log queries and live subscriptions."""

from stake_event_indexer.chain.client import (
    ChainClient,
    ChainClientError,
    ChainConnectionError,
    RangeTooLargeError,
)
from stake_event_indexer.chain.models import LogFilter, RawLogEntry
from stake_event_indexer.chain.subscription import (
    ConnectionState,
    LogSubscription,
    SubscriptionError,
)

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ChainConnectionError",
    "ConnectionState",
    "LogFilter",
    "LogSubscription",
    "RangeTooLargeError",
    "RawLogEntry",
    "SubscriptionError",
]
