"""Event normalization - Raw logs to canonical contract events."""

from stake_event_indexer.events.models import (
    EventKind,
    RawEvent,
    RewardPayload,
    StakePayload,
    TransferPayload,
    UnknownPayload,
    format_ether,
    wei_to_ether,
)
from stake_event_indexer.events.normalizer import EventNormalizer, UnknownEventKindError

__all__ = [
    "EventKind",
    "EventNormalizer",
    "RawEvent",
    "RewardPayload",
    "StakePayload",
    "TransferPayload",
    "UnknownEventKindError",
    "UnknownPayload",
    "format_ether",
    "wei_to_ether",
]
