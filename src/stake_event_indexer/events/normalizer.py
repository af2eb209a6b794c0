"""Map raw chain logs to canonical `RawEvent` records.

The staking contract emits:
- Staked(address user, uint256 amount, uint256 timestamp)
- Unstaked(address user, uint256 amount, uint256 timestamp)
- RewardsClaimed(address user, uint256 amount, uint256 timestamp)

and the reward token emits the ERC20 Transfer(address from, address to, uint256 value).
`user` may or may not be indexed depending on the deployed ABI; both layouts decode.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from web3 import Web3

from stake_event_indexer.chain.models import RawLogEntry
from stake_event_indexer.events.models import (
    EventKind,
    EventPayload,
    RawEvent,
    RewardPayload,
    StakePayload,
    TransferPayload,
)

logger = logging.getLogger(__name__)


def _signature_topic(signature: str) -> str:
    return "0x" + Web3.keccak(text=signature).hex().removeprefix("0x")


STAKED_TOPIC = _signature_topic("Staked(address,uint256,uint256)")
UNSTAKED_TOPIC = _signature_topic("Unstaked(address,uint256,uint256)")
REWARDS_CLAIMED_TOPIC = _signature_topic("RewardsClaimed(address,uint256,uint256)")
TRANSFER_TOPIC = _signature_topic("Transfer(address,address,uint256)")

TOPIC_KINDS: dict[str, EventKind] = {
    STAKED_TOPIC: EventKind.STAKE_OPENED,
    UNSTAKED_TOPIC: EventKind.STAKE_CLOSED,
    REWARDS_CLAIMED_TOPIC: EventKind.REWARD_CLAIMED,
    TRANSFER_TOPIC: EventKind.TOKEN_TRANSFER,
}


class UnknownEventKindError(Exception):
    """Raised for log shapes the indexer does not recognize."""

    def __init__(self, entry: RawLogEntry, reason: str) -> None:
        super().__init__(
            f"Unrecognized log tx={entry.transaction_hash} index={entry.log_index}: {reason}"
        )
        self.entry = entry


def _topic_to_address(topic: str) -> str:
    return ("0x" + topic.removeprefix("0x")[-40:]).lower()


def _data_words(data: str) -> list[str]:
    body = data.removeprefix("0x")
    if len(body) % 64:
        raise ValueError("log data is not a whole number of 32-byte words")
    return [body[i : i + 64] for i in range(0, len(body), 64)]


def _decode_args(kind: EventKind, entry: RawLogEntry) -> list[str]:
    """Return the event's argument words (hex, no prefix) in ABI order."""
    words = [t.removeprefix("0x").rjust(64, "0") for t in entry.topics[1:]]
    words.extend(_data_words(entry.data))
    expected = 3
    if len(words) != expected:
        raise ValueError(f"{kind.event_name} expects {expected} arguments, got {len(words)}")
    return words


def classify(entry: RawLogEntry) -> EventKind:
    """Return the event kind for a log, or `EventKind.UNKNOWN`."""
    if not entry.topics:
        return EventKind.UNKNOWN
    return TOPIC_KINDS.get(entry.topics[0].lower(), EventKind.UNKNOWN)


def decode_payload(kind: EventKind, entry: RawLogEntry) -> EventPayload:
    words = _decode_args(kind, entry)
    if kind in (EventKind.STAKE_OPENED, EventKind.STAKE_CLOSED):
        return StakePayload(
            user=_topic_to_address(words[0]),
            amount_wei=int(words[1], 16),
            timestamp=int(words[2], 16),
        )
    if kind == EventKind.REWARD_CLAIMED:
        return RewardPayload(
            user=_topic_to_address(words[0]),
            amount_wei=int(words[1], 16),
            timestamp=int(words[2], 16),
        )
    if kind == EventKind.TOKEN_TRANSFER:
        return TransferPayload(
            sender=_topic_to_address(words[0]),
            recipient=_topic_to_address(words[1]),
            amount_wei=int(words[2], 16),
        )
    raise ValueError(f"No decoder for {kind}")


def _arguments(payload: EventPayload) -> dict[str, str]:
    if isinstance(payload, (StakePayload, RewardPayload)):
        return {
            "user": payload.user,
            "amount": str(payload.amount_wei),
            "timestamp": str(payload.timestamp),
        }
    if isinstance(payload, TransferPayload):
        return {
            "from": payload.sender,
            "to": payload.recipient,
            "value": str(payload.amount_wei),
        }
    return {}


class EventNormalizer:
    """Pure mapping from `RawLogEntry` to `RawEvent`."""

    def normalize(self, entry: RawLogEntry) -> RawEvent:
        """Normalize a single log.

        Raises:
            UnknownEventKindError: For unrecognized signatures or malformed arguments.
        """
        kind = classify(entry)
        if kind == EventKind.UNKNOWN:
            topic0 = entry.topics[0] if entry.topics else None
            raise UnknownEventKindError(entry, f"unknown signature {topic0}")
        try:
            payload = decode_payload(kind, entry)
        except ValueError as e:
            raise UnknownEventKindError(entry, str(e)) from e

        if entry.block_timestamp is not None:
            observed_at = entry.block_timestamp
        elif isinstance(payload, (StakePayload, RewardPayload)) and payload.timestamp > 0:
            observed_at = datetime.fromtimestamp(payload.timestamp, tz=UTC)
        else:
            observed_at = datetime.now(UTC)

        return RawEvent(
            contract_address=entry.address.lower(),
            kind=kind,
            transaction_hash=entry.transaction_hash.lower(),
            block_number=entry.block_number,
            log_index=entry.log_index,
            payload=payload,
            observed_at=observed_at,
            arguments=_arguments(payload),
        )

    def normalize_batch(
        self,
        entries: Iterable[RawLogEntry],
        *,
        on_skip: Callable[[UnknownEventKindError], None] | None = None,
    ) -> list[RawEvent]:
        """Normalize a batch, skipping unknown logs, sorted by (block, log index).

        `on_skip` is called with the error for every skipped entry.
        """
        events: list[RawEvent] = []
        for entry in entries:
            try:
                events.append(self.normalize(entry))
            except UnknownEventKindError as e:
                logger.info("Skipping log: %s", e)
                if on_skip is not None:
                    on_skip(e)
        events.sort(key=lambda ev: ev.ordering_key)
        return events
