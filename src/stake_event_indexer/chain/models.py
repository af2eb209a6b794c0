"""Data models for the chain client adapter."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def to_hex(value: Any) -> str:
    """Render a web3 value (HexBytes, bytes, int or hex str) as a 0x-prefixed lowercase string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    if isinstance(value, int):
        return hex(value)
    hex_method = getattr(value, "hex", None)
    if callable(hex_method) and not isinstance(value, str):
        hexed = str(hex_method())
    else:
        hexed = str(value)
    hexed = hexed.lower()
    return hexed if hexed.startswith("0x") else "0x" + hexed


def to_int(value: Any) -> int:
    """Parse an int that may arrive as a JSON-RPC hex quantity."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise TypeError(f"Cannot convert {type(value).__name__} to int")


@dataclass(frozen=True)
class LogFilter:
    """Address/topic filter for log queries and subscriptions."""

    addresses: tuple[str, ...]
    topics: tuple[str, ...] = ()

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"address": list(self.addresses)}
        if self.topics:
            # Single position, OR-ed signatures.
            params["topics"] = [list(self.topics)]
        return params


@dataclass(frozen=True)
class RawLogEntry:
    """A log as returned by the node, before normalization."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int
    removed: bool = False
    block_timestamp: datetime | None = field(default=None, compare=False)

    @classmethod
    def from_rpc(cls, log: dict[str, Any]) -> RawLogEntry:
        """Create an entry from a web3 log dict or a raw JSON-RPC log object."""
        return cls(
            address=to_hex(log["address"]),
            topics=tuple(to_hex(t) for t in log.get("topics") or ()),
            data=to_hex(log.get("data") or "0x"),
            block_number=to_int(log["blockNumber"]),
            transaction_hash=to_hex(log["transactionHash"]),
            log_index=to_int(log["logIndex"]),
            removed=bool(log.get("removed", False)),
        )

    @property
    def ordering_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def with_timestamp(self, timestamp: int | datetime) -> RawLogEntry:
        if isinstance(timestamp, int):
            timestamp = datetime.fromtimestamp(timestamp, tz=UTC)
        return dataclasses.replace(self, block_timestamp=timestamp)
