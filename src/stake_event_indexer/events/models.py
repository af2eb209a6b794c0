"""Canonical event models produced by the normalizer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Union

WEI_PER_ETHER = Decimal(10) ** 18


def wei_to_ether(amount_wei: int) -> Decimal:
    """Convert a wei amount to ether units without float rounding."""
    return Decimal(amount_wei) / WEI_PER_ETHER


def format_ether(amount_wei: int) -> str:
    """Format like ethers.formatEther: at least one decimal, no trailing zeros."""
    value = wei_to_ether(amount_wei)
    text = format(value.normalize(), "f")
    if "." not in text:
        text += ".0"
    return text


class EventKind(str, Enum):
    """Known contract event kinds."""

    STAKE_OPENED = "stake_opened"
    STAKE_CLOSED = "stake_closed"
    REWARD_CLAIMED = "reward_claimed"
    TOKEN_TRANSFER = "token_transfer"
    UNKNOWN = "unknown"

    @property
    def event_name(self) -> str:
        """Solidity event name."""
        return _EVENT_NAMES[self]


_EVENT_NAMES = {
    EventKind.STAKE_OPENED: "Staked",
    EventKind.STAKE_CLOSED: "Unstaked",
    EventKind.REWARD_CLAIMED: "RewardsClaimed",
    EventKind.TOKEN_TRANSFER: "Transfer",
    EventKind.UNKNOWN: "Unknown",
}


@dataclass(frozen=True)
class StakePayload:
    """Staked / Unstaked arguments."""

    user: str
    amount_wei: int
    timestamp: int


@dataclass(frozen=True)
class RewardPayload:
    """RewardsClaimed arguments."""

    user: str
    amount_wei: int
    timestamp: int


@dataclass(frozen=True)
class TransferPayload:
    """ERC20 Transfer arguments."""

    sender: str
    recipient: str
    amount_wei: int


@dataclass(frozen=True)
class UnknownPayload:
    """A log whose signature is not recognized."""

    topic0: str | None


EventPayload = Union[StakePayload, RewardPayload, TransferPayload, UnknownPayload]


@dataclass(frozen=True)
class RawEvent:
    """A normalized contract event.

    Identity is `(transaction_hash, log_index)`; ordering is
    `(block_number, log_index)`.
    """

    contract_address: str
    kind: EventKind
    transaction_hash: str
    block_number: int
    log_index: int
    payload: EventPayload
    observed_at: datetime
    arguments: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def identity(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    @property
    def ordering_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def user_address(self) -> str | None:
        """Wallet the event is about (recipient for transfers)."""
        payload = self.payload
        if isinstance(payload, (StakePayload, RewardPayload)):
            return payload.user
        if isinstance(payload, TransferPayload):
            return payload.recipient
        return None

    @property
    def amount_wei(self) -> int | None:
        payload = self.payload
        if isinstance(payload, (StakePayload, RewardPayload, TransferPayload)):
            return payload.amount_wei
        return None
