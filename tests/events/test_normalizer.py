"""Tests for the event normalizer."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from stake_event_indexer.chain.models import RawLogEntry
from stake_event_indexer.events.models import (
    EventKind,
    RewardPayload,
    StakePayload,
    TransferPayload,
    format_ether,
)
from stake_event_indexer.events.normalizer import (
    STAKED_TOPIC,
    TOPIC_KINDS,
    TRANSFER_TOPIC,
    EventNormalizer,
    UnknownEventKindError,
    classify,
)

WALLET = "0x00000000000000000000000000000000000000aa"
OTHER = "0x00000000000000000000000000000000000000bb"
STAKE_CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
ONE_ETHER = 10**18


@pytest.fixture
def normalizer() -> EventNormalizer:
    return EventNormalizer()


class TestTopics:
    def test_transfer_topic_matches_erc20(self) -> None:
        assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

    def test_topics_are_prefixed_hashes(self) -> None:
        for topic in TOPIC_KINDS:
            assert topic.startswith("0x")
            assert len(topic) == 66

    def test_every_known_kind_has_a_topic(self) -> None:
        assert set(TOPIC_KINDS.values()) == {
            EventKind.STAKE_OPENED,
            EventKind.STAKE_CLOSED,
            EventKind.REWARD_CLAIMED,
            EventKind.TOKEN_TRANSFER,
        }

    def test_classify_unknown(self) -> None:
        entry = RawLogEntry(STAKE_CONTRACT, ("0x" + "ff" * 32,), "0x", 1, "0x01", 0)
        assert classify(entry) == EventKind.UNKNOWN
        assert classify(RawLogEntry(STAKE_CONTRACT, (), "0x", 1, "0x01", 0)) == EventKind.UNKNOWN


class TestEventNormalizer:
    def test_stake_with_indexed_user(self, normalizer: EventNormalizer, stake_log) -> None:
        entry = stake_log(WALLET, ONE_ETHER, block=100, log_index=3).with_timestamp(1_760_000_000)

        event = normalizer.normalize(entry)

        assert event.kind == EventKind.STAKE_OPENED
        assert event.payload == StakePayload(user=WALLET, amount_wei=ONE_ETHER, timestamp=1_760_001_200)
        assert event.identity == (entry.transaction_hash, 3)
        assert event.ordering_key == (100, 3)
        assert event.user_address == WALLET
        assert event.observed_at == datetime.fromtimestamp(1_760_000_000, tz=UTC)
        assert event.arguments == {
            "user": WALLET,
            "amount": str(ONE_ETHER),
            "timestamp": "1760001200",
        }

    def test_stake_with_non_indexed_user(self, normalizer: EventNormalizer, unstake_log) -> None:
        entry = unstake_log(WALLET, ONE_ETHER // 2, block=7, indexed_user=False)

        event = normalizer.normalize(entry)

        assert event.kind == EventKind.STAKE_CLOSED
        assert isinstance(event.payload, StakePayload)
        assert event.payload.user == WALLET
        assert event.payload.amount_wei == ONE_ETHER // 2

    def test_observed_at_falls_back_to_event_timestamp(
        self, normalizer: EventNormalizer, reward_log
    ) -> None:
        entry = reward_log(WALLET, 5, block=10, timestamp=1_700_000_000)

        event = normalizer.normalize(entry)

        assert isinstance(event.payload, RewardPayload)
        assert event.observed_at == datetime.fromtimestamp(1_700_000_000, tz=UTC)

    def test_transfer(self, normalizer: EventNormalizer, transfer_log) -> None:
        entry = transfer_log(STAKE_CONTRACT, OTHER, 3 * ONE_ETHER, block=12, log_index=1)

        event = normalizer.normalize(entry)

        assert event.kind == EventKind.TOKEN_TRANSFER
        assert event.payload == TransferPayload(
            sender=STAKE_CONTRACT, recipient=OTHER, amount_wei=3 * ONE_ETHER
        )
        assert event.user_address == OTHER
        assert event.arguments["value"] == str(3 * ONE_ETHER)

    def test_unknown_signature_raises(self, normalizer: EventNormalizer) -> None:
        entry = RawLogEntry(STAKE_CONTRACT, ("0x" + "ff" * 32,), "0x", 1, "0x01", 0)

        with pytest.raises(UnknownEventKindError) as exc_info:
            normalizer.normalize(entry)
        assert exc_info.value.entry is entry

    def test_malformed_data_raises(self, normalizer: EventNormalizer) -> None:
        entry = RawLogEntry(STAKE_CONTRACT, (STAKED_TOPIC,), "0x1234", 1, "0x01", 0)

        with pytest.raises(UnknownEventKindError):
            normalizer.normalize(entry)

    def test_normalize_batch_sorts_and_skips_unknown(
        self, normalizer: EventNormalizer, stake_log
    ) -> None:
        unknown = RawLogEntry(STAKE_CONTRACT, ("0x" + "ff" * 32,), "0x", 5, "0x09", 0)
        entries = [
            stake_log(WALLET, 1, block=6, log_index=0),
            unknown,
            stake_log(WALLET, 2, block=5, log_index=4),
            stake_log(WALLET, 3, block=5, log_index=1),
        ]

        events = normalizer.normalize_batch(entries)

        assert [e.ordering_key for e in events] == [(5, 1), (5, 4), (6, 0)]

    def test_normalize_batch_reports_each_skip(
        self, normalizer: EventNormalizer, stake_log
    ) -> None:
        unknown = RawLogEntry(STAKE_CONTRACT, ("0x" + "ff" * 32,), "0x", 5, "0x09", 0)
        untopiced = RawLogEntry(STAKE_CONTRACT, (), "0x", 7, "0x0a", 2)
        skipped: list[UnknownEventKindError] = []

        events = normalizer.normalize_batch(
            [untopiced, stake_log(WALLET, 1, block=6), unknown], on_skip=skipped.append
        )

        assert [e.ordering_key for e in events] == [(6, 0)]
        assert [error.entry for error in skipped] == [untopiced, unknown]


class TestFormatEther:
    @pytest.mark.parametrize(
        ("wei", "expected"),
        [
            (ONE_ETHER, "1.0"),
            (ONE_ETHER // 2, "0.5"),
            (3 * ONE_ETHER // 2, "1.5"),
            (1, "0.000000000000000001"),
            (0, "0.0"),
        ],
    )
    def test_format_ether(self, wei: int, expected: str) -> None:
        assert format_ether(wei) == expected
