#!/usr/bin/env python3
"""Tests for event schemas and the event processor."""

import logging

import pytest

from blockfinax_sync.event_processor import EventProcessor
from blockfinax_sync.events import (
    TRADE_SCHEMA,
    TREASURY_SCHEMA,
    CollateralPaid,
    RewardRateUpdated,
    TradeEventType,
    TreasuryEventType,
    abi_name_to_field,
    normalize_arg,
)

from conftest import (
    CONTRACT,
    OTHER,
    THIRD,
    USER,
    collateral_paid,
    pga_created,
    pga_record_id,
    pga_vote_cast,
    staked,
    tx_hash,
)


class TestEventSchema:
    """Tests for the typed event schemas."""

    @pytest.mark.parametrize("abi_name,field_name", [
        ("pgaId", "pga_id"),
        ("metadataURI", "metadata_uri"),
        ("votingPower", "voting_power"),
        ("isFinancier", "is_financier"),
        ("amount", "amount"),
    ])
    def test_abi_name_to_field(self, abi_name, field_name):
        assert abi_name_to_field(abi_name) == field_name

    def test_normalize_bytes(self):
        assert normalize_arg(b"\x01\xab") == "0x01ab"
        assert normalize_arg(5) == 5

    def test_schemas_cover_every_event(self):
        assert set(TRADE_SCHEMA.event_types) == set(TradeEventType)
        assert set(TREASURY_SCHEMA.event_types) == set(TreasuryEventType)

    def test_build_payload(self):
        payload = TRADE_SCHEMA.build_payload(
            TradeEventType.COLLATERAL_PAID,
            {"pgaId": b"\x12" * 32, "buyer": USER, "collateralAmount": 100, "timestamp": 1},
        )
        assert isinstance(payload, CollateralPaid)
        assert payload.pga_id == "0x" + "12" * 32
        assert payload.participants() == (USER,)

    def test_build_payload_rejects_mismatched_args(self):
        with pytest.raises(TypeError):
            TRADE_SCHEMA.build_payload(TradeEventType.COLLATERAL_PAID, {"pgaId": "x"})

    def test_singleton_record_ids(self):
        payload = RewardRateUpdated(old_rate=1, new_rate=2, total_staked=3)
        assert payload.record_ids() == ("config",)
        assert payload.participants() == ()

    def test_broadcast_sets(self):
        assert TRADE_SCHEMA.is_broadcast(TradeEventType.PGA_CREATED)
        assert not TRADE_SCHEMA.is_broadcast(TradeEventType.COLLATERAL_PAID)
        assert TREASURY_SCHEMA.is_broadcast(TreasuryEventType.PROPOSAL_CREATED)
        assert not TREASURY_SCHEMA.is_broadcast(TreasuryEventType.STAKED)


class TestEventProcessor:
    """Tests for EventProcessor."""

    def test_log_filter_covers_all_topics(self, trade_processor):
        log_filter = trade_processor.log_filter()

        assert log_filter.address == CONTRACT
        assert len(log_filter.event_topics) == len(TradeEventType)
        assert set(log_filter.event_topics) == set(trade_processor._events_by_topic)

    def test_log_filter_requires_address(self):
        processor = EventProcessor(TRADE_SCHEMA)
        with pytest.raises(ValueError, match="No contract address"):
            processor.log_filter()

    def test_parse_pga_created(self, trade_processor):
        """Test decoding a log with indexed string, address and data fields."""
        record = trade_processor.parse_log(pga_created("PGA-1", USER, OTHER, block=100, tx=1, log_index=3), timestamp=42)

        assert record is not None
        assert record.event_type is TradeEventType.PGA_CREATED
        assert record.block_number == 100
        assert record.transaction_hash == tx_hash(1)
        assert record.log_index == 3
        assert record.timestamp == 42
        assert record.payload.buyer == USER
        assert record.payload.seller == OTHER
        assert record.payload.trade_value == 10_000
        assert record.payload.metadata_uri == "ipfs://metadata"
        assert record.record_ids() == (
            pga_record_id("PGA-1"),
            f"pgas:{USER.lower()}",
            f"pgas:{OTHER.lower()}",
        )
        assert trade_processor.metrics['parsed'] == 1

    def test_parse_hex_string_log(self, trade_processor):
        """Test that logs with hex-string fields (WebSocket pushes) decode too."""
        raw = collateral_paid("PGA-1", USER, block=7, tx=2)
        as_strings = {
            **raw,
            "blockNumber": hex(raw["blockNumber"]),
            "logIndex": "0x0",
            "transactionIndex": "0x0",
            "data": "0x" + bytes(raw["data"]).hex(),
            "topics": ["0x" + bytes(topic).hex() for topic in raw["topics"]],
            "transactionHash": "0x" + bytes(raw["transactionHash"]).hex(),
            "blockHash": "0x" + bytes(raw["blockHash"]).hex(),
        }

        record = trade_processor.parse_log(as_strings)

        assert record is not None
        assert record.block_number == 7
        assert record.payload.collateral_amount == 100

    def test_parse_treasury_log(self, treasury_processor):
        record = treasury_processor.parse_log(staked(USER, 500, block=9, tx=3))

        assert record is not None
        assert record.event_type is TreasuryEventType.STAKED
        assert record.payload.amount == 500
        assert record.payload.is_financier is False
        assert record.record_ids() == (f"stake:{USER.lower()}",)

    def test_untracked_topic_skipped(self, trade_processor):
        """Test that logs of the other domain are skipped, not errors."""
        assert trade_processor.parse_log(staked(USER, 1, block=1, tx=1)) is None
        assert trade_processor.metrics['unknown_topics'] == 1
        assert trade_processor.metrics['parse_errors'] == 0

    def test_log_without_topics_skipped(self, trade_processor):
        assert trade_processor.parse_log({"topics": [], "data": b""}) is None
        assert trade_processor.metrics['unknown_topics'] == 1

    def test_malformed_log_dropped(self, trade_processor, caplog):
        """Test that a log whose data does not decode is logged and dropped."""
        raw = dict(collateral_paid("PGA-1", USER, block=1, tx=1))
        raw["data"] = b"\x00\x01"

        with caplog.at_level(logging.ERROR):
            assert trade_processor.parse_log(raw) is None

        assert trade_processor.metrics['parse_errors'] == 1
        assert "Error parsing trade log" in caplog.text

    def test_relevance_by_participant(self, trade_processor):
        record = trade_processor.parse_log(collateral_paid("PGA-1", USER, block=1, tx=1))

        assert trade_processor.is_relevant(record, USER)
        assert trade_processor.is_relevant(record, USER.lower())
        assert not trade_processor.is_relevant(record, THIRD)

    def test_broadcast_relevant_to_everyone(self, trade_processor):
        record = trade_processor.parse_log(pga_vote_cast("PGA-1", OTHER, block=1, tx=1))

        assert trade_processor.is_relevant(record, THIRD)

    def test_mark_seen(self, trade_processor):
        record = trade_processor.parse_log(collateral_paid("PGA-1", USER, block=1, tx=1))

        assert trade_processor.mark_seen(record)
        assert not trade_processor.mark_seen(record)
        assert trade_processor.metrics['duplicates'] == 1

    def test_seen_events_lru_eviction(self, trade_processor):
        trade_processor.MAX_SEEN_EVENTS = 2
        records = [
            trade_processor.parse_log(collateral_paid("PGA-1", USER, block=n, tx=n))
            for n in range(1, 4)
        ]
        for record in records:
            assert trade_processor.mark_seen(record)

        assert len(trade_processor.seen_events) == 2
        # Oldest entry was evicted, so it counts as new again
        assert trade_processor.mark_seen(records[0])

    def test_get_stats(self, trade_processor):
        stats = trade_processor.get_stats()
        assert stats['domain'] == "trade"
        assert stats['seen_events'] == 0
        assert stats['parsed'] == 0
