"""
Event processor for decoding and filtering contract logs.

This module turns raw logs into typed ``EventRecord`` objects, applies the
per-user relevance policy, and suppresses replays of live pushes. It is shared
by the historical fetcher and the live subscription manager so both paths
decode identically.
"""

import logging
from collections import OrderedDict
from collections.abc import Mapping
from typing import Any

from web3 import Web3
from web3.types import HexBytes

from .events import EventSchema, EventType
from .models import EventRecord
from .utils.contract_utility import ContractUtility
from .utils.event_source import LogFilter, to_hex, to_int

logger = logging.getLogger(__name__)


class EventProcessor:
    """Decodes, filters and deduplicates logs for one event schema."""

    MAX_SEEN_EVENTS: int = 10_000

    def __init__(self, schema: EventSchema, contract_address: str | None = None) -> None:
        """Initialize the event processor.

        Args:
            schema: Event schema of the domain being processed
            contract_address: Contract emitting the events (needed for filters)
        """
        self.schema = schema
        self.contract_address = (
            Web3.to_checksum_address(contract_address) if contract_address else None
        )

        contract = ContractUtility.codec_contract(schema.contract_name)

        # topic0 -> (event type, contract event used for decoding)
        self._events_by_topic: dict[str, tuple[EventType, Any]] = {}
        self._topics_by_type: dict[EventType, str] = {}
        for event_type in schema.event_types:
            event_obj = getattr(contract.events, event_type.value)()
            topic = to_hex(event_obj.topic)
            self._events_by_topic[topic] = (event_type, event_obj)
            self._topics_by_type[event_type] = topic

        # Identity keys of live events already delivered, with LRU eviction
        self.seen_events: OrderedDict[tuple[str, str], None] = OrderedDict()

        self.metrics = {
            'parsed': 0,
            'parse_errors': 0,
            'unknown_topics': 0,
            'duplicates': 0,
        }

    def log_filter(self) -> LogFilter:
        """Filter covering every tracked event of this schema."""
        if self.contract_address is None:
            raise ValueError(f"No contract address configured for {self.schema.domain} events")
        return LogFilter(
            address=self.contract_address,
            event_topics=tuple(self._topics_by_type.values()),
        )

    def parse_log(self, raw_log: Mapping[str, Any], timestamp: int = 0) -> EventRecord | None:
        """
        Decode a raw log into an EventRecord.

        Args:
            raw_log: Log as returned by ``eth_getLogs`` or a subscription push
            timestamp: Unix timestamp of the log's block

        Returns:
            EventRecord if the log belongs to a tracked event, None if it was
            skipped or could not be decoded
        """
        try:
            topics = raw_log.get('topics') or []
            if not topics:
                logger.warning("Log without topics skipped")
                self.metrics['unknown_topics'] += 1
                return None

            if (entry := self._events_by_topic.get(to_hex(topics[0]))) is None:
                logger.debug(f"Untracked topic {to_hex(topics[0])[:10]}... skipped")
                self.metrics['unknown_topics'] += 1
                return None

            event_type, event_obj = entry
            decoded = event_obj.process_log(_as_log_receipt(raw_log))
            payload = self.schema.build_payload(event_type, decoded['args'])

            record = EventRecord(
                event_type=event_type,
                block_number=to_int(raw_log.get('blockNumber')),
                transaction_hash=to_hex(raw_log['transactionHash']),
                log_index=to_int(raw_log.get('logIndex')),
                timestamp=timestamp,
                payload=payload,
            )
            self.metrics['parsed'] += 1
            return record

        except Exception as e:
            self.metrics['parse_errors'] += 1
            logger.error(f"Error parsing {self.schema.domain} log: {e}", exc_info=True)
            return None

    def is_relevant(self, record: EventRecord, user_key: str) -> bool:
        """A user sees events they participate in plus every broadcast event."""
        if self.schema.is_broadcast(record.event_type):
            return True
        user = user_key.lower()
        return any(participant.lower() == user for participant in record.payload.participants())

    def mark_seen(self, record: EventRecord) -> bool:
        """
        Track a delivered event with automatic LRU eviction.

        Returns:
            True if the event had not been seen before
        """
        key = record.identity_key
        if key in self.seen_events:
            self.seen_events.move_to_end(key)
            self.metrics['duplicates'] += 1
            return False

        if len(self.seen_events) >= self.MAX_SEEN_EVENTS:
            self.seen_events.popitem(last=False)
        self.seen_events[key] = None
        return True

    def get_stats(self) -> dict:
        """
        Get current processor statistics.

        Returns:
            Dictionary with current state metrics
        """
        return {
            'domain': self.schema.domain,
            'seen_events': len(self.seen_events),
            **self.metrics,
        }


def _as_log_receipt(raw_log: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce hex-string fields into the byte form web3's log decoder expects."""
    def as_bytes(value: Any) -> Any:
        if isinstance(value, str):
            return HexBytes(value)
        return value

    return {
        'address': raw_log.get('address'),
        'blockHash': as_bytes(raw_log.get('blockHash')),
        'blockNumber': to_int(raw_log.get('blockNumber')),
        'data': as_bytes(raw_log.get('data') or b''),
        'logIndex': to_int(raw_log.get('logIndex')),
        'topics': [as_bytes(topic) for topic in raw_log.get('topics', [])],
        'transactionHash': as_bytes(raw_log.get('transactionHash')),
        'transactionIndex': to_int(raw_log.get('transactionIndex')),
    }
