"""
Shared data models for the BlockFinaX sync engine.

This module contains data classes and types used across the sync,
cache, preload and quota components.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, TypeVar

from .events import EventPayload, EventType

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class EventRecord:
    """A decoded, relevance-checked contract event.

    Attributes:
        event_type: Which contract event this is
        block_number: Block the event was emitted in
        transaction_hash: 0x-prefixed transaction hash
        log_index: Position of the log within the block
        timestamp: Unix timestamp of the block
        payload: Variant-specific event fields
    """
    event_type: EventType
    block_number: int
    transaction_hash: str
    log_index: int
    timestamp: int
    payload: EventPayload

    @property
    def identity_key(self) -> tuple[str, str]:
        """Deduplication key; a transaction emits each event type at most once per record."""
        return (self.transaction_hash, self.event_type.value)

    @property
    def sort_key(self) -> tuple[int, str, int]:
        return (self.block_number, self.transaction_hash, self.log_index)

    def record_ids(self) -> tuple[str, ...]:
        return self.payload.record_ids()

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "timestamp": self.timestamp,
            "payload": {
                name: getattr(self.payload, name)
                for name in self.payload.__dataclass_fields__
            },
        }


@dataclass(frozen=True, slots=True)
class SyncWatermark:
    """Highest block fully processed for a (network, domain, user)."""
    network_key: str
    user_key: str
    last_processed_position: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "network_key": self.network_key,
            "user_key": self.user_key,
            "last_processed_position": self.last_processed_position,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncWatermark":
        return cls(
            network_key=data["network_key"],
            user_key=data["user_key"],
            last_processed_position=int(data["last_processed_position"]),
        )


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value; entries without a TTL never expire on their own."""
    key: str
    value: T
    written_at: float
    ttl: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.written_at >= self.ttl

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "written_at": self.written_at,
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry[Any]":
        return cls(
            key=data["key"],
            value=data["value"],
            written_at=float(data["written_at"]),
            ttl=data.get("ttl"),
        )


@dataclass(frozen=True, slots=True)
class PreloadStatus:
    """Progress of the background preload, observable by the UI."""
    is_running: bool = False
    domain_ready: dict[str, bool] = field(default_factory=dict)
    last_completed_at: float | None = None
    cache_age: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "domain_ready": dict(self.domain_ready),
            "last_completed_at": self.last_completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PreloadStatus":
        return cls(
            is_running=bool(data.get("is_running", False)),
            domain_ready={k: bool(v) for k, v in data.get("domain_ready", {}).items()},
            last_completed_at=data.get("last_completed_at"),
        )


@dataclass(frozen=True, slots=True)
class FetchProgress:
    """Advisory progress of a historical scan."""
    domain: str
    windows_done: int
    windows_total: int
    from_position: int
    to_position: int

    @property
    def percent(self) -> int:
        if self.windows_total == 0:
            return 100
        return (self.windows_done * 100) // self.windows_total


class SyncStatus(Enum):
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of one incremental sync.

    An ``IN_PROGRESS`` result carries no records; the caller should wait for
    the running sync instead.
    """
    status: SyncStatus
    new_records: tuple[EventRecord, ...] = ()
    watermark: SyncWatermark | None = None
    affected_record_ids: tuple[str, ...] = ()


class UsageScope(Enum):
    USER = "user"
    GLOBAL = "global"


@dataclass(frozen=True, slots=True)
class UsageEntry:
    """One recorded gas spend."""
    timestamp: float
    amount_usd: Decimal
    token: str
    sponsored: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "amount_usd": str(self.amount_usd),
            "token": self.token,
            "sponsored": self.sponsored,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageEntry":
        return cls(
            timestamp=float(data["timestamp"]),
            amount_usd=Decimal(data["amount_usd"]),
            token=data["token"],
            sponsored=bool(data.get("sponsored", False)),
        )


@dataclass(slots=True)
class GasUsageCounter:
    """Daily spend for one scope, reset lazily when its date goes stale.

    Attributes:
        scope: Whether the counter tracks one user or the global budget
        date: ISO date (UTC) the counter belongs to
        total_spent_usd: Sum of entry amounts
        entries: Individual spends, oldest first
    """
    scope: UsageScope
    date: str
    total_spent_usd: Decimal = Decimal("0")
    entries: list[UsageEntry] = field(default_factory=list)

    def add(self, entry: UsageEntry) -> None:
        self.entries.append(entry)
        self.total_spent_usd += entry.amount_usd

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.value,
            "date": self.date,
            "total_spent_usd": str(self.total_spent_usd),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GasUsageCounter":
        return cls(
            scope=UsageScope(data["scope"]),
            date=data["date"],
            total_spent_usd=Decimal(data["total_spent_usd"]),
            entries=[UsageEntry.from_dict(entry) for entry in data.get("entries", [])],
        )


class PaymentMethod(str, Enum):
    SPONSORED = "sponsored"
    TOKEN_PAY = "token_pay"
    NATIVE_PAY = "native_pay"


@dataclass(frozen=True, slots=True)
class Decision:
    """Result of a sponsorship check.

    Attributes:
        method: How the user's transaction should pay for gas
        reason: Why sponsorship was refused, or None when sponsored
        remaining_usd: Budget left for the user today, after pending reservations
        estimated_cost_usd: The estimate the decision was made against
    """
    method: PaymentMethod
    reason: str | None
    remaining_usd: Decimal
    estimated_cost_usd: Decimal

    @property
    def is_sponsored(self) -> bool:
        return self.method is PaymentMethod.SPONSORED
