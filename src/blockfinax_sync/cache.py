"""
Read-through entity cache.

Entries live in a bounded in-memory LRU and are persisted to the key-value
store, so a cold start can serve the last known values while a sync runs.
"""

import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from .models import CacheEntry
from .store import KeyValueStore, get_json, set_json
from .utils.state_oracle import StateOracle

logger = logging.getLogger(__name__)

# Sentinel for "use the cache's default TTL"
DEFAULT_TTL = object()


class EntityCache:
    """Namespaced TTL/LRU cache over a persisted key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str,
        max_size: int = 200,
        default_ttl: float | None = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the cache.

        Args:
            store: Persistence backend
            namespace: Prefix isolating this cache's keys (network and domain)
            max_size: In-memory entries kept before evicting the least recently used
            default_ttl: TTL applied by ``get_or_load`` and ``set`` unless overridden
            clock: Time source in seconds
        """
        self.store = store
        self.namespace = namespace
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.clock = clock

        self._entries: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self.stats = {'hits': 0, 'misses': 0, 'loads': 0, 'invalidations': 0}

    def _store_key(self, key: str) -> str:
        return f"cache:{self.namespace}:{key}"

    def _remember(self, entry: CacheEntry[Any]) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted {evicted} from {self.namespace} cache")

    async def get_entry(self, key: str) -> CacheEntry[Any] | None:
        """Return the live entry for a key, dropping it if it has expired."""
        entry = self._entries.get(key)
        if entry is None:
            if (data := await get_json(self.store, self._store_key(key))) is None:
                return None
            entry = CacheEntry.from_dict(data)

        if entry.is_expired(self.clock()):
            await self.invalidate(key)
            return None

        self._remember(entry)
        return entry

    async def get(self, key: str) -> Any | None:
        entry = await self.get_entry(key)
        if entry is None:
            self.stats['misses'] += 1
            return None
        self.stats['hits'] += 1
        return entry.value

    async def set(self, key: str, value: Any, ttl: Any = DEFAULT_TTL) -> CacheEntry[Any]:
        """
        Store a value.

        Args:
            key: Cache key within this namespace
            value: JSON-serializable value
            ttl: Seconds the value stays fresh; None stores it until invalidated
        """
        entry = CacheEntry(
            key=key,
            value=value,
            written_at=self.clock(),
            ttl=self.default_ttl if ttl is DEFAULT_TTL else ttl,
        )
        await set_json(self.store, self._store_key(key), entry.to_dict())
        self._remember(entry)
        return entry

    async def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
        await self.store.remove(self._store_key(key))
        self.stats['invalidations'] += 1

    async def invalidate_many(self, keys: Iterable[str]) -> int:
        count = 0
        for key in keys:
            await self.invalidate(key)
            count += 1
        return count

    async def clear(self) -> None:
        self._entries.clear()
        await self.store.clear(self._store_key(""))

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Any = DEFAULT_TTL,
    ) -> Any:
        """Return the cached value, loading and storing it on a miss.

        Loader errors propagate and leave the cache untouched.
        """
        if (entry := await self.get_entry(key)) is not None:
            self.stats['hits'] += 1
            return entry.value

        self.stats['misses'] += 1
        value = await loader()
        self.stats['loads'] += 1
        await self.set(key, value, ttl)
        return value

    def get_stats(self) -> dict:
        return {
            'namespace': self.namespace,
            'size': len(self._entries),
            'max_size': self.max_size,
            **self.stats,
        }


class RecordCache:
    """Read-through cache of application records backed by a state oracle."""

    def __init__(self, cache: EntityCache, oracle: StateOracle | None) -> None:
        self.cache = cache
        self.oracle = oracle

    def can_read(self, record_id: str) -> bool:
        return self.oracle is not None and self.oracle.can_read(record_id)

    async def read(self, record_id: str, force: bool = False) -> dict[str, Any]:
        """
        Read a record, hitting the oracle only when the cached copy is missing
        or stale.

        Raises:
            LookupError: If no oracle can serve the record
        """
        if self.oracle is None:
            raise LookupError(f"No state oracle available for {record_id}")

        if force:
            await self.cache.invalidate(record_id)

        oracle = self.oracle
        return await self.cache.get_or_load(record_id, lambda: oracle.read_record(record_id))

    async def peek(self, record_id: str) -> dict[str, Any] | None:
        return await self.cache.get(record_id)

    async def invalidate(self, record_ids: Iterable[str]) -> int:
        return await self.cache.invalidate_many(record_ids)
