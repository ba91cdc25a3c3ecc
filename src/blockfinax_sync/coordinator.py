"""
Incremental sync coordinator.

Resumes each user's scan from its persisted watermark, invalidates the cache
entries touched by new events, and only then advances the watermark.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from .cache import RecordCache
from .fetcher import HistoricalEventFetcher
from .models import SyncResult, SyncStatus, SyncWatermark
from .store import KeyValueStore, get_json, set_json
from .utils.feed import Channel

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """An incremental sync failed; the watermark was left unchanged."""


class SyncState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    MERGING = "merging"
    FAILED = "failed"


@dataclass(slots=True)
class _RunningSync:
    """A sync in flight; waiters read its outcome once ``done`` is set."""
    done: asyncio.Event = field(default_factory=asyncio.Event)
    outcome: SyncResult | SyncError | None = None


class WatermarkStore:
    """Persisted, monotonically non-decreasing watermarks for one network and domain."""

    def __init__(self, store: KeyValueStore, network_key: str, domain: str) -> None:
        self.store = store
        self.network_key = network_key
        self.domain = domain

    def _key(self, user_key: str) -> str:
        return f"watermark:{self.network_key}:{self.domain}:{user_key.lower()}"

    async def get(self, user_key: str) -> SyncWatermark | None:
        data = await get_json(self.store, self._key(user_key))
        return SyncWatermark.from_dict(data) if data is not None else None

    async def advance(self, user_key: str, position: int) -> SyncWatermark:
        """
        Move the watermark forward to ``position``.

        A position behind the stored watermark is ignored and the stored one
        returned.
        """
        current = await self.get(user_key)
        if current is not None and position <= current.last_processed_position:
            if position < current.last_processed_position:
                logger.warning(
                    f"Refusing to move {self.domain} watermark for {user_key[:10]}... "
                    f"back from {current.last_processed_position} to {position}"
                )
            return current

        watermark = SyncWatermark(
            network_key=self.network_key,
            user_key=user_key.lower(),
            last_processed_position=position,
        )
        await set_json(self.store, self._key(user_key), watermark.to_dict())
        return watermark

    async def clear(self, user_key: str) -> None:
        await self.store.remove(self._key(user_key))


class IncrementalSyncCoordinator:
    """Drives fetch, merge and watermark persistence for one domain."""

    def __init__(
        self,
        fetcher: HistoricalEventFetcher,
        records: RecordCache,
        watermarks: WatermarkStore,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            fetcher: Historical fetcher of the domain
            records: Read-through record cache to invalidate and index into
            watermarks: Persisted watermarks of the domain
        """
        self.fetcher = fetcher
        self.records = records
        self.watermarks = watermarks

        self.results: Channel[SyncResult] = Channel(f"{fetcher.domain}-sync")

        self._states: dict[str, SyncState] = {}
        self._in_flight: dict[str, _RunningSync] = {}

    @property
    def domain(self) -> str:
        return self.fetcher.domain

    def state(self, user_key: str) -> SyncState:
        return self._states.get(user_key.lower(), SyncState.IDLE)

    def is_syncing(self, user_key: str) -> bool:
        return user_key.lower() in self._in_flight

    async def sync(self, user_key: str) -> SyncResult:
        """
        Bring a user's cached records up to date with the chain.

        Returns:
            The completed result, or an ``IN_PROGRESS`` result when a sync for
            the same user is already running

        Raises:
            SyncError: If fetching or merging failed
        """
        user = user_key.lower()
        if user in self._in_flight:
            logger.debug(f"{self.domain} sync for {user[:10]}... already running")
            return SyncResult(status=SyncStatus.IN_PROGRESS)

        running = _RunningSync()
        self._in_flight[user] = running
        try:
            result = await self._run(user)
        except Exception as e:
            self._states[user] = SyncState.FAILED
            logger.error(f"{self.domain} sync for {user[:10]}... failed: {e}")
            error = SyncError(f"{self.domain} sync failed for {user}: {e}")
            running.outcome = error
            raise error from e
        else:
            running.outcome = result
            await self.results.publish(result, topic=user)
            return result
        finally:
            self._states.pop(user, None)
            del self._in_flight[user]
            running.done.set()

    async def wait_for(self, user_key: str) -> SyncResult | None:
        """
        Wait for the running sync of a user, if any.

        Returns:
            The finished sync's result, or None when nothing was running

        Raises:
            SyncError: If the awaited sync failed
        """
        user = user_key.lower()
        if (running := self._in_flight.get(user)) is None:
            return None
        await running.done.wait()
        match running.outcome:
            case SyncError() as error:
                raise error
            case outcome:
                return outcome

    async def known_records(self, user_key: str) -> list[str]:
        """Record ids the user's events have touched so far."""
        return list(await self.records.cache.get(self._index_key(user_key)) or [])

    def _index_key(self, user_key: str) -> str:
        return f"records:{user_key.lower()}"

    async def _run(self, user: str) -> SyncResult:
        if not self.fetcher.is_enabled:
            logger.info(f"{self.domain} sync skipped for {user[:10]}...: network disabled")
            return SyncResult(status=SyncStatus.COMPLETED)

        self._states[user] = SyncState.SCANNING

        watermark = await self.watermarks.get(user)
        to_position = await self.fetcher.current_height()

        if watermark is None:
            from_position = max(0, to_position - self.fetcher.config.max_range)
            logger.info(f"First {self.domain} sync for {user[:10]}... from block {from_position}")
        else:
            from_position = watermark.last_processed_position + 1

        if from_position > to_position:
            logger.debug(f"{self.domain} already synced to block {to_position} for {user[:10]}...")
            return SyncResult(status=SyncStatus.COMPLETED, watermark=watermark)

        records = await self.fetcher.fetch(user, from_position, to_position)

        self._states[user] = SyncState.MERGING

        affected: list[str] = []
        for record in records:
            for record_id in record.record_ids():
                if record_id not in affected:
                    affected.append(record_id)

        await self.records.invalidate(affected)

        if affected:
            index = await self.known_records(user)
            merged = index + [record_id for record_id in affected if record_id not in index]
            await self.records.cache.set(self._index_key(user), merged, ttl=None)

        # Written last so a crash above re-reads the same range
        new_watermark = await self.watermarks.advance(user, to_position)

        logger.info(
            f"{self.domain} sync for {user[:10]}... done: {len(records)} new events, "
            f"{len(affected)} records invalidated, watermark {new_watermark.last_processed_position}"
        )
        return SyncResult(
            status=SyncStatus.COMPLETED,
            new_records=tuple(records),
            watermark=new_watermark,
            affected_record_ids=tuple(affected),
        )
