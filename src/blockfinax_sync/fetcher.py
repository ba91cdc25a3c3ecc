"""
Historical event fetcher.

Scans a block range in provider-sized windows, decodes and filters the logs
for one user, and returns them deduplicated in chain order.
"""

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Literal, TypeVar

from .config import FetchConfig
from .event_processor import EventProcessor
from .models import EventRecord, FetchProgress
from .utils.event_source import EventLogSource, LogFilter, RawLog
from .utils.feed import Channel

logger = logging.getLogger(__name__)

R = TypeVar("R")

ProgressCallback = Callable[[FetchProgress], Awaitable[None] | None]


class FetchError(Exception):
    """A window query kept failing after every retry."""


class HistoricalEventFetcher:
    """Windowed ``eth_getLogs`` scanner for one domain."""

    MAX_TIMESTAMP_CACHE: int = 4096

    def __init__(
        self,
        source: EventLogSource | None,
        processor: EventProcessor,
        config: FetchConfig | None = None,
        progress: Channel[FetchProgress] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            source: Event log source, or None when the network is disabled
            processor: Decoder and relevance filter for the domain
            config: Window size, range cap and retry settings
            progress: Channel receiving advisory progress updates
            sleep: Awaitable used between retries
        """
        self.source = source
        self.processor = processor
        self.config = config or FetchConfig()
        self.progress = progress if progress is not None else Channel(f"{processor.schema.domain}-progress")
        self._sleep = sleep

        # Block number -> timestamp, shared across fetches with LRU eviction
        self.block_timestamps: OrderedDict[int, int] = OrderedDict()

    @property
    def domain(self) -> str:
        return self.processor.schema.domain

    @property
    def is_enabled(self) -> bool:
        return self.source is not None

    async def current_height(self) -> int:
        if self.source is None:
            raise FetchError(f"No event source for {self.domain} events")
        source = self.source
        return await self._with_retry("block number", source.get_current_height)

    async def block_timestamp(self, block_number: int) -> int:
        """Timestamp of a block, looked up once and memoised."""
        if block_number in self.block_timestamps:
            self.block_timestamps.move_to_end(block_number)
            return self.block_timestamps[block_number]

        if self.source is None:
            return 0
        source = self.source
        timestamp = await self._with_retry(
            f"block {block_number}",
            lambda: source.get_block_timestamp(block_number),
        )

        if len(self.block_timestamps) >= self.MAX_TIMESTAMP_CACHE:
            self.block_timestamps.popitem(last=False)
        self.block_timestamps[block_number] = timestamp
        return timestamp

    def plan_windows(self, from_position: int, to_position: int) -> list[tuple[int, int]]:
        """Split an inclusive block range into windows of at most ``max_query_span`` blocks."""
        span = self.config.max_query_span
        windows: list[tuple[int, int]] = []
        start = from_position
        while start <= to_position:
            end = min(start + span - 1, to_position)
            windows.append((start, end))
            start = end + 1
        return windows

    async def fetch(
        self,
        user_key: str,
        from_position: int,
        to_position: int | Literal["latest"] = "latest",
        max_range: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[EventRecord]:
        """
        Fetch the events relevant to a user in a block range.

        Args:
            user_key: Address whose events are wanted
            from_position: First block to scan (inclusive)
            to_position: Last block to scan (inclusive) or "latest"
            max_range: Maximum number of blocks to look back from ``to_position``
            on_progress: Optional callback for advisory progress updates

        Returns:
            Relevant events sorted by block, transaction hash and log index

        Raises:
            FetchError: If a query keeps failing after all retries
        """
        if self.source is None:
            logger.info(f"No {self.domain} event source on this network, nothing to fetch")
            return []

        if to_position == "latest":
            to_position = await self.current_height()

        max_range = max_range if max_range is not None else self.config.max_range
        if from_position < to_position - max_range:
            clamped = max(0, to_position - max_range)
            logger.warning(
                f"History before block {clamped} skipped for {user_key[:10]}... "
                f"(requested from {from_position}, max range {max_range})"
            )
            from_position = clamped

        windows = self.plan_windows(from_position, to_position)
        if not windows:
            return []

        logger.info(
            f"Fetching {self.domain} events for {user_key[:10]}... "
            f"blocks {from_position}-{to_position} in {len(windows)} windows"
        )

        log_filter = self.processor.log_filter()
        collected: dict[tuple[str, str], EventRecord] = {}

        for index, (start, end) in enumerate(windows, start=1):
            for raw_log in await self._query_window(log_filter, start, end):
                record = self.processor.parse_log(raw_log)
                if record is None or not self.processor.is_relevant(record, user_key):
                    continue
                if record.identity_key in collected:
                    continue
                timestamp = await self.block_timestamp(record.block_number)
                collected[record.identity_key] = dataclasses.replace(record, timestamp=timestamp)

            if index % self.config.progress_interval == 0 or index == len(windows):
                await self._report(
                    FetchProgress(self.domain, index, len(windows), from_position, to_position),
                    on_progress,
                )

        records = sorted(collected.values(), key=lambda record: record.sort_key)
        logger.info(f"Found {len(records)} {self.domain} events for {user_key[:10]}...")
        return records

    async def _query_window(self, log_filter: LogFilter, start: int, end: int) -> list[RawLog]:
        source = self.source
        assert source is not None

        if source.supports_filter_union:
            return await self._with_retry(
                f"logs {start}-{end}",
                lambda: source.query_events(log_filter, start, end),
            )

        logs: list[RawLog] = []
        for topic in log_filter.event_topics:
            narrowed = log_filter.narrowed(topic)
            logs.extend(await self._with_retry(
                f"logs {start}-{end} topic {topic[:10]}",
                lambda: source.query_events(narrowed, start, end),
            ))
        return logs

    async def _with_retry(self, what: str, operation: Callable[[], Awaitable[R]]) -> R:
        attempts = self.config.retry_count
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    delay = attempt * self.config.retry_backoff
                    logger.warning(
                        f"Query for {what} failed (attempt {attempt}/{attempts}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    await self._sleep(delay)

        logger.error(f"Query for {what} failed after {attempts} attempts: {last_error}")
        raise FetchError(f"Query for {what} failed after {attempts} attempts") from last_error

    async def _report(self, progress: FetchProgress, on_progress: ProgressCallback | None) -> None:
        logger.debug(
            f"{self.domain} scan progress: {progress.windows_done}/{progress.windows_total} "
            f"windows ({progress.percent}%)"
        )
        await self.progress.publish(progress)
        if on_progress is None:
            return
        try:
            result = on_progress(progress)
            if result is not None:
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
