"""
Live subscription manager.

Keeps exactly one standing log stream per network and domain, and fans the
decoded events out to the users that subscribed to it.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable

from .event_processor import EventProcessor
from .models import EventRecord
from .utils.event_source import EventLogSource, RawLog
from .utils.feed import Channel, Listener, Subscription


class LiveSubscriptionManager:
    """
    Shared live stream for one domain's events.

    The stream starts with the first subscriber and is torn down when the last
    one unsubscribes. ``subscribe`` must be called from a running event loop.
    """

    def __init__(
        self,
        source: EventLogSource | None,
        processor: EventProcessor,
        block_timestamp: Callable[[int], Awaitable[int]] | None = None,
    ) -> None:
        """
        Initialize the subscription manager.

        Args:
            source: Event log source, or None when the network is disabled
            processor: Decoder, relevance filter and replay suppressor
            block_timestamp: Lookup used to stamp pushed events with their block time
        """
        self.source = source
        self.processor = processor
        self.block_timestamp = block_timestamp

        self.channel: Channel[EventRecord] = Channel(f"{processor.schema.domain}-live")
        self.channel.on_empty = self._teardown_stream
        self._stream_task: asyncio.Task | None = None

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def domain(self) -> str:
        return self.processor.schema.domain

    def subscribe(self, user_key: str, on_event: Listener) -> Subscription:
        """
        Deliver live events relevant to a user.

        Returns:
            Token that removes this callback only when called
        """
        if self.source is None:
            self.logger.info(f"No {self.domain} event source on this network, live updates disabled")
            return Subscription(lambda: None)

        token = self.channel.subscribe(on_event, topic=user_key.lower())
        self._ensure_stream()
        return token

    def is_active(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    def unsubscribe(self) -> None:
        """Drop every subscriber and stop the stream; safe to call repeatedly."""
        self.channel.clear()
        self._teardown_stream()

    def _ensure_stream(self) -> None:
        if self.is_active():
            return
        self._stream_task = asyncio.get_running_loop().create_task(self._run_stream())
        self.logger.info(f"Started live {self.domain} event stream")

    def _teardown_stream(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is not None and not task.done():
            task.cancel()
            self.logger.info(f"Stopped live {self.domain} event stream")

    async def _run_stream(self) -> None:
        assert self.source is not None
        try:
            await self.source.stream_logs(self.processor.log_filter(), self.handle_log)
        except Exception as e:
            self.logger.error(f"Live {self.domain} event stream failed: {e}", exc_info=True)

    async def handle_log(self, raw_log: RawLog) -> None:
        """Decode a pushed log and deliver it to every interested subscriber."""
        record = self.processor.parse_log(raw_log)
        if record is None:
            return

        if not self.processor.mark_seen(record):
            self.logger.debug(f"Replayed {record.event_type.value} in {record.transaction_hash[:10]}... skipped")
            return

        if self.block_timestamp is not None:
            try:
                timestamp = await self.block_timestamp(record.block_number)
                record = dataclasses.replace(record, timestamp=timestamp)
            except Exception as e:
                self.logger.warning(f"No timestamp for block {record.block_number}: {e}")

        for user in self.channel.topics():
            if isinstance(user, str) and self.processor.is_relevant(record, user):
                await self.channel.publish(record, topic=user)
