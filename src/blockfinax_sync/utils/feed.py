"""
Lightweight pub/sub channels with unsubscribe tokens.

Listeners may be plain callables or coroutine functions. A failing listener
is logged and never breaks delivery to the others.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

T = TypeVar("T")

Listener = Callable[[T], Awaitable[None] | None]

logger = logging.getLogger(__name__)


class Subscription:
    """Callable token that removes exactly one listener.

    Calling it more than once is harmless.
    """

    __slots__ = ("_cancel", "active")

    def __init__(self, cancel: Callable[[], None]) -> None:
        self._cancel = cancel
        self.active = True

    def __call__(self) -> None:
        if not self.active:
            return
        self.active = False
        self._cancel()


class Channel(Generic[T]):
    """Fan-out of values to listeners, optionally partitioned by topic.

    ``subscribe(cb)`` listens to everything published without a topic;
    ``subscribe(cb, topic=user)`` only receives ``publish(value, topic=user)``.
    """

    def __init__(self, name: str = "channel") -> None:
        self.name = name
        self._listeners: dict[Hashable | None, dict[int, Listener]] = {}
        self._next_id = 0
        self.on_empty: Callable[[], None] | None = None

    def subscribe(self, listener: Listener, topic: Hashable | None = None) -> Subscription:
        listener_id = self._next_id
        self._next_id += 1
        self._listeners.setdefault(topic, {})[listener_id] = listener

        def cancel() -> None:
            bucket = self._listeners.get(topic)
            if bucket is None:
                return
            bucket.pop(listener_id, None)
            if not bucket:
                del self._listeners[topic]
            if not self._listeners and self.on_empty is not None:
                self.on_empty()

        return Subscription(cancel)

    def topics(self) -> list[Hashable | None]:
        return list(self._listeners)

    def listener_count(self, topic: Hashable | None = None) -> int:
        return len(self._listeners.get(topic, {}))

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._listeners.values())

    async def publish(self, value: T, topic: Hashable | None = None) -> int:
        """Deliver a value to every listener of a topic.

        Returns:
            Number of listeners that received the value without error
        """
        delivered = 0
        # Copy so listeners may unsubscribe while being notified
        for listener in list(self._listeners.get(topic, {}).values()):
            try:
                result: Any = listener(value)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"Listener on {self.name} failed: {e}", exc_info=True)
        return delivered

    def clear(self) -> None:
        self._listeners.clear()
