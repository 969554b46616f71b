"""
Event channel for job state transitions.

The engine publishes JobEvents here; consumers subscribe and pull at
their own pace. Publishing never blocks: a subscriber whose buffer is
full loses its oldest event.
"""

import asyncio
import logging
from collections.abc import Collection

from jobengine.types.events import JobEvent

logger = logging.getLogger(__name__)


class Subscription:
    """A bounded, pull-based view of the event stream."""

    def __init__(
        self,
        channel: "EventChannel",
        maxsize: int,
        event_types: Collection[str] | None = None,
    ):
        self._channel = channel
        self._queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=maxsize)
        self._event_types = frozenset(event_types) if event_types else None
        self.dropped = 0
        self.closed = False

    def wants(self, event: JobEvent) -> bool:
        return self._event_types is None or event.event_type in self._event_types

    def offer(self, event: JobEvent) -> None:
        """Enqueue without blocking, evicting the oldest event if full."""
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> JobEvent | None:
        """
        Pull the next event.

        Returns:
            The event, or None if the timeout elapsed first.
        """
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None

    def get_nowait(self) -> JobEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[JobEvent]:
        """Return every buffered event."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        self.closed = True
        self._channel.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> JobEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventChannel:
    """
    In-process fan-out of job events.

    Every subscription receives its own copy of each matching event.
    """

    def __init__(self, buffer_size: int = 1000):
        self._buffer_size = buffer_size
        self._subscriptions: list[Subscription] = []

    def subscribe(self, event_types: Collection[str] | None = None) -> Subscription:
        """
        Register a new subscriber.

        Args:
            event_types: Only deliver these event types. All when None.
        """
        subscription = Subscription(self, self._buffer_size, event_types)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: JobEvent) -> None:
        """Deliver an event to every interested subscriber."""
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription.offer(event)

        logger.debug(
            "Published event",
            extra={"event_type": event.event_type, "job_id": str(event.job_id)}
        )

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
