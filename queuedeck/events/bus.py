# queuedeck/events/bus.py
"""Change notifications for queues.

An event only names the queue that changed; subscribers re-read whatever they
display. Publishing is safe from any thread and never blocks on subscribers:
each subscription owns an ``asyncio.Queue`` on its own event loop and events
are handed over with ``call_soon_threadsafe``.
"""
import asyncio
import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueEvent:
    queue: str

    def to_json(self) -> str:
        return json.dumps({"queue": self.queue})

    @classmethod
    def from_json(cls, payload: str) -> "QueueEvent":
        return cls(queue=str(json.loads(payload)["queue"]))


_CLOSED = object()


class Subscription:
    def __init__(self, bus: "EventBus", loop: asyncio.AbstractEventLoop, buffer_size: int):
        self._bus = bus
        self._loop = loop
        self._buffer_size = buffer_size
        # Unbounded; coalescing keeps it at one entry per queue.
        self._events: asyncio.Queue = asyncio.Queue()
        self._pending: Counter = Counter()
        self.closed = False

    def offer(self, event: QueueEvent) -> None:
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, event)
        except RuntimeError:
            # The subscriber's loop has shut down underneath us.
            logger.debug("Dropping subscription bound to a closed event loop")
            self.close()

    def _deliver(self, event: QueueEvent) -> None:
        if self.closed:
            return
        # A pending event for the same queue already asks for the re-read.
        if self._pending[event.queue]:
            return
        self._pending[event.queue] += 1
        self._events.put_nowait(event)
        if self._events.qsize() == self._buffer_size + 1:
            logger.warning(
                "Subscriber has %d queues with unread change events", self._events.qsize()
            )

    async def get(self, timeout: Optional[float] = None) -> Optional[QueueEvent]:
        """Next event, or None when ``timeout`` elapses first or the subscription closes."""
        if self.closed:
            return None
        try:
            event = await asyncio.wait_for(self._events.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if event is _CLOSED:
            return None
        self._pending[event.queue] -= 1
        return event

    def __aiter__(self):
        return self

    async def __anext__(self) -> QueueEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._unsubscribe(self)
        try:
            # Wakes a get() that is already waiting.
            self._loop.call_soon_threadsafe(self._events.put_nowait, _CLOSED)
        except RuntimeError:
            # The loop is gone, so nothing can be waiting on it.
            pass


class EventBus:
    def __init__(self, buffer_size: int = 1000):
        self.buffer_size = buffer_size
        self._subscribers: Set[Subscription] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, queue: str) -> None:
        self._dispatch(QueueEvent(queue=queue))

    def _dispatch(self, event: QueueEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.offer(event)

    def subscribe(self) -> Subscription:
        """Subscribe from inside a running event loop."""
        subscription = Subscription(self, asyncio.get_running_loop(), self.buffer_size)
        with self._lock:
            self._subscribers.add(subscription)
        logger.debug("Event subscriber added (%d total)", len(self._subscribers))
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def start(self) -> None:
        pass

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()
