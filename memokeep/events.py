"""
In-process publish/subscribe for state-change notifications.

Each subscriber owns its own unbounded queue. publish() only appends to
those queues, so a slow or stalled subscriber never blocks the
publisher and never sees events out of order. Nothing is persisted: a
subscriber sees events published after it subscribed, and everything
is lost when the process exits.
"""

import asyncio
import logging
import queue
import threading
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class SubscriptionClosed(Exception):
    """Raised by get() once the subscription or its bus has been closed."""


class Subscription(Generic[T]):
    """
    One subscriber's view of an EventBus.

    Events can be consumed blocking (get, iteration), non-blocking
    (get_nowait, drain) or from asyncio code (async_get).
    """

    def __init__(self, bus: "EventBus[T]", predicate: Optional[Callable[[T], bool]]):
        self._bus = bus
        self._predicate = predicate
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = False

    def _offer(self, event: T) -> None:
        if self._closed:
            return
        if self._predicate is not None:
            try:
                if not self._predicate(event):
                    return
            except Exception as e:
                logger.warning("Subscription filter raised, dropping event: %s", e)
                return
        self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None) -> T:
        """
        Wait for the next event.

        Raises:
            queue.Empty: if timeout elapses with no event
            SubscriptionClosed: if the subscription was closed
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosed()
        return item

    def get_nowait(self) -> Optional[T]:
        """Next event if one is waiting, else None."""
        try:
            item = self._queue.get_nowait()
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def drain(self) -> list[T]:
        """All events currently waiting, in delivery order."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            events.append(item)
        return events

    async def async_get(self, timeout: Optional[float] = None) -> T:
        """Wait for the next event without blocking the event loop."""
        return await asyncio.to_thread(self.get, timeout)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop receiving events. Pending events can still be drained."""
        if self._closed:
            return
        self._closed = True
        self._bus._remove(self)
        self._queue.put_nowait(_CLOSED)

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.get()
            except SubscriptionClosed:
                return

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class EventBus(Generic[T]):
    """
    Broadcast channel: every subscriber receives every matching event.

    Thread-safe. Events published from one thread arrive at each
    subscriber in publish order.
    """

    def __init__(self, name: str = "events"):
        self._name = name
        self._subscribers: list[Subscription[T]] = []
        self._lock = threading.Lock()
        self._closed = False

    def subscribe(
        self,
        predicate: Optional[Callable[[T], bool]] = None,
        *,
        replay: Optional[T] = None,
    ) -> Subscription[T]:
        """
        Start receiving events.

        Args:
            predicate: Only events for which this returns True are delivered
            replay: Delivered first (used to seed snapshot streams with
                the current value)
        """
        sub: Subscription[T] = Subscription(self, predicate)
        with self._lock:
            if self._closed:
                sub._closed = True
                sub._queue.put_nowait(_CLOSED)
                return sub
            if replay is not None:
                sub._offer(replay)
            self._subscribers.append(sub)
        return sub

    def publish(self, event: T) -> int:
        """
        Deliver an event to every current subscriber.

        Never blocks on subscribers. Returns the number of subscribers
        the event was offered to.
        """
        with self._lock:
            if self._closed:
                return 0
            subscribers = list(self._subscribers)
            for sub in subscribers:
                sub._offer(event)
        if not subscribers:
            logger.debug("%s: no subscribers for %s", self._name, type(event).__name__)
        return len(subscribers)

    def _remove(self, sub: Subscription[T]) -> None:
        with self._lock:
            try:
                self._subscribers.remove(sub)
            except ValueError:
                pass

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        """Close the bus and every subscription on it."""
        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for sub in subscribers:
            sub._closed = True
            sub._queue.put_nowait(_CLOSED)
