"""
Live-update broadcasting for state observers.

An EventBroadcaster is created once per process (by the CLI or by whoever
embeds the scheduler) and handed to the components that publish. Each
observer gets its own Subscription with a private queue; leaving the
subscription's context (or calling close()) always detaches it.

    broadcaster = EventBroadcaster()
    with broadcaster.subscribe() as sub:
        event = sub.get(timeout=5)
"""

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any

from phaseflow.lib.types import utc_now

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


@dataclass
class Event:
    type: str  # "issue_updated" or "state_rebuilt"
    payload: dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    timestamp: str = field(default_factory=utc_now)


class Subscription:
    """One observer's channel. Not shared between observers."""

    def __init__(self, broadcaster: "EventBroadcaster", sub_id: int, types: set[str] | None, maxsize: int):
        self._broadcaster = broadcaster
        self.id = sub_id
        self.types = types
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def wants(self, event: Event) -> bool:
        return self.types is None or event.type in self.types

    def deliver(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            # Slow observers lose events rather than stalling publishers
            self.dropped += 1

    def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        """All queued events without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EventBroadcaster:
    """Fan-out of events to every live subscription."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._lock = threading.Lock()
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._seq = 0
        self._maxsize = maxsize

    def subscribe(self, types: set[str] | None = None) -> Subscription:
        with self._lock:
            sub = Subscription(self, next(self._ids), types, self._maxsize)
            self._subscriptions[sub.id] = sub
        logger.debug(f"Subscriber {sub.id} attached")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(sub.id, None)
        logger.debug(f"Subscriber {sub.id} detached")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event_type: str, payload: dict[str, Any] | None = None) -> Event:
        with self._lock:
            self._seq += 1
            event = Event(type=event_type, payload=payload or {}, seq=self._seq)
            targets = [s for s in self._subscriptions.values() if s.wants(event)]
        for sub in targets:
            sub.deliver(event)
        return event

    def close(self) -> None:
        """Detach every subscriber (process shutdown)."""
        with self._lock:
            subs = list(self._subscriptions.values())
            self._subscriptions.clear()
        for sub in subs:
            sub.closed = True
