# =============================================================================
# TASK TRACKER OBSERVABILITY - EVENT BUS
# =============================================================================
"""
Event Bus

Publish/subscribe channel used by the Logger and the MonitoringSystem to
announce lifecycle events (log written, health changed, alert raised...).

Two ways to observe events:
    - ``subscribe()`` returns a Subscription backed by a bounded asyncio
      queue. When the queue is full the oldest payload is dropped, so a slow
      consumer never blocks the publisher.
    - ``add_listener()`` registers a synchronous callback. Callback errors
      are logged and swallowed.

Usage::

    bus = EventBus()
    alerts = bus.subscribe(MonitoringEvent.SECURITY_ALERT, maxsize=10)
    bus.add_listener(MonitoringEvent.SYSTEM_HEALTH_CHANGED, on_health)

    payload = await alerts.get()
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


class MonitoringEvent(Enum):
    """Event kinds published on the bus."""
    LOG = "log"
    SYSTEM_HEALTH_CHANGED = "system_health_changed"
    PERFORMANCE_THRESHOLD_EXCEEDED = "performance_threshold_exceeded"
    SECURITY_ALERT = "security_alert"
    AUDIT_VIOLATION = "audit_violation"
    CONFIGURATION_CHANGED = "configuration_changed"


Listener = Callable[[Any], None]


class Subscription:
    """Bounded queue of payloads for a single event kind."""

    def __init__(self, bus: "EventBus", kind: MonitoringEvent, maxsize: int):
        self.kind = kind
        self.dropped = 0
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _offer(self, payload: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(payload)

    async def get(self, timeout: Optional[float] = None) -> Any:
        """Wait for the next payload."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def get_nowait(self) -> Any:
        """Return the next payload or raise ``asyncio.QueueEmpty``."""
        return self._queue.get_nowait()

    def drain(self) -> List[Any]:
        """Return every queued payload, oldest first."""
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """In-process event fan-out with bounded per-subscriber queues."""

    def __init__(self, default_maxsize: int = DEFAULT_QUEUE_SIZE):
        if default_maxsize < 1:
            raise ValueError("default_maxsize must be at least 1")
        self._default_maxsize = default_maxsize
        self._subscriptions: Dict[MonitoringEvent, List[Subscription]] = {}
        self._listeners: Dict[MonitoringEvent, List[Listener]] = {}

    def subscribe(
        self, kind: MonitoringEvent, maxsize: Optional[int] = None
    ) -> Subscription:
        """Create a queue-backed subscription for one event kind."""
        subscription = Subscription(self, kind, maxsize or self._default_maxsize)
        self._subscriptions.setdefault(kind, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.kind, [])
        if subscription in subs:
            subs.remove(subscription)

    def add_listener(self, kind: MonitoringEvent, listener: Listener) -> None:
        """
        Register a synchronous callback.

        Signature: ``listener(payload)``.
        """
        self._listeners.setdefault(kind, []).append(listener)

    def remove_listener(self, kind: MonitoringEvent, listener: Listener) -> None:
        listeners = self._listeners.get(kind, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, kind: MonitoringEvent) -> int:
        return len(self._listeners.get(kind, [])) + len(
            self._subscriptions.get(kind, [])
        )

    def publish(self, kind: MonitoringEvent, payload: Any) -> None:
        """Deliver a payload to every subscriber and listener of ``kind``."""
        for subscription in list(self._subscriptions.get(kind, [])):
            subscription._offer(payload)

        for listener in list(self._listeners.get(kind, [])):
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Event listener for {kind.value} failed: {e}")

    def clear(self, kind: Optional[MonitoringEvent] = None) -> None:
        """Drop subscriptions and listeners of one kind, or of every kind."""
        if kind is None:
            self._subscriptions.clear()
            self._listeners.clear()
            return
        self._subscriptions.pop(kind, None)
        self._listeners.pop(kind, None)


__all__ = [
    "MonitoringEvent",
    "EventBus",
    "Subscription",
    "DEFAULT_QUEUE_SIZE",
]
