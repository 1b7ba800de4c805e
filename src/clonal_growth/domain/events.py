"""Sweep progress events.

The harness publishes lifecycle events on an :class:`EventBus`; the
command-line entry point and tests subscribe to follow a sweep without
the harness knowing about them.  Delivery is synchronous and happens in
the publishing process only: worker processes never see the bus.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

SWEEP_STARTED = "sweep.started"
TREES_SIMULATED = "trees.simulated"
ESTIMATE_COMPLETED = "estimate.completed"
UNIT_FAILED = "unit.failed"
SWEEP_COMPLETED = "sweep.completed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """One published occurrence: a type tag, its payload and when it happened."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)


EventHandler = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe keyed by event type.

    >>> bus = EventBus()
    >>> seen = []
    >>> bus.subscribe(UNIT_FAILED, seen.append)
    >>> bus.publish(UNIT_FAILED, {"method": "max_likelihood"})
    >>> seen[0].payload["method"]
    'max_likelihood'
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, tuple[EventHandler, ...]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            self._subscribers[event_type] = self._subscribers.get(event_type, ()) + (handler,)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        """Drop one registration of *handler*; unknown handlers are ignored."""
        with self._lock:
            handlers = list(self._subscribers.get(event_type, ()))
            if handler in handlers:
                handlers.remove(handler)
                self._subscribers[event_type] = tuple(handlers)

    def publish(self, event: Event | str, payload: dict[str, Any] | None = None) -> None:
        """Deliver *event* to its subscribers in registration order.

        A bare type string is wrapped in an :class:`Event` with *payload*.
        Handler exceptions propagate to the publisher.
        """
        if not isinstance(event, Event):
            event = Event(type=event, payload=dict(payload or {}))
        with self._lock:
            handlers = self._subscribers.get(event.type, ())
        for handler in handlers:
            handler(event)

    def clear(self) -> None:
        with self._lock:
            self._subscribers = {}

    def handler_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, ()))
