"""Ordered, synchronous event outbox.

Engines publish domain events (``transaction.state_changed``,
``trust.update_required``, ``dispute.created`` ...) here instead of
calling each other directly. Subscribers register by topic prefix.

Events published while another event is being dispatched on the same
thread are queued and delivered after it, so delivery order always
matches publish order.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], None]


@dataclass(frozen=True)
class Event:
    """A published domain event."""

    topic: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class Outbox:
    """Topic-prefix publish/subscribe with an inspectable event record.

    Handler failures are logged and do not stop delivery to the remaining
    subscribers; the state change that produced the event has already
    happened.
    """

    def __init__(self, history_size: int = 1000):
        self._subscribers: list[tuple[str, EventHandler]] = []
        self._history: deque[Event] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self._local = threading.local()

    def subscribe(self, prefix: str, handler: EventHandler) -> None:
        """Register ``handler`` for every topic starting with ``prefix`` ('' = all)."""
        with self._lock:
            self._subscribers.append((prefix, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        with self._lock:
            self._subscribers = [(p, h) for p, h in self._subscribers if h is not handler]

    def publish(self, topic: str, payload: dict[str, Any] | None = None) -> Event:
        event = Event(topic=topic, payload=payload or {})
        with self._lock:
            self._history.append(event)

        queue: deque[Event] | None = getattr(self._local, "queue", None)
        if queue is not None:
            queue.append(event)
            return event

        queue = deque([event])
        self._local.queue = queue
        try:
            while queue:
                self._dispatch(queue.popleft())
        finally:
            self._local.queue = None
        return event

    def _dispatch(self, event: Event) -> None:
        with self._lock:
            handlers = [h for prefix, h in self._subscribers if event.topic.startswith(prefix)]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler failed for {event.topic} ({event.id})")

    def events(self, prefix: str = "") -> list[Event]:
        """Recorded events whose topic starts with ``prefix``, oldest first."""
        with self._lock:
            return [e for e in self._history if e.topic.startswith(prefix)]

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
