"""In-process event bus used for state-change notifications.

Components publish facts (provider fallback, order triggered, bot status
changed) instead of calling listeners directly; subscribers run
synchronously in publish order.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from loguru import logger

from .models import utcnow


@dataclass(frozen=True)
class Event:
    topic: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


Handler = Callable[[Event], None]


class EventBus:
    def __init__(self, *, history_size: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._recent: deque[Event] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> None:
        """Register ``handler`` for ``topic``; ``"*"`` receives everything."""
        with self._lock:
            self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(topic, []):
                self._handlers[topic].remove(handler)

    def publish(self, topic: str, **payload: Any) -> Event:
        event = Event(topic=topic, payload=payload)
        with self._lock:
            self._recent.append(event)
            handlers = list(self._handlers.get(topic, [])) + list(self._handlers.get("*", []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for topic {}", topic)
        return event

    def recent(self, topic: str | None = None, limit: int = 50) -> list[Event]:
        with self._lock:
            events = [e for e in self._recent if topic is None or e.topic == topic]
        return events[-limit:]
