"""
Event notifications for observability.

Listeners are optional. A listener that raises is logged and skipped so that
notification never interferes with the operation that emitted the event.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(Enum):
    QUOTA_STATUS_CHANGED = "quota_status_changed"
    CLEANUP_COMPLETED = "cleanup_completed"
    CORRUPTION_DETECTED = "corruption_detected"
    RECOMMENDATION_GENERATED = "recommendation_generated"


Listener = Callable[[Any], None]


class EventEmitter:
    """Minimal typed publish/subscribe hub."""

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that unregisters it."""
        with self._lock:
            self._listeners.setdefault(event_type, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(event_type, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: EventType, payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event_type, []))
        for listener in listeners:
            try:
                listener(payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"{event_type.value} listener failed: {exc}")

    def listener_count(self, event_type: EventType) -> int:
        with self._lock:
            return len(self._listeners.get(event_type, []))

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()
