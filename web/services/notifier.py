from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from services.logutil import log_exception_throttled


logger = logging.getLogger(__name__)


Listener = Callable[..., None]


class Notifier:
    """Fire-and-forget event bus.

    Listeners run synchronously on the publishing thread. A failing listener is
    logged and skipped; it never raises into the publisher.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next_id = 1
        self._listeners: Dict[int, tuple[Optional[frozenset], Listener]] = {}

    def add_listener(self, listener: Listener, *events: str) -> int:
        """Register `listener(event, *args)`. With no events it receives everything."""
        with self._lock:
            lid = self._next_id
            self._next_id += 1
            self._listeners[lid] = (frozenset(events) if events else None, listener)
            return lid

    def remove_listener(self, listener_id: int) -> None:
        with self._lock:
            self._listeners.pop(int(listener_id), None)

    def notify_listeners(self, event: str, *args: Any) -> None:
        with self._lock:
            targets: List[Listener] = [
                fn for (events, fn) in self._listeners.values() if events is None or event in events
            ]
        for fn in targets:
            try:
                fn(event, *args)
            except Exception:
                log_exception_throttled(
                    logger,
                    f"notifier.listener.{event}",
                    event,
                    interval_seconds=60.0,
                    message="Listener failed for event %s",
                )


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier
