"""Progress event bus: fans validated ProgressEvents out to subscribers.

Events are published after the corresponding ledger entry is written, so
a subscriber can always re-derive the event's effect from the ledger.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from wavegate.models.events import EventKind, ProgressEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[ProgressEvent], None]


class EventBus:
    """Routes progress events to registered handlers.

    A handler may subscribe to every kind or to a subset.  A failing
    handler is logged and skipped; it never interrupts the publisher.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventKind | None, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self, handler: EventHandler, kinds: list[EventKind] | None = None
    ) -> None:
        """Register *handler* for *kinds* (all kinds when None)."""
        with self._lock:
            for kind in kinds or [None]:
                self._handlers.setdefault(kind, []).append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        with self._lock:
            for handlers in self._handlers.values():
                while handler in handlers:
                    handlers.remove(handler)

    def publish(self, event: ProgressEvent) -> int:
        """Deliver *event*; returns how many handlers accepted it."""
        with self._lock:
            targets = list(self._handlers.get(None, []))
            targets += self._handlers.get(event.kind, [])

        delivered = 0
        for handler in targets:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Progress handler %r failed on %s event for %s",
                    handler, event.kind.value, event.unit_id or event.plan_id,
                )
        return delivered
