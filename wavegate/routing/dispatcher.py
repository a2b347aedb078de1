"""NotificationDispatcher: routes every notification to ALL configured sinks.

No notification is silently dropped.  Sink failures are logged but do
not prevent delivery to the remaining sinks.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from wavegate.models.notifications import Notification, NotificationKind

if TYPE_CHECKING:
    from wavegate.routing.sinks import NotificationSink

logger = logging.getLogger(__name__)


class NotificationDispatchError(RuntimeError):
    """Raised when every sink fails for a notification."""


class NotificationDispatcher:
    """Fans notifications out to every registered sink.

    Usage
    -----
    >>> dispatcher = NotificationDispatcher()
    >>> dispatcher.register_sink(LogSink())
    >>> dispatcher.notify("approvers", "Batch b1 needs approval", link="sha256:...")
    """

    def __init__(self, sinks: list[NotificationSink] | None = None) -> None:
        self._sinks: list[NotificationSink] = []
        for sink in sinks or []:
            self.register_sink(sink)

    # ------------------------------------------------------------------
    # Sink management
    # ------------------------------------------------------------------

    def register_sink(self, sink: NotificationSink) -> None:
        """Register a sink.  Duplicate registration is ignored."""
        if sink not in self._sinks:
            self._sinks.append(sink)
            logger.debug("Registered sink: %s", sink.sink_name)

    def unregister_sink(self, sink: NotificationSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    @property
    def registered_sinks(self) -> list[NotificationSink]:
        return list(self._sinks)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def notify(
        self,
        audience: str,
        message: str,
        link: str = "",
        *,
        kind: NotificationKind = NotificationKind.INFO,
        plan_id: str = "",
    ) -> list[str]:
        """Build a ``Notification`` and dispatch it; see ``dispatch``."""
        return self.dispatch(
            Notification(audience=audience, message=message, link=link, kind=kind, plan_id=plan_id)
        )

    def dispatch(self, notification: Notification) -> list[str]:
        """Deliver *notification* to ALL registered sinks.

        Returns the names of the sinks that accepted it.

        Raises
        ------
        NotificationDispatchError
            If *all* sinks fail.  Individual failures are tolerated.
        """
        if not self._sinks:
            logger.warning(
                "No sinks registered; notification %s for %s dropped",
                notification.notification_id, notification.audience,
            )
            return []

        succeeded: list[str] = []
        errors: list[tuple[str, Exception]] = []

        for sink in self._sinks:
            try:
                sink.accept(notification)
                succeeded.append(sink.sink_name)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Sink %s failed for notification %s: %s",
                    sink.sink_name, notification.notification_id, exc,
                )
                errors.append((sink.sink_name, exc))

        if errors and not succeeded:
            raise NotificationDispatchError(
                f"All {len(errors)} sinks failed for notification "
                f"{notification.notification_id}: "
                + "; ".join(f"{name}: {exc}" for name, exc in errors)
            )

        if errors:
            logger.warning(
                "Notification %s: %d/%d sinks succeeded",
                notification.notification_id, len(succeeded), len(self._sinks),
            )
        return succeeded
