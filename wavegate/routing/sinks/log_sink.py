"""Log sink: writes notifications to the standard logging stream."""

from __future__ import annotations

import logging

from wavegate.models.notifications import Notification, NotificationKind

logger = logging.getLogger(__name__)


def format_notification(notification: Notification) -> str:
    """One-line, human-readable rendering of a notification."""
    label = notification.kind.value.replace("_", " ").title()
    text = f"[{notification.audience}] {label}: {notification.message}"
    if notification.link:
        text += f" ({notification.link})"
    return text


class LogSink:
    """Emits each notification as a log record.

    Escalations are logged at CRITICAL so they are never lost in noise.
    """

    @property
    def sink_name(self) -> str:
        return "log"

    def accept(self, notification: Notification) -> None:
        level = (
            logging.CRITICAL
            if notification.kind == NotificationKind.ESCALATION
            else logging.INFO
        )
        logger.log(level, "%s", format_notification(notification))
