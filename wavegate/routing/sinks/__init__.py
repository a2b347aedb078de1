"""Sink protocol for wavegate notifications.

All sinks implement ``NotificationSink``: a ``sink_name`` property and an
``accept(notification)`` method.  The dispatcher calls ``accept`` on every
registered sink for every notification.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from wavegate.models.notifications import Notification


@runtime_checkable
class NotificationSink(Protocol):
    """Protocol that every notification sink must implement.

    Attributes
    ----------
    sink_name : str
        A unique human-readable identifier for this sink instance
        (e.g. ``"local_file"``, ``"log"``).
    """

    @property
    def sink_name(self) -> str:
        ...

    def accept(self, notification: Notification) -> None:
        """Deliver one notification.

        May raise; the dispatcher logs the failure and continues with the
        remaining sinks.
        """
        ...
