"""wavegate notification routing: fan-out of operator and approver messages."""

from wavegate.routing.dispatcher import NotificationDispatcher, NotificationDispatchError
from wavegate.routing.sinks import NotificationSink
from wavegate.routing.sinks.local_file import LocalFileSink
from wavegate.routing.sinks.log_sink import LogSink

__all__ = [
    "LocalFileSink",
    "LogSink",
    "NotificationDispatchError",
    "NotificationDispatcher",
    "NotificationSink",
]
