"""Fire-and-forget notifications about order events."""

from orderflow.notifications.dispatcher import NotificationDispatcher
from orderflow.notifications.sinks import (
    DatabaseNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
)
from orderflow.notifications.templates import NotificationKind

__all__ = [
    "DatabaseNotificationSink",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationKind",
    "NotificationSink",
]
