"""Outbound booking notifications."""

from booking_os.notifications.dispatcher import (
    LoggingSink,
    Notification,
    NotificationDispatcher,
    NotificationSink,
    QueueNotificationDispatcher,
)

__all__ = [
    "LoggingSink",
    "Notification",
    "NotificationDispatcher",
    "NotificationSink",
    "QueueNotificationDispatcher",
]
