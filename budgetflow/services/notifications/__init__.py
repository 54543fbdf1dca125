"""Notification dispatch package."""

from budgetflow.services.notifications.dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationPayload,
)
from budgetflow.services.notifications.service import NotificationService

__all__ = [
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "NotificationPayload",
    "NotificationService",
]
