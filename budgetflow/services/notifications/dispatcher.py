"""
Notification Dispatcher Contract

The engine does not deliver push notifications itself. It hands a
payload and a list of user ids to a dispatcher; how those reach devices
(Expo, APNs, email...) is the dispatcher's business.
"""

from abc import ABC, abstractmethod
from typing import Any
from uuid import UUID

import structlog
from pydantic import BaseModel, Field


class NotificationPayload(BaseModel):
    """What the user sees, plus deep-link data for the client."""

    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., max_length=1000)
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationDispatcher(ABC):
    """Transport for notifications. Implementations may raise on failure."""

    @abstractmethod
    async def notify(
        self,
        user_ids: list[UUID],
        payload: NotificationPayload,
        event_key: str,
    ) -> None:
        """
        Deliver `payload` to every user in `user_ids`.

        Args:
            user_ids: Recipients, already de-duplicated
            payload: Title, body and data
            event_key: Event name used for per-user preferences
                (e.g. "expense_created", "expense_approved")
        """
        pass


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the structured log instead of sending them."""

    def __init__(self):
        self._logger = structlog.get_logger(__name__)

    async def notify(
        self,
        user_ids: list[UUID],
        payload: NotificationPayload,
        event_key: str,
    ) -> None:
        self._logger.info(
            "notification_dispatched",
            event_key=event_key,
            recipients=[str(u) for u in user_ids],
            title=payload.title,
        )
