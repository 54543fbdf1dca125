"""
Notification Service

Turns workflow events into notifications and delivers them off the
request path.

DESIGN DECISION: Notifications are fire-and-forget.
1. They are scheduled only after the transition has committed
2. Delivery runs in a background asyncio task, retried with tenacity
3. A final failure is logged and audited, never raised to the caller

A failed notification can therefore never roll back, delay or fail an
expense transition.

Recipients:
- expense_created: reviewers/admins on the category and its ancestors,
  plus the workspace owner, minus whoever submitted
- expense_approved / expense_denied: the submitter, unless they decided
  it themselves (guest and anonymized submitters have nobody to notify)
- category_shared: the grantee
"""

import asyncio
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from budgetflow.audit import AuditLogger
from budgetflow.config import NotificationSettings, get_settings
from budgetflow.models.expense import Expense, ExpenseStatus
from budgetflow.models.workspace import Category, KnownActor, Role
from budgetflow.permissions import PermissionResolver
from budgetflow.services.notifications.dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationPayload,
)


logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Schedules notifications for workflow and sharing events.

    Usage:
        notifications = NotificationService(resolver, dispatcher)
        notifications.expense_created(expense, category, actor_user_id)
        await notifications.drain()   # tests / graceful shutdown
    """

    def __init__(
        self,
        resolver: PermissionResolver,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[NotificationSettings] = None,
    ):
        self._resolver = resolver
        self._dispatcher = dispatcher or LoggingNotificationDispatcher()
        self._audit_logger = audit_logger or AuditLogger()
        self._settings = settings or get_settings().notifications
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # EVENTS
    # =========================================================================

    def expense_created(
        self,
        expense: Expense,
        category: Category,
        actor_user_id: Optional[UUID],
    ) -> Optional[asyncio.Task]:
        async def build() -> tuple[list[UUID], NotificationPayload]:
            recipients = await self._resolver.reviewer_ids(category.id)
            if actor_user_id is not None:
                recipients.discard(actor_user_id)

            body = (
                f"“{expense.description}” for ${expense.amount} "
                f"was added in {category.name}."
            )
            return sorted(recipients, key=str), NotificationPayload(
                title="New expense submitted",
                body=body,
                data={
                    "event": "expense_created",
                    "expense_id": str(expense.id),
                    "report_id": str(expense.report_id),
                    "category_id": str(category.id),
                    "amount": str(expense.amount),
                    "type": "expense",
                    "id": str(expense.id),
                    "url": f"/expense/{expense.id}",
                },
            )

        return self._schedule("expense_created", build)

    def expense_status_changed(
        self,
        expense: Expense,
        actor_user_id: Optional[UUID],
        category_name: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        status = expense.status
        if status not in (ExpenseStatus.APPROVED, ExpenseStatus.DENIED):
            return None
        if not isinstance(expense.submitter, KnownActor):
            return None
        submitter_id = expense.submitter.user_id
        if actor_user_id is not None and actor_user_id == submitter_id:
            return None

        approved = status == ExpenseStatus.APPROVED
        event_key = "expense_approved" if approved else "expense_denied"

        async def build() -> tuple[list[UUID], NotificationPayload]:
            verb = "approved" if approved else "denied"
            where = f" in {category_name}" if category_name else ""
            return [submitter_id], NotificationPayload(
                title=f"Expense {verb}",
                body=f"“{expense.description}” was {verb}{where}.",
                data={
                    "event": "expense_status_changed",
                    "expense_id": str(expense.id),
                    "status": status.value,
                    "report_id": str(expense.report_id),
                    "type": "expense",
                    "id": str(expense.id),
                    "url": f"/expense/{expense.id}",
                },
            )

        return self._schedule(event_key, build)

    def category_shared(
        self,
        user_id: UUID,
        category: Category,
        role: Role,
    ) -> Optional[asyncio.Task]:
        async def build() -> tuple[list[UUID], NotificationPayload]:
            return [user_id], NotificationPayload(
                title="Category shared with you",
                body=f"You were granted {role.value} access to “{category.name}”.",
                data={
                    "event": "category_shared",
                    "category_id": str(category.id),
                    "report_id": str(category.report_id),
                    "role": role.value,
                    "type": "category",
                    "id": str(category.id),
                    "url": f"/category/{category.id}",
                },
            )

        return self._schedule("category_shared", build)

    async def drain(self) -> None:
        """Wait for every scheduled notification to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # =========================================================================
    # DELIVERY
    # =========================================================================

    def _schedule(
        self,
        event_key: str,
        build: Callable[[], Awaitable[tuple[list[UUID], NotificationPayload]]],
    ) -> Optional[asyncio.Task]:
        if not self._settings.enabled:
            return None
        task = asyncio.get_running_loop().create_task(self._run(event_key, build))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        event_key: str,
        build: Callable[[], Awaitable[tuple[list[UUID], NotificationPayload]]],
    ) -> None:
        recipients: list[UUID] = []
        try:
            recipients, payload = await build()
            if not recipients:
                if self._settings.debug:
                    logger.debug("notification_no_recipients", event_key=event_key)
                return

            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.retry_attempts),
                wait=wait_exponential(
                    multiplier=1,
                    min=self._settings.retry_min_wait_seconds,
                    max=self._settings.retry_max_wait_seconds,
                ),
                reraise=True,
            ):
                with attempt:
                    await self._dispatcher.notify(recipients, payload, event_key)

            if self._settings.debug:
                logger.debug(
                    "notification_sent",
                    event_key=event_key,
                    recipient_count=len(recipients),
                )
        except Exception as e:
            logger.error(
                "notification_failed",
                event_key=event_key,
                recipient_count=len(recipients),
                error=str(e),
            )
            await self._audit_logger.log_notification_failed(
                event_key=event_key,
                recipient_count=len(recipients),
                error_message=str(e),
            )
