"""
Main Orchestrator for BudgetFlow

This module ties together all the components and exposes the engine's
boundary: the operations a thin transport layer (HTTP, RPC, CLI) calls.

    resolve_role / has_at_least / descendant_ids / merged_permissions_view
    issue / validate / revoke / list guest tokens
    submit / decide / edit / delete / move expenses
    workspace administration, category spending and user deletion
    deletion change-feed

DESIGN DECISION: The orchestrator wires, it does not decide.
Every authorization rule lives in PermissionResolver, GuestTokenService
or ExpenseWorkflow; the facade only forwards to them. This keeps exactly
one implementation of each rule.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, Union
from uuid import UUID

from budgetflow.audit import AuditLogger, ChangeFeed
from budgetflow.config import NotificationSettings
from budgetflow.guests import GuestTokenService
from budgetflow.models.expense import Approval, Expense, ExpenseDraft, ExpenseUpdate
from budgetflow.models.guest import GuestToken, PermissionLevel
from budgetflow.models.workspace import (
    Category,
    CategoryPermission,
    CategorySpending,
    PermissionView,
    Principal,
    Report,
    Role,
    utcnow,
)
from budgetflow.permissions import PermissionResolver
from budgetflow.services.notifications import (
    NotificationDispatcher,
    NotificationService,
)
from budgetflow.services.storage import (
    AuditStorageInterface,
    EngineStorageInterface,
    InMemoryAuditStorage,
    InMemoryEngineStorage,
)
from budgetflow.workflow import ExpenseWorkflow
from budgetflow.workspaces import WorkspaceService


class BudgetEngine:
    """
    Facade over the authorization and workflow engine.

    Usage:
        engine = create_engine_components()
        report, root = await engine.create_report(alice, "Trip")
        expense = await engine.submit_expense(UserPrincipal(user_id=alice), root.id, draft)
    """

    def __init__(
        self,
        storage: EngineStorageInterface,
        resolver: PermissionResolver,
        guest_tokens: GuestTokenService,
        workflow: ExpenseWorkflow,
        workspaces: WorkspaceService,
        notifications: NotificationService,
        change_feed: ChangeFeed,
        audit_logger: AuditLogger,
    ):
        self.storage = storage
        self.resolver = resolver
        self.guest_tokens = guest_tokens
        self.workflow = workflow
        self.workspaces = workspaces
        self.notifications = notifications
        self.change_feed = change_feed
        self.audit_logger = audit_logger

    # Permission resolution

    async def resolve_role(self, user_id: UUID, category_id: UUID) -> Optional[Role]:
        return await self.resolver.resolve_role(user_id, category_id)

    async def has_at_least(self, user_id: UUID, category_id: UUID, required: Any) -> bool:
        return await self.resolver.has_at_least(user_id, category_id, Role.parse(required))

    async def descendant_ids(self, category_id: UUID) -> set[UUID]:
        return await self.resolver.descendant_ids(category_id)

    async def merged_permissions_view(self, category_id: UUID) -> list[PermissionView]:
        return await self.resolver.merged_permissions_view(category_id)

    # Guest tokens

    async def issue_guest_token(
        self,
        actor_id: UUID,
        category_id: UUID,
        permission_level: Any,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> GuestToken:
        """Share links are minted by category admins."""
        await self.workspaces.require_admin(actor_id, category_id, "issue_guest_token")
        return await self.guest_tokens.issue(category_id, permission_level, expires_at, description)

    async def validate_guest_token(
        self,
        token: str,
        required_level: Any = PermissionLevel.SUBMIT_ONLY,
    ) -> GuestToken:
        return await self.guest_tokens.validate(token, required_level)

    async def revoke_guest_token(self, actor_id: UUID, token: str) -> bool:
        record = await self.storage.get_token(token)
        if record is None:
            return False
        await self.workspaces.require_admin(actor_id, record.category_id, "revoke_guest_token")
        return await self.guest_tokens.revoke(token)

    async def list_active_guest_tokens(
        self,
        actor_id: UUID,
        category_id: UUID,
    ) -> list[GuestToken]:
        await self.workspaces.require_admin(actor_id, category_id, "list_guest_tokens")
        return await self.guest_tokens.list_active(category_id)

    async def cleanup_guest_tokens(self, now: Optional[datetime] = None) -> int:
        return await self.guest_tokens.cleanup_expired(now)

    # Expenses

    async def submit_expense(
        self,
        principal: Principal,
        category_id: Optional[UUID],
        draft: Union[ExpenseDraft, dict],
    ) -> Expense:
        return await self.workflow.submit(principal, category_id, draft)

    async def decide_expense(
        self,
        principal: Principal,
        expense_id: UUID,
        desired_status: Any,
        notes: Optional[str] = None,
    ) -> Expense:
        return await self.workflow.decide(principal, expense_id, desired_status, notes)

    async def delete_expense(self, user_id: UUID, expense_id: UUID) -> None:
        await self.workflow.delete(user_id, expense_id)

    async def move_expense(
        self,
        user_id: UUID,
        expense_id: UUID,
        new_category_id: UUID,
    ) -> Expense:
        return await self.workflow.move(user_id, expense_id, new_category_id)

    async def list_reviewable_expenses(
        self,
        principal: Principal,
        category_id: Optional[UUID] = None,
    ) -> list[Expense]:
        return await self.workflow.list_reviewable(principal, category_id)

    async def update_expense(
        self,
        user_id: UUID,
        expense_id: UUID,
        changes: Union[ExpenseUpdate, dict],
    ) -> Expense:
        return await self.workflow.update(user_id, expense_id, changes)

    async def expense_approvals(self, expense_id: UUID, user_id: UUID) -> list[Approval]:
        return await self.workflow.approvals_for(expense_id, user_id)

    # Workspace administration

    async def create_report(
        self,
        owner_id: UUID,
        name: str,
        budget: Optional[Decimal] = None,
    ) -> tuple[Report, Category]:
        return await self.workspaces.create_report(owner_id, name, budget)

    async def delete_report(self, actor_id: UUID, report_id: UUID) -> None:
        await self.workspaces.delete_report(actor_id, report_id)

    async def create_category(self, actor_id: UUID, parent_id: UUID, name: str, **options) -> Category:
        return await self.workspaces.create_category(actor_id, parent_id, name, **options)

    async def update_category_options(self, actor_id: UUID, category_id: UUID, **options) -> Category:
        return await self.workspaces.update_category_options(actor_id, category_id, **options)

    async def update_category(
        self,
        actor_id: UUID,
        category_id: UUID,
        name: Optional[str] = None,
        budget: Optional[Any] = None,
    ) -> Category:
        return await self.workspaces.update_category(actor_id, category_id, name, budget)

    async def category_spending(self, actor_id: UUID, category_id: UUID) -> CategorySpending:
        return await self.workspaces.category_spending(actor_id, category_id)

    async def move_category(self, actor_id: UUID, category_id: UUID, new_parent_id: UUID) -> Category:
        return await self.workspaces.move_category(actor_id, category_id, new_parent_id)

    async def delete_category(self, actor_id: UUID, category_id: UUID) -> int:
        return await self.workspaces.delete_category(actor_id, category_id)

    async def list_category_permissions(
        self,
        actor_id: UUID,
        category_id: UUID,
    ) -> list[PermissionView]:
        return await self.workspaces.list_permissions(actor_id, category_id)

    async def grant_permission(
        self,
        actor_id: UUID,
        category_id: UUID,
        target_user_id: UUID,
        role: Any,
    ) -> tuple[CategoryPermission, bool]:
        return await self.workspaces.grant_permission(actor_id, category_id, target_user_id, role)

    async def revoke_permission(
        self,
        actor_id: UUID,
        category_id: UUID,
        target_user_id: UUID,
    ) -> CategoryPermission:
        return await self.workspaces.revoke_permission(actor_id, category_id, target_user_id)

    async def delete_user(self, user_id: UUID) -> dict[str, int]:
        return await self.workspaces.delete_user(user_id)

    # Change-feed

    async def deleted_since(self, user_id: UUID, since: datetime) -> dict[str, list[UUID]]:
        return await self.change_feed.deleted_since(user_id, since)


def create_engine_components(
    storage: Optional[EngineStorageInterface] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    clock: Optional[Callable[[], datetime]] = None,
    notification_settings: Optional[NotificationSettings] = None,
) -> BudgetEngine:
    """
    Factory function to create all engine components.

    Args:
        storage: Engine storage backend. Defaults to in-memory.
        audit_storage: Where audit events are persisted. Defaults to in-memory.
        dispatcher: Notification transport. Defaults to logging only.
        clock: Time source (tests pass a controllable clock).
        notification_settings: Overrides NotificationSettings from the environment.

    Returns:
        A fully wired BudgetEngine
    """
    storage = storage or InMemoryEngineStorage()
    audit_logger = AuditLogger(audit_storage or InMemoryAuditStorage())
    clock = clock or utcnow

    resolver = PermissionResolver(storage, audit_logger=audit_logger)
    change_feed = ChangeFeed(storage, clock=clock)
    notifications = NotificationService(
        resolver,
        dispatcher=dispatcher,
        audit_logger=audit_logger,
        settings=notification_settings,
    )
    guest_tokens = GuestTokenService(
        storage,
        resolver,
        audit_logger=audit_logger,
        clock=clock,
    )
    workflow = ExpenseWorkflow(
        storage,
        resolver,
        guest_tokens,
        notifications=notifications,
        change_feed=change_feed,
        audit_logger=audit_logger,
        clock=clock,
    )
    workspaces = WorkspaceService(
        storage,
        resolver,
        notifications=notifications,
        change_feed=change_feed,
        audit_logger=audit_logger,
        clock=clock,
    )

    return BudgetEngine(
        storage=storage,
        resolver=resolver,
        guest_tokens=guest_tokens,
        workflow=workflow,
        workspaces=workspaces,
        notifications=notifications,
        change_feed=change_feed,
        audit_logger=audit_logger,
    )
