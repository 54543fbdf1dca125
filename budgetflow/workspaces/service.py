"""
Workspace Administration

Reports, the category tree beneath them, and direct permission grants.
Every mutation here requires ADMIN on the category it touches (the
workspace owner always qualifies) and goes through the resolver for
that check. The one exception is renaming a non-root category, which a
REVIEWER may do.

Tree mutations keep the tree a tree:
- The root category cannot be moved or deleted on its own
- A category cannot be moved under itself or its own subtree
- Categories never change workspace

DESIGN DECISION: Deleting a user anonymizes instead of cascading.
Expenses and approvals they touched survive with an AnonymizedActor in
place of their reference; only the reports they own (and everything in
those reports) are removed.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from pydantic import ValidationError

from budgetflow.audit import AuditLogger, ChangeFeed
from budgetflow.errors import BadRequestError, ForbiddenError, NotFoundError
from budgetflow.models.audit import AuditEventBuilder, AuditEventType
from budgetflow.models.expense import SPENT_STATUSES
from budgetflow.models.workspace import (
    Category,
    CategoryPermission,
    CategorySpending,
    PermissionView,
    Report,
    Role,
    utcnow,
)
from budgetflow.permissions import PermissionResolver
from budgetflow.services.notifications import NotificationService
from budgetflow.services.storage import EngineStorageInterface


logger = structlog.get_logger(__name__)


def _build(model_cls, **values):
    try:
        return model_cls(**values)
    except ValidationError as e:
        issues = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise BadRequestError(f"Invalid {model_cls.__name__.lower()} data", {"issues": issues})


class WorkspaceService:
    """Reports, categories and grants."""

    def __init__(
        self,
        storage: EngineStorageInterface,
        resolver: PermissionResolver,
        notifications: Optional[NotificationService] = None,
        change_feed: Optional[ChangeFeed] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._resolver = resolver
        self._notifications = notifications
        self._change_feed = change_feed or ChangeFeed(storage)
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock or utcnow

    # =========================================================================
    # REPORTS
    # =========================================================================

    async def create_report(
        self,
        owner_id: UUID,
        name: str,
        budget: Optional[Decimal] = None,
    ) -> tuple[Report, Category]:
        """Create a workspace and its root category (same name)."""
        now = self._clock()
        report = _build(Report, owner_id=owner_id, name=name, created_at=now, updated_at=now)
        root = _build(
            Category,
            report_id=report.id,
            name=report.name,
            budget=budget if budget is not None else Decimal("0.00"),
            created_at=now,
            updated_at=now,
        )

        async with self._storage.transaction():
            report = await self._storage.save_report(report)
            root = await self._storage.save_category(root)

        await self._audit(
            AuditEventType.REPORT_CREATED, "report", report.id, owner_id,
            f"Report '{report.name}' created",
            {"root_category_id": str(root.id)},
        )
        return report, root

    async def delete_report(self, actor_id: UUID, report_id: UUID) -> None:
        """Owner only. Cascades to everything in the workspace."""
        report = await self._storage.get_report(report_id)
        if report is None:
            raise NotFoundError("Report not found", {"report_id": str(report_id)})
        if report.owner_id != actor_id:
            await self._audit_logger.log_authorization_denied(
                "delete_report", "Only the owner can delete a report",
                actor_id, "report", report_id,
            )
            raise ForbiddenError("Only the owner can delete a report")

        root = await self._storage.get_root_category(report_id)
        category_ids = await self._resolver.descendant_ids(root.id) if root else set()
        grants = await self._storage.list_permissions(category_ids)

        async with self._storage.transaction():
            await self._storage.delete_report(report_id)
            await self._change_feed.record(
                "report", report_id, actor_id,
                {"name": report.name, "owner_id": str(report.owner_id)},
            )
            await self._record_shared_deletions(grants, {"report_id": str(report_id)})

        await self._audit(
            AuditEventType.REPORT_DELETED, "report", report_id, actor_id,
            f"Report '{report.name}' deleted",
            {"categories_deleted": len(category_ids)},
        )

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    async def create_category(
        self,
        actor_id: UUID,
        parent_id: UUID,
        name: str,
        budget: Optional[Decimal] = None,
        allow_guest_submissions: bool = True,
        allow_user_submissions: bool = True,
        require_receipt: bool = False,
    ) -> Category:
        """Add a child under `parent_id`. Requires ADMIN on the parent."""
        parent = await self.require_admin(actor_id, parent_id, "create_category")

        now = self._clock()
        category = _build(
            Category,
            report_id=parent.report_id,
            parent_id=parent.id,
            name=name,
            budget=budget if budget is not None else Decimal("0.00"),
            allow_guest_submissions=allow_guest_submissions,
            allow_user_submissions=allow_user_submissions,
            require_receipt=require_receipt,
            created_at=now,
            updated_at=now,
        )
        async with self._storage.transaction():
            category = await self._storage.save_category(category)

        await self._audit(
            AuditEventType.CATEGORY_CREATED, "category", category.id, actor_id,
            f"Category '{category.name}' created",
            {"parent_id": str(parent.id)},
        )
        return category

    async def update_category_options(
        self,
        actor_id: UUID,
        category_id: UUID,
        allow_guest_submissions: Optional[bool] = None,
        allow_user_submissions: Optional[bool] = None,
        require_receipt: Optional[bool] = None,
    ) -> Category:
        """Change submission flags. Options left as None are not touched."""
        await self.require_admin(actor_id, category_id, "update_category_options")

        changes: dict[str, Any] = {
            key: value
            for key, value in (
                ("allow_guest_submissions", allow_guest_submissions),
                ("allow_user_submissions", allow_user_submissions),
                ("require_receipt", require_receipt),
            )
            if value is not None
        }
        if not changes:
            raise BadRequestError("No options to update")

        async with self._storage.transaction():
            current = await self._storage.get_category(category_id)
            if current is None:
                raise NotFoundError("Category not found", {"category_id": str(category_id)})
            updated = current.model_copy(update={**changes, "updated_at": self._clock()})
            updated = await self._storage.save_category(updated)

        await self._audit(
            AuditEventType.CATEGORY_UPDATED, "category", category_id, actor_id,
            "Category options updated",
            changes,
        )
        return updated

    async def update_category(
        self,
        actor_id: UUID,
        category_id: UUID,
        name: Optional[str] = None,
        budget: Optional[Any] = None,
    ) -> Category:
        """
        Rename a category or change its budget.

        Renaming needs ADMIN, or REVIEWER on a non-root category. Changing
        the budget needs ADMIN. Renaming the root also renames its report.

        Raises:
            BadRequestError: Nothing to update, empty name, or a budget that
                is not a non-negative amount
            ForbiddenError: Insufficient role for one of the requested changes
        """
        if name is None and budget is None:
            raise BadRequestError("At least one field must be provided for update")

        changes: dict[str, Any] = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise BadRequestError("Category name cannot be empty")
            changes["name"] = name
        if budget is not None:
            try:
                amount = Decimal(str(budget))
            except InvalidOperation:
                amount = None
            if amount is None or not amount.is_finite() or amount < 0:
                raise BadRequestError("Budget must be a non-negative number", {"budget": str(budget)})
            changes["budget"] = amount

        category = (await self._resolver.get_context(category_id)).category
        if "budget" in changes or category.is_root:
            required = Role.ADMIN
        else:
            required = Role.REVIEWER
        await self._require_role(actor_id, category_id, required, "update_category")

        now = self._clock()
        async with self._storage.transaction():
            current = await self._storage.get_category(category_id)
            if current is None:
                raise NotFoundError("Category not found", {"category_id": str(category_id)})
            updated = _build(
                Category, **{**current.model_dump(), **changes, "updated_at": now}
            )
            updated = await self._storage.save_category(updated)
            if "name" in changes and updated.is_root:
                report = await self._storage.get_report(updated.report_id)
                if report is not None:
                    await self._storage.save_report(
                        report.model_copy(update={"name": updated.name, "updated_at": now})
                    )

        await self._audit(
            AuditEventType.CATEGORY_UPDATED, "category", category_id, actor_id,
            "Category updated",
            {key: str(value) for key, value in changes.items()},
        )
        return updated

    async def category_spending(self, actor_id: UUID, category_id: UUID) -> CategorySpending:
        """
        Spending of a category and its whole subtree against the
        category's budget. Any role on the category may read it.
        """
        category = await self._require_role(
            actor_id, category_id, Role.SUBMITTER, "category_spending"
        )
        scope = await self._resolver.descendant_ids(category_id)
        spent_expenses = await self._storage.list_expenses(scope, statuses=SPENT_STATUSES)

        spent = sum((e.amount for e in spent_expenses), Decimal("0.00"))
        if category.budget > 0:
            percentage = int(
                (spent / category.budget * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            )
        else:
            percentage = 0

        return CategorySpending(
            category_id=category_id,
            budget=category.budget,
            spent=spent,
            remaining=category.budget - spent,
            percentage=percentage,
            expense_count=len(spent_expenses),
        )

    async def move_category(
        self,
        actor_id: UUID,
        category_id: UUID,
        new_parent_id: UUID,
    ) -> Category:
        """
        Re-parent a category within its workspace.

        Requires ADMIN on the category and on the new parent.

        Raises:
            BadRequestError: Root category, other workspace, or a new
                parent inside the category's own subtree
        """
        category = await self.require_admin(actor_id, category_id, "move_category")
        if category.is_root:
            raise BadRequestError("The root category cannot be moved")
        if category.parent_id == new_parent_id:
            return category

        new_parent = await self.require_admin(actor_id, new_parent_id, "move_category")
        if new_parent.report_id != category.report_id:
            raise BadRequestError("Cannot move a category to a different workspace")

        async with self._storage.transaction():
            # Checked under the transaction so a concurrent move cannot close a loop.
            if new_parent_id in await self._resolver.descendant_ids(category_id):
                raise BadRequestError(
                    "Cannot move a category under itself or one of its subcategories"
                )
            current = await self._storage.get_category(category_id)
            if current is None:
                raise NotFoundError("Category not found", {"category_id": str(category_id)})
            moved = current.model_copy(
                update={"parent_id": new_parent_id, "updated_at": self._clock()}
            )
            moved = await self._storage.save_category(moved)

        await self._audit(
            AuditEventType.CATEGORY_MOVED, "category", category_id, actor_id,
            "Category moved",
            {"from_parent_id": str(category.parent_id), "to_parent_id": str(new_parent_id)},
        )
        return moved

    async def delete_category(self, actor_id: UUID, category_id: UUID) -> int:
        """
        Delete a category and its subtree. Expenses filed there are kept
        but detached. Returns the number of categories removed.
        """
        category = await self.require_admin(actor_id, category_id, "delete_category")
        if category.is_root:
            raise BadRequestError("The root category cannot be deleted; delete the report instead")

        subtree = await self._resolver.descendant_ids(category_id)
        grants = await self._storage.list_permissions(subtree)

        async with self._storage.transaction():
            deleted = await self._storage.delete_categories(subtree)
            await self._record_shared_deletions(
                grants, {"report_id": str(category.report_id)}
            )

        await self._audit(
            AuditEventType.CATEGORY_DELETED, "category", category_id, actor_id,
            f"Category '{category.name}' deleted",
            {"categories_deleted": deleted},
        )
        return deleted

    # =========================================================================
    # PERMISSIONS
    # =========================================================================

    async def list_permissions(self, actor_id: UUID, category_id: UUID) -> list[PermissionView]:
        await self.require_admin(actor_id, category_id, "list_permissions")
        return await self._resolver.merged_permissions_view(category_id)

    async def grant_permission(
        self,
        actor_id: UUID,
        category_id: UUID,
        target_user_id: UUID,
        role: Any,
    ) -> tuple[CategoryPermission, bool]:
        """
        Grant (or change) a user's direct role on a category.

        Returns:
            (permission, created)
        """
        role = Role.parse(role)
        category = await self.require_admin(actor_id, category_id, "grant_permission")

        context = await self._resolver.get_context(category_id)
        if context.owner_id == target_user_id:
            raise BadRequestError("The workspace owner already has full access")

        async with self._storage.transaction():
            permission, created = await self._storage.upsert_permission(
                category_id, target_user_id, role
            )

        await self._audit(
            AuditEventType.PERMISSION_GRANTED, "category", category_id, actor_id,
            f"{role.value} granted",
            {"user_id": str(target_user_id), "role": role.value, "created": created},
        )
        if self._notifications:
            self._notifications.category_shared(target_user_id, category, role)
        return permission, created

    async def revoke_permission(
        self,
        actor_id: UUID,
        category_id: UUID,
        target_user_id: UUID,
    ) -> CategoryPermission:
        """Remove a direct grant. Inherited grants are untouched."""
        category = await self.require_admin(actor_id, category_id, "revoke_permission")

        context = await self._resolver.get_context(category_id)
        if context.owner_id == target_user_id:
            raise BadRequestError("The workspace owner's access cannot be revoked")

        async with self._storage.transaction():
            permission = await self._storage.delete_permission(category_id, target_user_id)
            if permission is None:
                raise NotFoundError(
                    "Permission not found",
                    {"category_id": str(category_id), "user_id": str(target_user_id)},
                )
            await self._change_feed.record(
                "shared_category", category_id, target_user_id,
                {"category_name": category.name, "report_id": str(category.report_id)},
            )

        await self._audit(
            AuditEventType.PERMISSION_REVOKED, "category", category_id, actor_id,
            f"{permission.role.value} revoked",
            {"user_id": str(target_user_id)},
        )
        return permission

    # =========================================================================
    # USERS
    # =========================================================================

    async def delete_user(self, user_id: UUID) -> dict[str, int]:
        """
        Remove a user's footprint.

        Owned reports are deleted (with everything in them), grants are
        removed, and remaining expense/approval references become
        AnonymizedActor.
        """
        owned = await self._storage.list_reports_owned_by(user_id)

        async with self._storage.transaction():
            for report in owned:
                await self._storage.delete_report(report.id)
            permissions_removed = await self._storage.delete_user_permissions(user_id)
            expenses, approvals = await self._storage.anonymize_user(user_id)

        summary = {
            "reports_deleted": len(owned),
            "expenses_anonymized": expenses,
            "approvals_anonymized": approvals,
            "permissions_removed": permissions_removed,
        }
        logger.info("user_deleted", user_id=str(user_id), **summary)
        await self._audit(
            AuditEventType.USER_ANONYMIZED, "user", user_id, None,
            "User deleted and references anonymized",
            summary,
        )
        return summary

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def require_admin(
        self,
        actor_id: UUID,
        category_id: UUID,
        operation: str,
    ) -> Category:
        return await self._require_role(actor_id, category_id, Role.ADMIN, operation)

    async def _require_role(
        self,
        actor_id: UUID,
        category_id: UUID,
        required: Role,
        operation: str,
    ) -> Category:
        context = await self._resolver.get_context(category_id)
        if not await self._resolver.has_at_least(actor_id, category_id, required):
            reason = f"{required.value.capitalize()} access required"
            await self._audit_logger.log_authorization_denied(
                operation, reason, actor_id, "category", category_id,
            )
            raise ForbiddenError(
                reason,
                {"operation": operation, "category_id": str(category_id)},
            )
        return context.category

    async def _record_shared_deletions(
        self,
        grants: list[CategoryPermission],
        metadata: dict[str, Any],
    ) -> None:
        for grant in grants:
            await self._change_feed.record(
                "shared_category", grant.category_id, grant.user_id, metadata
            )

    async def _audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: UUID,
        actor_id: Optional[UUID],
        description: str,
        details: Optional[dict] = None,
    ) -> None:
        await self._audit_logger.log(
            AuditEventBuilder.workspace_change(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                description=description,
                details=details,
            )
        )
