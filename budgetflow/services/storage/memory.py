"""
In-Memory Storage Implementation

DESIGN DECISION: The in-memory backend is the reference implementation
of the storage interfaces. It backs the test suite and single-process
deployments; a relational backend implements the same interfaces.

TRADEOFFS:
- Nothing survives a restart
- Transactions are serialized by one asyncio.Lock (fine for one event loop)
- Queries are plain Python filters over dicts

Stored models are copied on the way in and on the way out, so callers can
never mutate a row behind the backend's back and a rolled-back transaction
really restores the previous state.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional
from uuid import UUID

from budgetflow.models.audit import AuditEvent, DeletionRecord
from budgetflow.models.expense import Approval, Expense, ExpenseStatus
from budgetflow.models.guest import GuestToken, GuestTokenStatus
from budgetflow.models.workspace import (
    AnonymizedActor,
    Category,
    CategoryContext,
    CategoryPermission,
    KnownActor,
    Report,
    Role,
    utcnow,
)
from budgetflow.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    EngineStorageInterface,
)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryEngineStorage(EngineStorageInterface):
    """
    Dict-backed implementation of every engine storage interface.

    Usage:
        storage = InMemoryEngineStorage()
        async with storage.transaction():
            await storage.save_expense(expense)
    """

    _TABLES = (
        "_reports",
        "_categories",
        "_permissions",
        "_tokens",
        "_expenses",
        "_approvals",
        "_deletions",
    )

    def __init__(self):
        self._reports: dict[UUID, Report] = {}
        self._categories: dict[UUID, Category] = {}
        self._permissions: dict[tuple[UUID, UUID], CategoryPermission] = {}
        self._tokens: dict[str, GuestToken] = {}
        self._expenses: dict[UUID, Expense] = {}
        self._approvals: dict[UUID, list[Approval]] = {}
        self._deletions: list[DeletionRecord] = []
        self._lock = asyncio.Lock()

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}
            try:
                yield
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                raise

    # =========================================================================
    # REPORTS
    # =========================================================================

    async def save_report(self, report: Report) -> Report:
        self._reports[report.id] = _copy(report)
        return _copy(report)

    async def get_report(self, report_id: UUID) -> Optional[Report]:
        return _copy(self._reports.get(report_id))

    async def list_reports_owned_by(self, user_id: UUID) -> list[Report]:
        reports = [r for r in self._reports.values() if r.owner_id == user_id]
        reports.sort(key=lambda r: r.created_at)
        return [_copy(r) for r in reports]

    async def delete_report(self, report_id: UUID) -> bool:
        if self._reports.pop(report_id, None) is None:
            return False

        category_ids = {
            c.id for c in self._categories.values() if c.report_id == report_id
        }
        self._drop_categories(category_ids)

        expense_ids = [
            e.id for e in self._expenses.values() if e.report_id == report_id
        ]
        for expense_id in expense_ids:
            del self._expenses[expense_id]
            self._approvals.pop(expense_id, None)
        return True

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    async def save_category(self, category: Category) -> Category:
        self._categories[category.id] = _copy(category)
        return _copy(category)

    async def get_category(self, category_id: UUID) -> Optional[Category]:
        return _copy(self._categories.get(category_id))

    async def get_category_context(
        self,
        category_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[CategoryContext]:
        category = self._categories.get(category_id)
        if category is None:
            return None
        report = self._reports.get(category.report_id)
        if report is None:
            # Orphaned category: its workspace is gone.
            return None
        permission = None
        if user_id is not None:
            permission = self._permissions.get((category_id, user_id))
        return CategoryContext(
            category=_copy(category),
            owner_id=report.owner_id,
            permission=_copy(permission),
        )

    async def get_root_category(self, report_id: UUID) -> Optional[Category]:
        for category in self._categories.values():
            if category.report_id == report_id and category.parent_id is None:
                return _copy(category)
        return None

    async def list_child_categories(self, category_id: UUID) -> list[Category]:
        children = [
            c for c in self._categories.values() if c.parent_id == category_id
        ]
        children.sort(key=lambda c: c.created_at)
        return [_copy(c) for c in children]

    async def delete_categories(self, category_ids: Iterable[UUID]) -> int:
        return self._drop_categories(set(category_ids))

    def _drop_categories(self, category_ids: set[UUID]) -> int:
        deleted = 0
        for category_id in category_ids:
            if self._categories.pop(category_id, None) is not None:
                deleted += 1

        for key in [k for k in self._permissions if k[0] in category_ids]:
            del self._permissions[key]

        for token in [t for t, v in self._tokens.items() if v.category_id in category_ids]:
            del self._tokens[token]

        for expense_id, expense in self._expenses.items():
            if expense.category_id in category_ids:
                self._expenses[expense_id] = expense.model_copy(
                    update={"category_id": None, "updated_at": utcnow()}
                )
        return deleted

    # =========================================================================
    # PERMISSIONS
    # =========================================================================

    async def get_permission(
        self,
        category_id: UUID,
        user_id: UUID,
    ) -> Optional[CategoryPermission]:
        return _copy(self._permissions.get((category_id, user_id)))

    async def list_permissions(
        self,
        category_ids: Iterable[UUID],
        roles: Optional[Iterable[Role]] = None,
    ) -> list[CategoryPermission]:
        wanted = set(category_ids)
        role_filter = set(roles) if roles is not None else None
        results = [
            p for (category_id, _), p in self._permissions.items()
            if category_id in wanted
            and (role_filter is None or p.role in role_filter)
        ]
        results.sort(key=lambda p: p.created_at)
        return [_copy(p) for p in results]

    async def upsert_permission(
        self,
        category_id: UUID,
        user_id: UUID,
        role: Role,
    ) -> tuple[CategoryPermission, bool]:
        key = (category_id, user_id)
        existing = self._permissions.get(key)
        if existing is not None:
            updated = existing.model_copy(update={"role": role, "updated_at": utcnow()})
            self._permissions[key] = updated
            return _copy(updated), False

        permission = CategoryPermission(
            category_id=category_id,
            user_id=user_id,
            role=role,
        )
        self._permissions[key] = permission
        return _copy(permission), True

    async def delete_permission(
        self,
        category_id: UUID,
        user_id: UUID,
    ) -> Optional[CategoryPermission]:
        return self._permissions.pop((category_id, user_id), None)

    async def delete_user_permissions(self, user_id: UUID) -> int:
        keys = [k for k in self._permissions if k[1] == user_id]
        for key in keys:
            del self._permissions[key]
        return len(keys)

    # =========================================================================
    # GUEST TOKENS
    # =========================================================================

    async def add_token(self, token: GuestToken) -> GuestToken:
        if token.token in self._tokens:
            raise DuplicateError("Guest token already exists")
        self._tokens[token.token] = _copy(token)
        return _copy(token)

    async def get_token(self, token: str) -> Optional[GuestToken]:
        return _copy(self._tokens.get(token))

    async def update_token_status(
        self,
        token_id: UUID,
        status: GuestTokenStatus,
    ) -> Optional[GuestToken]:
        for key, stored in self._tokens.items():
            if stored.id == token_id:
                updated = stored.model_copy(update={"status": status})
                self._tokens[key] = updated
                return _copy(updated)
        return None

    async def delete_token(self, token: str) -> bool:
        return self._tokens.pop(token, None) is not None

    async def list_tokens(self, category_id: UUID) -> list[GuestToken]:
        tokens = [t for t in self._tokens.values() if t.category_id == category_id]
        tokens.sort(key=lambda t: t.created_at, reverse=True)
        return [_copy(t) for t in tokens]

    async def delete_stale_tokens(self, now: datetime) -> int:
        stale = [
            key for key, t in self._tokens.items()
            if t.status != GuestTokenStatus.ACTIVE or t.is_expired(now)
        ]
        for key in stale:
            del self._tokens[key]
        return len(stale)

    # =========================================================================
    # EXPENSES AND APPROVALS
    # =========================================================================

    async def save_expense(self, expense: Expense) -> Expense:
        self._expenses[expense.id] = _copy(expense)
        return _copy(expense)

    async def get_expense(self, expense_id: UUID) -> Optional[Expense]:
        return _copy(self._expenses.get(expense_id))

    async def delete_expense(self, expense_id: UUID) -> bool:
        if self._expenses.pop(expense_id, None) is None:
            return False
        self._approvals.pop(expense_id, None)
        return True

    async def list_expenses(
        self,
        category_ids: Iterable[UUID],
        statuses: Optional[Iterable[ExpenseStatus]] = None,
    ) -> list[Expense]:
        wanted = set(category_ids)
        status_filter = set(statuses) if statuses is not None else None
        results = [
            e for e in self._expenses.values()
            if e.category_id in wanted
            and (status_filter is None or e.status in status_filter)
        ]
        results.sort(key=lambda e: e.created_at, reverse=True)
        return [_copy(e) for e in results]

    async def append_approval(self, approval: Approval) -> Approval:
        self._approvals.setdefault(approval.expense_id, []).append(approval)
        return approval

    async def list_approvals(self, expense_id: UUID) -> list[Approval]:
        return list(self._approvals.get(expense_id, []))

    async def anonymize_user(self, user_id: UUID) -> tuple[int, int]:
        tombstone = AnonymizedActor()
        known = KnownActor(user_id=user_id)

        expenses_changed = 0
        for expense_id, expense in self._expenses.items():
            if expense.submitter == known:
                self._expenses[expense_id] = expense.model_copy(
                    update={"submitter": tombstone}
                )
                expenses_changed += 1

        approvals_changed = 0
        for expense_id, approvals in self._approvals.items():
            rewritten = []
            for approval in approvals:
                if approval.actor == known:
                    approval = approval.model_copy(update={"actor": tombstone})
                    approvals_changed += 1
                rewritten.append(approval)
            self._approvals[expense_id] = rewritten

        return expenses_changed, approvals_changed

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    async def append_deletion(self, record: DeletionRecord) -> DeletionRecord:
        self._deletions.append(_copy(record))
        return record

    async def list_deletions(
        self,
        user_id: UUID,
        since: datetime,
    ) -> list[DeletionRecord]:
        records = [
            r for r in self._deletions
            if r.user_id == user_id and r.deleted_at > since
        ]
        records.sort(key=lambda r: r.deleted_at)
        return [_copy(r) for r in records]

    async def prune_deletions(self, older_than: datetime) -> int:
        before = len(self._deletions)
        self._deletions = [r for r in self._deletions if r.deleted_at >= older_than]
        return before - len(self._deletions)


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log held in a list."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
