"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the engine over any relational store
2. Use in-memory storage for testing
3. Keep authorization logic decoupled from the persistence implementation

The interface is intentionally narrow - we're not building a full ORM.
Just the reads and writes the engine needs, plus one transactional
boundary (`EngineStorageInterface.transaction`) under which multi-writes
commit together or not at all.

Missing rows are reported as None (or False for deletes). Only backend
faults raise StorageError.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, Iterable, Optional
from uuid import UUID

from budgetflow.models.audit import AuditEvent, DeletionRecord
from budgetflow.models.expense import Approval, Expense, ExpenseStatus
from budgetflow.models.guest import GuestToken, GuestTokenStatus
from budgetflow.models.workspace import (
    Category,
    CategoryContext,
    CategoryPermission,
    Report,
    Role,
)


class WorkspaceStorageInterface(ABC):
    """Reports, the category tree and direct permission grants."""

    @abstractmethod
    async def save_report(self, report: Report) -> Report:
        """Insert or replace a report."""
        pass

    @abstractmethod
    async def get_report(self, report_id: UUID) -> Optional[Report]:
        pass

    @abstractmethod
    async def list_reports_owned_by(self, user_id: UUID) -> list[Report]:
        pass

    @abstractmethod
    async def delete_report(self, report_id: UUID) -> bool:
        """
        Delete a report and cascade to its categories, permissions,
        guest tokens, expenses and their approvals.

        Returns:
            True if the report existed
        """
        pass

    @abstractmethod
    async def save_category(self, category: Category) -> Category:
        """Insert or replace a category."""
        pass

    @abstractmethod
    async def get_category(self, category_id: UUID) -> Optional[Category]:
        pass

    @abstractmethod
    async def get_category_context(
        self,
        category_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[CategoryContext]:
        """
        Read a category, its workspace owner and (if user_id is given)
        that user's direct grant on it, as one consistent view.

        Returns:
            The context, or None if the category does not exist
        """
        pass

    @abstractmethod
    async def get_root_category(self, report_id: UUID) -> Optional[Category]:
        pass

    @abstractmethod
    async def list_child_categories(self, category_id: UUID) -> list[Category]:
        """Direct children only."""
        pass

    @abstractmethod
    async def delete_categories(self, category_ids: Iterable[UUID]) -> int:
        """
        Delete categories with their permissions and guest tokens.
        Expenses filed under them are detached (category_id set to None).

        Returns:
            Number of categories deleted
        """
        pass

    @abstractmethod
    async def get_permission(
        self,
        category_id: UUID,
        user_id: UUID,
    ) -> Optional[CategoryPermission]:
        pass

    @abstractmethod
    async def list_permissions(
        self,
        category_ids: Iterable[UUID],
        roles: Optional[Iterable[Role]] = None,
    ) -> list[CategoryPermission]:
        """All grants on the given categories, optionally filtered by role."""
        pass

    @abstractmethod
    async def upsert_permission(
        self,
        category_id: UUID,
        user_id: UUID,
        role: Role,
    ) -> tuple[CategoryPermission, bool]:
        """
        Create or update the single grant for (category, user).

        Returns:
            (permission, created) - created is False when an existing row
            had its role updated
        """
        pass

    @abstractmethod
    async def delete_permission(
        self,
        category_id: UUID,
        user_id: UUID,
    ) -> Optional[CategoryPermission]:
        """Returns the deleted row, or None if there was none."""
        pass

    @abstractmethod
    async def delete_user_permissions(self, user_id: UUID) -> int:
        pass


class GuestTokenStorageInterface(ABC):
    """Guest capability tokens."""

    @abstractmethod
    async def add_token(self, token: GuestToken) -> GuestToken:
        """
        Insert a new token.

        Raises:
            DuplicateError: If the token string already exists
        """
        pass

    @abstractmethod
    async def get_token(self, token: str) -> Optional[GuestToken]:
        pass

    @abstractmethod
    async def update_token_status(
        self,
        token_id: UUID,
        status: GuestTokenStatus,
    ) -> Optional[GuestToken]:
        pass

    @abstractmethod
    async def delete_token(self, token: str) -> bool:
        pass

    @abstractmethod
    async def list_tokens(self, category_id: UUID) -> list[GuestToken]:
        """All tokens bound to a category, newest first."""
        pass

    @abstractmethod
    async def delete_stale_tokens(self, now: datetime) -> int:
        """Delete tokens that are revoked, expired by status or past expires_at."""
        pass


class ExpenseStorageInterface(ABC):
    """Expenses and their append-only approval trail."""

    @abstractmethod
    async def save_expense(self, expense: Expense) -> Expense:
        """Insert or replace an expense."""
        pass

    @abstractmethod
    async def get_expense(self, expense_id: UUID) -> Optional[Expense]:
        pass

    @abstractmethod
    async def delete_expense(self, expense_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_expenses(
        self,
        category_ids: Iterable[UUID],
        statuses: Optional[Iterable[ExpenseStatus]] = None,
    ) -> list[Expense]:
        """Expenses filed under any of the categories, newest first."""
        pass

    @abstractmethod
    async def append_approval(self, approval: Approval) -> Approval:
        pass

    @abstractmethod
    async def list_approvals(self, expense_id: UUID) -> list[Approval]:
        """Approvals in the order they were recorded."""
        pass

    @abstractmethod
    async def anonymize_user(self, user_id: UUID) -> tuple[int, int]:
        """
        Replace every reference to the user on expenses and approvals
        with an AnonymizedActor.

        Returns:
            (expenses_anonymized, approvals_anonymized)
        """
        pass


class ChangeFeedStorageInterface(ABC):
    """Persisted deletion change-feed for incremental sync."""

    @abstractmethod
    async def append_deletion(self, record: DeletionRecord) -> DeletionRecord:
        pass

    @abstractmethod
    async def list_deletions(
        self,
        user_id: UUID,
        since: datetime,
    ) -> list[DeletionRecord]:
        """Records for the user strictly after `since`, oldest first."""
        pass

    @abstractmethod
    async def prune_deletions(self, older_than: datetime) -> int:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """Events for one entity in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent events, newest first."""
        pass


class EngineStorageInterface(
    WorkspaceStorageInterface,
    GuestTokenStorageInterface,
    ExpenseStorageInterface,
    ChangeFeedStorageInterface,
):
    """Everything the engine persists, plus the transactional boundary."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        """
        Atomic unit of work.

        Usage:
            async with storage.transaction():
                await storage.save_expense(expense)
                await storage.append_approval(approval)

        If the block raises, none of its writes are visible afterwards.
        """
        pass


class StorageError(Exception):
    """Base exception for storage backend failures."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass
