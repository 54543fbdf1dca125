"""
Data Models Package

This package contains all Pydantic models used by the BudgetFlow engine.
All data flowing through the engine must conform to these schemas.
"""

from budgetflow.models.workspace import (
    OWNER_ROLE,
    ActorRef,
    AnonymizedActor,
    Category,
    CategoryContext,
    CategorySpending,
    CategoryPermission,
    GuestActor,
    GuestPrincipal,
    KnownActor,
    PermissionView,
    Principal,
    Report,
    Role,
    UserPrincipal,
    actor_user_id,
    utcnow,
)
from budgetflow.models.guest import (
    GuestToken,
    GuestTokenStatus,
    PermissionLevel,
)
from budgetflow.models.expense import (
    DECISION_STATUSES,
    OPEN_STATUSES,
    SPENT_STATUSES,
    TERMINAL_STATUSES,
    Approval,
    Expense,
    ExpenseDraft,
    ExpenseLineItem,
    ExpenseStatus,
    ExpenseUpdate,
)
from budgetflow.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
    DeletionRecord,
)

__all__ = [
    # Workspace models
    "OWNER_ROLE",
    "ActorRef",
    "AnonymizedActor",
    "Category",
    "CategoryContext",
    "CategorySpending",
    "CategoryPermission",
    "GuestActor",
    "GuestPrincipal",
    "KnownActor",
    "PermissionView",
    "Principal",
    "Report",
    "Role",
    "UserPrincipal",
    "actor_user_id",
    "utcnow",
    # Guest models
    "GuestToken",
    "GuestTokenStatus",
    "PermissionLevel",
    # Expense models
    "DECISION_STATUSES",
    "OPEN_STATUSES",
    "SPENT_STATUSES",
    "TERMINAL_STATUSES",
    "Approval",
    "Expense",
    "ExpenseDraft",
    "ExpenseLineItem",
    "ExpenseStatus",
    "ExpenseUpdate",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    "DeletionRecord",
]
