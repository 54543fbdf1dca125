"""
Audit Models for BudgetFlow

Every significant action in the engine is logged for audit purposes.
This provides:
1. Complete traceability of authorization decisions
2. Debugging information when a transition is refused
3. Accountability for guest-token activity

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.

These operational events are separate from Approval rows: Approvals are
part of the expense itself and are written in the same transaction as the
status change. Audit events describe what the engine did around them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from budgetflow.models.workspace import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Expenses
    EXPENSE_SUBMITTED = "expense_submitted"
    EXPENSE_DECIDED = "expense_decided"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_DELETED = "expense_deleted"
    EXPENSE_MOVED = "expense_moved"

    # Guest capabilities
    GUEST_TOKEN_ISSUED = "guest_token_issued"
    GUEST_TOKEN_REVOKED = "guest_token_revoked"
    GUEST_TOKEN_EXPIRED = "guest_token_expired"
    GUEST_TOKENS_CLEANED = "guest_tokens_cleaned"

    # Workspace administration
    REPORT_CREATED = "report_created"
    REPORT_DELETED = "report_deleted"
    CATEGORY_CREATED = "category_created"
    CATEGORY_UPDATED = "category_updated"
    CATEGORY_MOVED = "category_moved"
    CATEGORY_DELETED = "category_deleted"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_REVOKED = "permission_revoked"
    USER_ANONYMIZED = "user_anonymized"

    # Refusals and faults
    AUTHORIZATION_DENIED = "authorization_denied"
    INVARIANT_VIOLATION = "invariant_violation"
    NOTIFICATION_FAILED = "notification_failed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'expense', 'category', 'guest_token')"
    )
    entity_id: Optional[UUID] = None

    # Who did it (None for guests and system jobs)
    actor_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.expense_submitted(expense, actor_id)
        event = AuditEventBuilder.guest_token_expired(token_id, category_id)
    """

    @staticmethod
    def expense_submitted(
        expense_id: UUID,
        category_id: UUID,
        amount: str,
        actor_id: Optional[UUID],
        via_guest: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_SUBMITTED,
            entity_type="expense",
            entity_id=expense_id,
            actor_id=actor_id,
            description=f"Expense submitted for {amount}",
            details={
                "category_id": str(category_id),
                "amount": amount,
                "via_guest": via_guest,
            },
        )

    @staticmethod
    def expense_decided(
        expense_id: UUID,
        previous_status: str,
        requested_status: str,
        new_status: str,
        actor_id: Optional[UUID],
        via_guest: bool,
    ) -> AuditEvent:
        escalated = requested_status != new_status
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DECIDED,
            entity_type="expense",
            entity_id=expense_id,
            actor_id=actor_id,
            description=f"Expense moved {previous_status} -> {new_status}",
            details={
                "previous_status": previous_status,
                "requested_status": requested_status,
                "new_status": new_status,
                "escalated": escalated,
                "via_guest": via_guest,
            },
        )

    @staticmethod
    def expense_updated(
        expense_id: UUID,
        fields: list[str],
        status: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_UPDATED,
            entity_type="expense",
            entity_id=expense_id,
            actor_id=actor_id,
            description=f"Expense edited ({', '.join(fields)})",
            details={"fields": fields, "status": status},
        )

    @staticmethod
    def expense_deleted(
        expense_id: UUID,
        status: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DELETED,
            entity_type="expense",
            entity_id=expense_id,
            actor_id=actor_id,
            description=f"Expense deleted while {status}",
            details={"status": status},
        )

    @staticmethod
    def expense_moved(
        expense_id: UUID,
        from_category_id: Optional[UUID],
        to_category_id: UUID,
        actor_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_MOVED,
            entity_type="expense",
            entity_id=expense_id,
            actor_id=actor_id,
            description="Expense moved to another category",
            details={
                "from_category_id": str(from_category_id) if from_category_id else None,
                "to_category_id": str(to_category_id),
            },
        )

    @staticmethod
    def guest_token_issued(
        token_id: UUID,
        category_id: UUID,
        permission_level: str,
        expires_at: Optional[datetime],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GUEST_TOKEN_ISSUED,
            entity_type="guest_token",
            entity_id=token_id,
            description=f"Guest token issued ({permission_level})",
            details={
                "category_id": str(category_id),
                "permission_level": permission_level,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )

    @staticmethod
    def guest_token_revoked(token_id: UUID, category_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GUEST_TOKEN_REVOKED,
            entity_type="guest_token",
            entity_id=token_id,
            description="Guest token revoked",
            details={"category_id": str(category_id)},
        )

    @staticmethod
    def guest_token_expired(token_id: UUID, category_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GUEST_TOKEN_EXPIRED,
            severity=AuditSeverity.WARNING,
            entity_type="guest_token",
            entity_id=token_id,
            description="Expired guest token presented",
            details={"category_id": str(category_id)},
        )

    @staticmethod
    def guest_tokens_cleaned(count: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GUEST_TOKENS_CLEANED,
            entity_type="guest_token",
            description=f"Removed {count} stale guest tokens",
            details={"count": count},
        )

    @staticmethod
    def workspace_change(
        event_type: AuditEventType,
        entity_type: str,
        entity_id: UUID,
        actor_id: Optional[UUID],
        description: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            description=description,
            details=details or {},
        )

    @staticmethod
    def authorization_denied(
        operation: str,
        reason: str,
        actor_id: Optional[UUID],
        entity_type: Optional[str] = None,
        entity_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTHORIZATION_DENIED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            description=f"{operation} refused",
            error_message=reason,
            details={"operation": operation},
        )

    @staticmethod
    def invariant_violation(
        category_id: UUID,
        error_message: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVARIANT_VIOLATION,
            severity=AuditSeverity.CRITICAL,
            entity_type="category",
            entity_id=category_id,
            description="Category tree invariant violated",
            error_message=error_message,
            details=details or {},
        )

    @staticmethod
    def notification_failed(
        event_key: str,
        recipient_count: int,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.NOTIFICATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="notification",
            description=f"Notification '{event_key}' could not be delivered",
            error_message=error_message,
            details={
                "event_key": event_key,
                "recipient_count": recipient_count,
            },
        )


class DeletionRecord(BaseModel):
    """
    One entry of the deletion change-feed.

    Clients syncing incrementally ask "what disappeared since T?" and
    drop those ids from their local copy.
    """

    id: UUID = Field(default_factory=uuid4)
    entity_type: str = Field(
        ...,
        pattern="^(expense|report|shared_category)$",
    )
    entity_id: UUID
    user_id: UUID = Field(..., description="User the deletion is visible to")
    deleted_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)
