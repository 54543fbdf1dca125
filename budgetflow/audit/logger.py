"""
Audit Logger

DESIGN DECISION: Every significant action in the engine is logged.
This provides:
1. Complete traceability of who could do what, and who did
2. Debugging capability when a transition is refused
3. Evidence when a structural invariant is found broken

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash a request if logging fails)
- Never sees token secrets, only token ids and hints
"""

from typing import Optional
from uuid import UUID

import structlog

from budgetflow.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from budgetflow.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit store (for persistence), when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("budgetflow.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_authorization_denied(
        self,
        operation: str,
        reason: str,
        actor_id: Optional[UUID],
        entity_type: Optional[str] = None,
        entity_id: Optional[UUID] = None,
    ) -> None:
        """Log a refused operation (Unauthorized or Forbidden)."""
        event = AuditEventBuilder.authorization_denied(
            operation=operation,
            reason=reason,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        await self.log(event)

    async def log_invariant_violation(
        self,
        category_id: UUID,
        error_message: str,
        details: Optional[dict] = None,
    ) -> None:
        """Log a broken category tree. Always CRITICAL."""
        event = AuditEventBuilder.invariant_violation(
            category_id=category_id,
            error_message=error_message,
            details=details,
        )
        await self.log(event)

    async def log_notification_failed(
        self,
        event_key: str,
        recipient_count: int,
        error_message: str,
    ) -> None:
        """Log a notification that could not be delivered."""
        event = AuditEventBuilder.notification_failed(
            event_key=event_key,
            recipient_count=recipient_count,
            error_message=error_message,
        )
        await self.log(event)
