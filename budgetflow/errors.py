"""
Engine Error Taxonomy

DESIGN DECISION: Every failure the engine reports is a typed exception.
Callers (a thin transport layer) map them to responses using the
`status_code` and `error` attributes; the engine never returns sentinel
error values.

A resolver that "fails open" by swallowing an error and answering
"no permission" hides real faults, so nothing here is caught inside the
resolver or the workflow. The only exceptions that are swallowed are
notification failures, which are logged by the notification service.
"""

from typing import Optional


class BudgetFlowError(Exception):
    """Base exception for all engine errors."""

    status_code: int = 500
    error: str = "Internal Server Error"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to a response-friendly dictionary."""
        return {
            "error": self.error,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(BudgetFlowError):
    """
    Category, expense, report, user or token does not exist.

    `retryable` is set when the entity disappeared while a tree walk was in
    progress (a concurrent move or delete). Retrying the whole operation
    reads a fresh tree.
    """

    status_code = 404
    error = "Not Found"

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        retryable: bool = False,
    ):
        super().__init__(message, details)
        self.retryable = retryable


class UnauthorizedError(BudgetFlowError):
    """Missing, invalid, revoked or expired credential."""

    status_code = 401
    error = "Unauthorized"


class ForbiddenError(BudgetFlowError):
    """Authenticated, but the role or scope is insufficient."""

    status_code = 403
    error = "Forbidden"


class BadRequestError(BudgetFlowError):
    """Invalid input: role name, status target, expiry, missing receipt..."""

    status_code = 400
    error = "Bad Request"


class ConflictError(BudgetFlowError):
    """Write collided with existing state that upsert semantics cannot absorb."""

    status_code = 409
    error = "Conflict"


class InvariantViolationError(BudgetFlowError):
    """
    Persisted data breaks a structural invariant (e.g. a cycle in the
    category tree). Fatal for the request; must never be tolerated silently.
    """

    status_code = 500
    error = "Invariant Violation"
