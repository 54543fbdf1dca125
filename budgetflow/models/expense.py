"""
Expense Models for BudgetFlow

An expense moves through a small state machine:

    PENDING_REVIEW -> PENDING_ADMIN -> APPROVED -> (external) REIMBURSED
           \\               \\
            +---------------+--> DENIED

Every decision appends one immutable Approval row. Approvals are never
updated or deleted by the engine.

DESIGN DECISION: Drafts are validated by pydantic at the boundary.
`ExpenseDraft.from_payload` converts validation failures into the engine's
BadRequestError so callers only ever see the engine taxonomy.
"""

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from budgetflow.errors import BadRequestError
from budgetflow.models.workspace import ActorRef, utcnow


_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ExpenseStatus(str, Enum):
    """
    Expense workflow state.

    CRITICAL: Only ADMIN-level actors (or the workspace owner) can produce
    APPROVED. Reviewers and guest reviewers forward to PENDING_ADMIN.
    """
    PENDING_REVIEW = "PENDING_REVIEW"  # Submitted, nobody has looked yet
    PENDING_ADMIN = "PENDING_ADMIN"    # Forwarded by a reviewer
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    REIMBURSED = "REIMBURSED"          # Set outside the engine

    @property
    def is_terminal(self) -> bool:
        """No automated transition leaves a terminal state."""
        return self in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES


TERMINAL_STATUSES = frozenset({
    ExpenseStatus.APPROVED,
    ExpenseStatus.DENIED,
    ExpenseStatus.REIMBURSED,
})

OPEN_STATUSES = frozenset({
    ExpenseStatus.PENDING_REVIEW,
    ExpenseStatus.PENDING_ADMIN,
})

# Counted against a category's budget.
SPENT_STATUSES = frozenset({
    ExpenseStatus.APPROVED,
    ExpenseStatus.REIMBURSED,
})

# Targets a caller may ask `decide` for.
DECISION_STATUSES = frozenset({
    ExpenseStatus.APPROVED,
    ExpenseStatus.DENIED,
})


class ExpenseLineItem(BaseModel):
    """Individual line item on an expense (e.g. one row of a receipt)."""
    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    quantity: Optional[Decimal] = Field(default=None, ge=0)


class ExpenseDraft(BaseModel):
    """
    What a submitter provides.

    The receipt reference is an opaque string (a storage key or URL);
    the engine never interprets it.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(
        ...,
        min_length=1,
        max_length=500,
        description="What the money was spent on"
    )
    amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=2,
        description="Amount spent (must be positive)"
    )
    items: list[ExpenseLineItem] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=1000)
    receipt_url: Optional[str] = Field(
        default=None,
        max_length=2048,
        description="Opaque receipt reference"
    )
    transaction_date: Optional[datetime] = Field(
        default=None,
        description="When the spend happened; defaults to submission time"
    )

    # Only meaningful for guest submissions
    guest_name: Optional[str] = Field(default=None, max_length=200)
    guest_email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("guest_name")
    @classmethod
    def validate_guest_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v:
            raise ValueError("Guest name cannot be empty")
        return v

    @field_validator("guest_email")
    @classmethod
    def validate_guest_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not _EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email format")
        return v.lower()

    @property
    def has_receipt(self) -> bool:
        return bool(self.receipt_url and self.receipt_url.strip())

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ExpenseDraft":
        """Build a draft from raw input, mapping failures to BadRequestError."""
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            issues = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise BadRequestError("Invalid expense data", details={"issues": issues})


class ExpenseUpdate(BaseModel):
    """
    Edits to an existing expense. Only the fields a caller sends are
    applied; status, category and submitter are never editable here.

    An empty `notes` or `receipt_url` clears it. A `transaction_date` of
    None resets it to the time of the edit.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    notes: Optional[str] = Field(default=None, max_length=1000)
    receipt_url: Optional[str] = Field(default=None, max_length=2048)
    transaction_date: Optional[datetime] = None

    @field_validator("description", "amount")
    @classmethod
    def validate_not_cleared(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("Field cannot be cleared")
        return v

    @field_validator("notes", "receipt_url")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    def changes(self) -> dict[str, Any]:
        """The fields the caller actually sent."""
        return {name: getattr(self, name) for name in self.model_fields_set}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ExpenseUpdate":
        try:
            update = cls.model_validate(payload)
        except ValidationError as e:
            issues = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise BadRequestError("Invalid expense data", details={"issues": issues})
        if not update.model_fields_set:
            raise BadRequestError("At least one field must be provided for update")
        return update


class Expense(BaseModel):
    """A spend record under review."""

    id: UUID = Field(default_factory=uuid4)
    report_id: UUID
    category_id: Optional[UUID] = Field(
        default=None,
        description="None once the category has been deleted"
    )
    submitter: ActorRef

    description: str
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    items: list[ExpenseLineItem] = Field(default_factory=list)
    notes: Optional[str] = None
    receipt_url: Optional[str] = None
    transaction_date: datetime = Field(default_factory=utcnow)

    status: ExpenseStatus = ExpenseStatus.PENDING_REVIEW

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Approval(BaseModel):
    """
    An immutable audit entry for one workflow decision.

    `status_change` is the status the expense actually moved to, which may
    differ from what the actor asked for (reviewer escalation).
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    expense_id: UUID
    actor: ActorRef
    status_change: ExpenseStatus
    requested_status: Optional[ExpenseStatus] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow)
