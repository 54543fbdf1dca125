"""
Workspace Models for BudgetFlow

These models describe the authorization surface of a workspace:
- Reports (workspaces) and the category tree beneath them
- Direct permission grants on categories
- Who is acting (principals) and who acted (actor references)

DESIGN DECISION: The role lattice lives on the Role enum itself.
There is exactly one comparison function in the code base
(`Role.satisfies`), so the ordering ADMIN > REVIEWER > SUBMITTER
cannot drift between call sites.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from budgetflow.errors import BadRequestError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# ROLES
# =============================================================================

class Role(str, Enum):
    """
    Roles a user can hold on a category.

    ADMIN ⊇ REVIEWER ⊇ SUBMITTER: a higher role satisfies any lower
    requirement.
    """
    SUBMITTER = "SUBMITTER"
    REVIEWER = "REVIEWER"
    ADMIN = "ADMIN"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def satisfies(self, required: "Role") -> bool:
        """True if holding this role meets the `required` role."""
        return self.rank >= required.rank

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """Parse a role name strictly. Unknown names are a BadRequestError."""
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise BadRequestError(
                f"Invalid role: {value!r}. Must be one of: "
                f"{', '.join(r.value for r in cls)}"
            )


_ROLE_RANK = {
    Role.SUBMITTER: 1,
    Role.REVIEWER: 2,
    Role.ADMIN: 3,
}

# Pseudo-role shown for the workspace owner in permission listings.
OWNER_ROLE = "OWNER"


# =============================================================================
# WORKSPACE TREE
# =============================================================================

class Report(BaseModel):
    """A workspace: a budget container owned by one user."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    owner_id: UUID = Field(
        ...,
        description="Owner; implicit ADMIN on every category of the workspace"
    )
    name: str = Field(..., min_length=1, max_length=200)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Category(BaseModel):
    """
    A node in a workspace's budget tree.

    The root category has no parent. Every other category has exactly one
    parent in the same workspace.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    report_id: UUID
    parent_id: Optional[UUID] = Field(
        default=None,
        description="Parent category; None for the workspace root"
    )
    name: str = Field(..., min_length=1, max_length=200)
    budget: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)

    # Submission options
    allow_guest_submissions: bool = True
    allow_user_submissions: bool = True
    require_receipt: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class CategoryPermission(BaseModel):
    """
    A direct grant of a role to a user on one category.

    At most one row exists per (category, user). Absence means the
    user inherits whatever the nearest ancestor grants.
    """

    id: UUID = Field(default_factory=uuid4)
    category_id: UUID
    user_id: UUID
    role: Role
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CategoryContext(BaseModel):
    """
    One consistent read of a category together with its workspace owner
    and (optionally) one user's direct grant on it.
    """

    category: Category
    owner_id: UUID
    permission: Optional[CategoryPermission] = None


class CategorySpending(BaseModel):
    """
    What a category subtree has spent against its budget.

    APPROVED and REIMBURSED expenses count as spent. `percentage` is
    rounded to a whole number and is 0 when no budget is set.
    """

    category_id: UUID
    budget: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: int
    expense_count: int = 0


class PermissionView(BaseModel):
    """One row of the merged (direct + inherited) permission listing."""

    user_id: UUID
    role: str = Field(
        ...,
        description="A Role value, or OWNER for the workspace owner"
    )
    permission_id: Optional[UUID] = Field(
        default=None,
        description="The grant row; None for the owner pseudo-grant"
    )
    source_category_id: Optional[UUID] = Field(
        default=None,
        description="Category the grant lives on; None for the owner"
    )
    is_direct: bool
    revocable: bool = True

    @property
    def is_inherited(self) -> bool:
        return not self.is_direct


# =============================================================================
# ACTOR REFERENCES (who acted)
# =============================================================================

class KnownActor(BaseModel):
    """A registered user."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["known"] = "known"
    user_id: UUID


class GuestActor(BaseModel):
    """An anonymous guest acting through a capability token."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["guest"] = "guest"
    display_name: str
    email: Optional[str] = None
    token_id: Optional[UUID] = Field(
        default=None,
        description="Token used; kept for traceability after the token itself is deleted"
    )


class AnonymizedActor(BaseModel):
    """Tombstone for a user who has since deleted their account."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["anonymized"] = "anonymized"


ActorRef = Annotated[
    Union[KnownActor, GuestActor, AnonymizedActor],
    Field(discriminator="kind"),
]


def actor_user_id(actor: ActorRef) -> Optional[UUID]:
    """The user id behind an actor reference, if it is a known user."""
    if isinstance(actor, KnownActor):
        return actor.user_id
    return None


# =============================================================================
# PRINCIPALS (who is acting now)
# =============================================================================

class UserPrincipal(BaseModel):
    """An authenticated user making a request."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["user"] = "user"
    user_id: UUID


class GuestPrincipal(BaseModel):
    """An anonymous caller presenting a guest token."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["guest"] = "guest"
    token: str = Field(..., min_length=1, repr=False)


Principal = Annotated[
    Union[UserPrincipal, GuestPrincipal],
    Field(discriminator="kind"),
]
