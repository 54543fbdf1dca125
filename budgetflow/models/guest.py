"""
Guest Capability Models

A guest token is an opaque bearer capability bound to one category and its
whole subtree. It is never tied to a user identity and never appears in the
CategoryPermission table.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from budgetflow.errors import BadRequestError
from budgetflow.models.workspace import Role, utcnow


class PermissionLevel(str, Enum):
    """
    What a guest token lets its holder do.

    SUBMIT_ONLY(1) < REVIEW_ONLY(2): a higher level satisfies a lower
    requirement.
    """
    SUBMIT_ONLY = "SUBMIT_ONLY"
    REVIEW_ONLY = "REVIEW_ONLY"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    @property
    def role_ceiling(self) -> Role:
        """
        Role-equivalent ceiling. A REVIEW_ONLY guest behaves like a
        REVIEWER and can never reach ADMIN finality.
        """
        if self is PermissionLevel.REVIEW_ONLY:
            return Role.REVIEWER
        return Role.SUBMITTER

    def satisfies(self, required: "PermissionLevel") -> bool:
        return self.rank >= required.rank

    @classmethod
    def parse(cls, value: Any) -> "PermissionLevel":
        if isinstance(value, PermissionLevel):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise BadRequestError(
                "Invalid permission level. Must be SUBMIT_ONLY or REVIEW_ONLY"
            )


_LEVEL_RANK = {
    PermissionLevel.SUBMIT_ONLY: 1,
    PermissionLevel.REVIEW_ONLY: 2,
}


class GuestTokenStatus(str, Enum):
    """Lifecycle of a guest token: active -> expired | revoked."""
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class GuestToken(BaseModel):
    """An issued guest capability."""

    id: UUID = Field(default_factory=uuid4)
    token: str = Field(
        ...,
        min_length=43,
        repr=False,
        description="Opaque bearer string; treat as a secret"
    )
    category_id: UUID = Field(
        ...,
        description="Binding point; scope is this category plus its subtree"
    )
    permission_level: PermissionLevel
    expires_at: Optional[datetime] = None
    status: GuestTokenStatus = GuestTokenStatus.ACTIVE
    description: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("expires_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive expiry timestamps are taken to be UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def token_hint(self) -> str:
        """Short non-secret prefix, safe for logs."""
        return f"{self.token[:6]}…"

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return self.status == GuestTokenStatus.ACTIVE and not self.is_expired(now)
