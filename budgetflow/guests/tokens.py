"""
Guest Capability Tokens

A guest token lets someone without an account act on one category and
everything beneath it. It is a parallel authorization path: tokens are
never CategoryPermission rows and never resolve to a user.

Token lifecycle:
    active -> expired   (lazily, the first time an expired token is presented)
    active -> revoked   (explicitly)

DESIGN DECISION: Expiry is recomputed against the clock on every
validation. A cached "active" status is never trusted on its own, so a
token cannot linger valid past its deadline.

Tokens are secrets. Only `GuestToken.token_hint` is ever logged.
"""

import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from budgetflow.audit import AuditLogger
from budgetflow.config import get_settings
from budgetflow.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from budgetflow.models.audit import AuditEventBuilder
from budgetflow.models.guest import GuestToken, GuestTokenStatus, PermissionLevel
from budgetflow.models.workspace import utcnow
from budgetflow.permissions import PermissionResolver
from budgetflow.services.storage import (
    DuplicateError,
    GuestTokenStorageInterface,
    WorkspaceStorageInterface,
)


logger = structlog.get_logger(__name__)

# Fresh tokens to try if the random source ever collides with a stored one.
_ISSUE_ATTEMPTS = 3


class GuestTokenService:
    """
    Issues and validates guest capability tokens.

    Usage:
        service = GuestTokenService(storage, resolver)
        token = await service.issue(category_id, "REVIEW_ONLY", expires_at)
        guest = await service.validate(token.token, PermissionLevel.REVIEW_ONLY)
    """

    def __init__(
        self,
        storage: GuestTokenStorageInterface,
        resolver: PermissionResolver,
        workspace_storage: Optional[WorkspaceStorageInterface] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        token_bytes: Optional[int] = None,
    ):
        self._storage = storage
        self._resolver = resolver
        self._workspace_storage = workspace_storage or storage
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock or utcnow
        self._token_bytes = token_bytes or get_settings().engine.guest_token_bytes

    def now(self) -> datetime:
        return self._clock()

    async def issue(
        self,
        category_id: UUID,
        permission_level: Any,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> GuestToken:
        """
        Mint a new token bound to `category_id` (and its subtree).

        Raises:
            BadRequestError: Unknown permission level or expiry not in the future
            NotFoundError: The category does not exist
        """
        level = PermissionLevel.parse(permission_level)

        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= self.now():
                raise BadRequestError(
                    "Expiration date must be in the future",
                    {"expires_at": expires_at.isoformat()},
                )

        if await self._workspace_storage.get_category(category_id) is None:
            raise NotFoundError("Category not found", {"category_id": str(category_id)})

        for attempt in range(_ISSUE_ATTEMPTS):
            token = GuestToken(
                token=secrets.token_urlsafe(self._token_bytes),
                category_id=category_id,
                permission_level=level,
                expires_at=expires_at,
                description=description,
                created_at=self.now(),
            )
            try:
                token = await self._storage.add_token(token)
                break
            except DuplicateError:
                logger.warning("guest_token_collision", attempt=attempt + 1)
        else:
            raise DuplicateError("Could not mint a unique guest token")

        await self._audit_logger.log(
            AuditEventBuilder.guest_token_issued(
                token_id=token.id,
                category_id=category_id,
                permission_level=level.value,
                expires_at=expires_at,
            )
        )
        return token

    async def validate(
        self,
        token: str,
        required_level: Any = PermissionLevel.SUBMIT_ONLY,
    ) -> GuestToken:
        """
        Check a presented token.

        Raises:
            UnauthorizedError: Unknown, revoked or expired token. An active
                token found past its deadline is marked expired first.
            ForbiddenError: The token's level is below `required_level`
        """
        required = PermissionLevel.parse(required_level)

        if not token:
            raise UnauthorizedError("Missing guest token")

        record = await self._storage.get_token(token)
        if record is None or record.status != GuestTokenStatus.ACTIVE:
            logger.info(
                "guest_token_rejected",
                reason="unknown" if record is None else record.status.value,
                token_hint=f"{token[:6]}…",
            )
            raise UnauthorizedError("Invalid or expired guest token")

        if record.is_expired(self.now()):
            await self._storage.update_token_status(record.id, GuestTokenStatus.EXPIRED)
            await self._audit_logger.log(
                AuditEventBuilder.guest_token_expired(record.id, record.category_id)
            )
            raise UnauthorizedError("Invalid or expired guest token")

        if not record.permission_level.satisfies(required):
            await self._audit_logger.log_authorization_denied(
                operation=f"guest_{required.value.lower()}",
                reason="Insufficient permissions for this action",
                actor_id=None,
                entity_type="guest_token",
                entity_id=record.id,
            )
            raise ForbiddenError(
                "Insufficient permissions for this action",
                {
                    "permission_level": record.permission_level.value,
                    "required_level": required.value,
                },
            )

        return record

    async def revoke(self, token: str) -> bool:
        """
        Revoke a token. Returns False if it never existed.

        Revoking a revoked token is a no-op that still returns True.
        """
        record = await self._storage.get_token(token)
        if record is None:
            return False
        if record.status == GuestTokenStatus.REVOKED:
            return True

        await self._storage.update_token_status(record.id, GuestTokenStatus.REVOKED)
        await self._audit_logger.log(
            AuditEventBuilder.guest_token_revoked(record.id, record.category_id)
        )
        return True

    async def list_active(self, category_id: UUID) -> list[GuestToken]:
        """Tokens bound to the category that are active and not past expiry."""
        now = self.now()
        return [t for t in await self._storage.list_tokens(category_id) if t.is_usable(now)]

    async def is_within_scope(
        self,
        target_category_id: UUID,
        bound_category_id: UUID,
    ) -> bool:
        """True iff target is the bound category or lies in its subtree."""
        return await self._resolver.is_within(target_category_id, bound_category_id)

    async def resolve_target_category(
        self,
        token: GuestToken,
        requested_category_id: Optional[UUID] = None,
    ) -> UUID:
        """
        The category a guest action applies to: the requested one if it is
        in scope, the bound category if nothing was requested.

        Raises:
            NotFoundError: The requested category does not exist
            ForbiddenError: The requested category is outside the token scope
        """
        if requested_category_id is None or requested_category_id == token.category_id:
            return token.category_id

        if not await self.is_within_scope(requested_category_id, token.category_id):
            await self._audit_logger.log_authorization_denied(
                operation="guest_scope",
                reason="Category is outside the guest token scope",
                actor_id=None,
                entity_type="category",
                entity_id=requested_category_id,
            )
            raise ForbiddenError(
                "Guest token does not grant access to this category",
                {"category_id": str(requested_category_id)},
            )
        return requested_category_id

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """
        Batch job: delete revoked tokens, tokens marked expired, and tokens
        whose deadline has passed. Returns the number removed.
        """
        count = await self._storage.delete_stale_tokens(now or self.now())
        if count:
            await self._audit_logger.log(AuditEventBuilder.guest_tokens_cleaned(count))
        return count
