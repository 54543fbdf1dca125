"""
Tests for guest capability tokens: issuance, validation, expiry,
revocation and scope.
"""

import pytest
from datetime import timedelta
from uuid import uuid4

from budgetflow.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from budgetflow.models.audit import AuditEventType
from budgetflow.models.guest import GuestTokenStatus, PermissionLevel
from budgetflow.models.workspace import GuestPrincipal


class TestIssue:
    """Tests for minting tokens."""

    async def test_issue_returns_active_token(self, engine, workspace):
        """A new token is active, bound to the category, and long enough."""
        token = await engine.issue_guest_token(
            workspace.alice, workspace.travel.id, "submit_only", description="Conference"
        )
        assert token.status == GuestTokenStatus.ACTIVE
        assert token.category_id == workspace.travel.id
        assert token.permission_level == PermissionLevel.SUBMIT_ONLY
        assert len(token.token) >= 43

    async def test_tokens_are_unique(self, engine, workspace):
        """Two issuances never share a secret."""
        first = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        second = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        assert first.token != second.token

    async def test_expiry_must_be_in_future(self, engine, workspace, clock):
        """An expiry at or before now is rejected."""
        with pytest.raises(BadRequestError):
            await engine.issue_guest_token(
                workspace.alice, workspace.travel.id, "SUBMIT_ONLY", expires_at=clock()
            )

    async def test_unknown_level(self, engine, workspace):
        """Only SUBMIT_ONLY and REVIEW_ONLY can be issued."""
        with pytest.raises(BadRequestError):
            await engine.issue_guest_token(workspace.alice, workspace.travel.id, "ADMIN")

    async def test_requires_admin(self, engine, workspace):
        """Reviewers cannot mint share links."""
        with pytest.raises(ForbiddenError):
            await engine.issue_guest_token(workspace.bob, workspace.travel.id, "SUBMIT_ONLY")

    async def test_unknown_category(self, engine, workspace):
        """Binding to a missing category is NotFound."""
        with pytest.raises(NotFoundError):
            await engine.guest_tokens.issue(uuid4(), "SUBMIT_ONLY")

    async def test_issue_is_audited(self, engine, workspace, audit_storage):
        """Issuance leaves an audit event with the token id, never the secret."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        events = await audit_storage.get_events_by_entity("guest_token", token.id)
        assert [e.event_type for e in events] == [AuditEventType.GUEST_TOKEN_ISSUED]
        assert token.token not in str(events[0].to_log_dict())


class TestValidate:
    """Tests for presenting a token."""

    async def test_valid_token(self, engine, workspace):
        """A fresh token validates at its own level."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "REVIEW_ONLY")
        record = await engine.validate_guest_token(token.token, "REVIEW_ONLY")
        assert record.id == token.id

    async def test_higher_level_satisfies_lower(self, engine, workspace):
        """REVIEW_ONLY tokens may also submit."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "REVIEW_ONLY")
        assert await engine.validate_guest_token(token.token, PermissionLevel.SUBMIT_ONLY)

    async def test_insufficient_level_is_forbidden(self, engine, workspace):
        """A SUBMIT_ONLY token cannot review."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        with pytest.raises(ForbiddenError):
            await engine.validate_guest_token(token.token, "REVIEW_ONLY")

    async def test_unknown_token_is_unauthorized(self, engine, workspace):
        """Unknown secrets are Unauthorized."""
        with pytest.raises(UnauthorizedError):
            await engine.validate_guest_token("z" * 43)

    async def test_empty_token_is_unauthorized(self, engine, workspace):
        """A missing token is Unauthorized."""
        with pytest.raises(UnauthorizedError):
            await engine.validate_guest_token("")

    async def test_expired_token_is_marked_expired(self, engine, workspace, storage, clock):
        """A token presented after its deadline fails and is stored as expired."""
        token = await engine.issue_guest_token(
            workspace.alice,
            workspace.travel.id,
            "SUBMIT_ONLY",
            expires_at=clock() + timedelta(minutes=60),
        )
        clock.advance(minutes=61)

        with pytest.raises(UnauthorizedError):
            await engine.validate_guest_token(token.token)

        stored = await storage.get_token(token.token)
        assert stored.status == GuestTokenStatus.EXPIRED

    async def test_valid_until_deadline(self, engine, workspace, clock):
        """One second before the deadline the token still works."""
        token = await engine.issue_guest_token(
            workspace.alice,
            workspace.travel.id,
            "SUBMIT_ONLY",
            expires_at=clock() + timedelta(minutes=60),
        )
        clock.advance(minutes=59, seconds=59)
        assert await engine.validate_guest_token(token.token)


class TestRevoke:
    """Tests for revocation."""

    async def test_revoked_token_no_longer_validates(self, engine, workspace):
        """Revocation takes effect immediately."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        assert await engine.revoke_guest_token(workspace.alice, token.token) is True

        with pytest.raises(UnauthorizedError):
            await engine.validate_guest_token(token.token)

    async def test_revoke_is_idempotent(self, engine, workspace):
        """Revoking twice succeeds both times."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        assert await engine.revoke_guest_token(workspace.alice, token.token)
        assert await engine.revoke_guest_token(workspace.alice, token.token)

    async def test_revoke_unknown_token(self, engine, workspace):
        """Unknown tokens report False instead of raising."""
        assert await engine.revoke_guest_token(workspace.alice, "q" * 43) is False

    async def test_revoke_requires_admin(self, engine, workspace):
        """Only admins of the bound category may revoke."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        with pytest.raises(ForbiddenError):
            await engine.revoke_guest_token(workspace.carol, token.token)


class TestListingAndCleanup:
    """Tests for listing active tokens and the cleanup job."""

    async def test_list_active_excludes_revoked_and_expired(self, engine, workspace, clock):
        """Only usable tokens are listed."""
        keep = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        revoked = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        await engine.issue_guest_token(
            workspace.alice,
            workspace.travel.id,
            "SUBMIT_ONLY",
            expires_at=clock() + timedelta(minutes=5),
        )
        await engine.revoke_guest_token(workspace.alice, revoked.token)
        clock.advance(minutes=10)

        active = await engine.list_active_guest_tokens(workspace.alice, workspace.travel.id)
        assert [t.id for t in active] == [keep.id]

    async def test_cleanup_removes_stale_tokens(self, engine, workspace, storage, clock):
        """Cleanup deletes revoked and past-deadline tokens only."""
        keep = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        revoked = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        expiring = await engine.issue_guest_token(
            workspace.alice,
            workspace.travel.id,
            "SUBMIT_ONLY",
            expires_at=clock() + timedelta(hours=1),
        )
        await engine.revoke_guest_token(workspace.alice, revoked.token)
        clock.advance(hours=2)

        assert await engine.cleanup_guest_tokens() == 2
        assert await storage.get_token(keep.token) is not None
        assert await storage.get_token(revoked.token) is None
        assert await storage.get_token(expiring.token) is None

    async def test_cleanup_keeps_token_reference_on_expenses(self, engine, workspace, storage):
        """Guest submissions still name the token after it is gone."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        expense = await engine.submit_expense(
            GuestPrincipal(token=token.token), None, {"description": "Parking", "amount": "12.00"}
        )
        await engine.revoke_guest_token(workspace.alice, token.token)

        assert await engine.cleanup_guest_tokens() == 1
        stored = await storage.get_expense(expense.id)
        assert stored.submitter.token_id == token.id


class TestScope:
    """Tests for the token's subtree scope."""

    async def test_subtree_is_in_scope(self, engine, workspace):
        """A token bound to a category covers its children."""
        flights = await engine.create_category(workspace.alice, workspace.travel.id, "Flights")
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")

        target = await engine.guest_tokens.resolve_target_category(token, flights.id)
        assert target == flights.id

    async def test_default_target_is_bound_category(self, engine, workspace):
        """With no category requested, the bound category is used."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        assert await engine.guest_tokens.resolve_target_category(token) == workspace.travel.id

    async def test_parent_is_out_of_scope(self, engine, workspace):
        """A token never reaches above its binding point."""
        token = await engine.issue_guest_token(workspace.alice, workspace.travel.id, "SUBMIT_ONLY")
        with pytest.raises(ForbiddenError):
            await engine.guest_tokens.resolve_target_category(token, workspace.root.id)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
