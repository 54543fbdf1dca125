"""
Tests for BudgetFlow

Test strategy:
1. Unit tests for individual components (models, validators)
2. Integration tests for flows through the engine facade
3. No real push service in tests (a recording dispatcher stands in)
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from budgetflow.errors import BadRequestError, ForbiddenError, NotFoundError
from budgetflow.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
    DeletionRecord,
)
from budgetflow.models.expense import (
    Approval,
    Expense,
    ExpenseDraft,
    ExpenseLineItem,
    ExpenseStatus,
)
from budgetflow.models.guest import GuestToken, GuestTokenStatus, PermissionLevel
from budgetflow.models.workspace import (
    ActorRef,
    AnonymizedActor,
    Category,
    GuestActor,
    GuestPrincipal,
    KnownActor,
    Principal,
    Role,
    UserPrincipal,
    actor_user_id,
)


class TestRoles:
    """Tests for the role lattice."""

    def test_admin_satisfies_everything(self):
        """ADMIN meets every requirement."""
        for required in Role:
            assert Role.ADMIN.satisfies(required)

    def test_reviewer_does_not_satisfy_admin(self):
        """REVIEWER sits between SUBMITTER and ADMIN."""
        assert Role.REVIEWER.satisfies(Role.SUBMITTER)
        assert Role.REVIEWER.satisfies(Role.REVIEWER)
        assert not Role.REVIEWER.satisfies(Role.ADMIN)

    def test_submitter_only_satisfies_itself(self):
        """SUBMITTER is the bottom of the lattice."""
        assert Role.SUBMITTER.satisfies(Role.SUBMITTER)
        assert not Role.SUBMITTER.satisfies(Role.REVIEWER)

    def test_parse_is_case_insensitive(self):
        """Role names are normalized before parsing."""
        assert Role.parse(" reviewer ") == Role.REVIEWER
        assert Role.parse(Role.ADMIN) == Role.ADMIN

    def test_parse_rejects_unknown_role(self):
        """Unknown role names are a BadRequestError, never a silent default."""
        with pytest.raises(BadRequestError):
            Role.parse("OWNER")


class TestPermissionLevels:
    """Tests for guest permission levels."""

    def test_review_only_satisfies_submit_only(self):
        """REVIEW_ONLY is the higher guest level."""
        assert PermissionLevel.REVIEW_ONLY.satisfies(PermissionLevel.SUBMIT_ONLY)
        assert not PermissionLevel.SUBMIT_ONLY.satisfies(PermissionLevel.REVIEW_ONLY)

    def test_role_ceiling(self):
        """Guests can never reach ADMIN."""
        assert PermissionLevel.REVIEW_ONLY.role_ceiling == Role.REVIEWER
        assert PermissionLevel.SUBMIT_ONLY.role_ceiling == Role.SUBMITTER

    def test_parse_rejects_unknown_level(self):
        """Anything other than the two levels is rejected."""
        with pytest.raises(BadRequestError):
            PermissionLevel.parse("ADMIN")


class TestGuestTokenModel:
    """Tests for the GuestToken model."""

    def _token(self, **overrides) -> GuestToken:
        values = {
            "token": "x" * 43,
            "category_id": uuid4(),
            "permission_level": PermissionLevel.SUBMIT_ONLY,
        }
        values.update(overrides)
        return GuestToken(**values)

    def test_short_token_rejected(self):
        """Tokens must carry at least 256 bits of entropy."""
        with pytest.raises(ValidationError):
            self._token(token="short")

    def test_naive_expiry_is_utc(self):
        """Naive expiry timestamps are taken as UTC."""
        token = self._token(expires_at=datetime(2026, 1, 1, 12, 0))
        assert token.expires_at.tzinfo == timezone.utc

    def test_expiry_boundary(self):
        """A token is expired at its deadline, not one tick after."""
        deadline = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        token = self._token(expires_at=deadline)
        assert not token.is_expired(deadline - timedelta(seconds=1))
        assert token.is_expired(deadline)

    def test_no_expiry_never_expires(self):
        """A token without expires_at lives until revoked."""
        token = self._token()
        assert not token.is_expired(datetime(2999, 1, 1, tzinfo=timezone.utc))

    def test_revoked_token_not_usable(self):
        """Only active tokens are usable."""
        token = self._token(status=GuestTokenStatus.REVOKED)
        assert not token.is_usable(datetime.now(timezone.utc))

    def test_token_hint_hides_secret(self):
        """The hint is a short prefix only."""
        token = self._token(token="abcdefgh" + "y" * 40)
        assert token.token_hint.startswith("abcdef")
        assert "y" * 10 not in token.token_hint


class TestExpenseModels:
    """Tests for expense-related Pydantic models."""

    def test_draft_strips_whitespace(self):
        """Whitespace is stripped from descriptions."""
        draft = ExpenseDraft(description="  Taxi  ", amount=Decimal("12.50"))
        assert draft.description == "Taxi"

    def test_draft_rejects_zero_amount(self):
        """Amounts must be positive."""
        with pytest.raises(ValidationError):
            ExpenseDraft(description="Taxi", amount=Decimal("0"))

    def test_line_item_rejects_negative_amount(self):
        """Negative line item amounts are rejected."""
        with pytest.raises(ValueError):
            ExpenseLineItem(description="Tip", amount=Decimal("-1"))

    def test_guest_email_normalized(self):
        """Guest emails are lower-cased; empty means absent."""
        draft = ExpenseDraft(description="Taxi", amount=1, guest_email="Sam@Example.COM")
        assert draft.guest_email == "sam@example.com"
        assert ExpenseDraft(description="Taxi", amount=1, guest_email="").guest_email is None

    def test_guest_email_must_look_like_email(self):
        """Obviously malformed emails are rejected."""
        with pytest.raises(ValidationError):
            ExpenseDraft(description="Taxi", amount=1, guest_email="not-an-email")

    def test_has_receipt_ignores_blank(self):
        """A blank receipt reference counts as no receipt."""
        assert not ExpenseDraft(description="Taxi", amount=1, receipt_url="   ").has_receipt
        assert ExpenseDraft(description="Taxi", amount=1, receipt_url="s3://r/1.jpg").has_receipt

    def test_from_payload_maps_to_bad_request(self):
        """Raw payload failures surface as BadRequestError with field issues."""
        with pytest.raises(BadRequestError) as exc_info:
            ExpenseDraft.from_payload({"description": "", "amount": "-3"})
        fields = {issue["field"] for issue in exc_info.value.details["issues"]}
        assert {"description", "amount"} <= fields

    def test_status_classification(self):
        """Open and terminal statuses partition the automated states."""
        assert ExpenseStatus.PENDING_REVIEW.is_open
        assert ExpenseStatus.PENDING_ADMIN.is_open
        assert ExpenseStatus.APPROVED.is_terminal
        assert ExpenseStatus.DENIED.is_terminal
        assert ExpenseStatus.REIMBURSED.is_terminal

    def test_approval_is_immutable(self):
        """Approval rows cannot be edited after creation."""
        approval = Approval(
            expense_id=uuid4(),
            actor=KnownActor(user_id=uuid4()),
            status_change=ExpenseStatus.DENIED,
        )
        with pytest.raises(ValidationError):
            approval.notes = "changed"


class TestActorReferences:
    """Tests for the ActorRef and Principal tagged unions."""

    def test_actor_discriminator(self):
        """The `kind` tag selects the actor variant."""
        adapter = TypeAdapter(ActorRef)
        user_id = uuid4()
        assert adapter.validate_python({"kind": "known", "user_id": str(user_id)}) == KnownActor(user_id=user_id)
        assert isinstance(adapter.validate_python({"kind": "guest", "display_name": "Sam"}), GuestActor)
        assert isinstance(adapter.validate_python({"kind": "anonymized"}), AnonymizedActor)

    def test_unknown_actor_kind_rejected(self):
        """An untagged or mistagged actor is invalid."""
        with pytest.raises(ValidationError):
            TypeAdapter(ActorRef).validate_python({"kind": "robot"})

    def test_expense_round_trips_submitter(self):
        """An expense stores its submitter as the tagged variant."""
        expense = Expense(
            report_id=uuid4(),
            category_id=uuid4(),
            submitter={"kind": "anonymized"},
            description="Lunch",
            amount=Decimal("9.99"),
        )
        assert isinstance(expense.submitter, AnonymizedActor)
        assert actor_user_id(expense.submitter) is None

    def test_principal_discriminator(self):
        """Principals are either a user or a guest token bearer."""
        adapter = TypeAdapter(Principal)
        assert isinstance(adapter.validate_python({"kind": "user", "user_id": str(uuid4())}), UserPrincipal)
        assert isinstance(adapter.validate_python({"kind": "guest", "token": "t" * 43}), GuestPrincipal)

    def test_root_category(self):
        """A category without a parent is the workspace root."""
        assert Category(report_id=uuid4(), name="Root").is_root
        assert not Category(report_id=uuid4(), parent_id=uuid4(), name="Child").is_root


class TestErrors:
    """Tests for the error taxonomy."""

    def test_status_codes(self):
        """Each error carries its transport status."""
        assert BadRequestError("x").status_code == 400
        assert ForbiddenError("x").status_code == 403
        assert NotFoundError("x").status_code == 404

    def test_to_dict(self):
        """Errors serialize to a response-friendly dict."""
        error = NotFoundError("Expense not found", {"expense_id": "1"})
        assert error.to_dict() == {
            "error": "Not Found",
            "message": "Expense not found",
            "details": {"expense_id": "1"},
        }
        assert error.retryable is False


class TestAuditModels:
    """Tests for audit event models."""

    def test_audit_event_builder_expense_decided(self):
        """The builder records both the requested and the effective status."""
        expense_id = uuid4()
        event = AuditEventBuilder.expense_decided(
            expense_id=expense_id,
            previous_status="PENDING_REVIEW",
            requested_status="APPROVED",
            new_status="PENDING_ADMIN",
            actor_id=uuid4(),
            via_guest=False,
        )
        assert isinstance(event, AuditEvent)
        assert event.event_type == AuditEventType.EXPENSE_DECIDED
        assert event.entity_id == expense_id

    def test_invariant_violation_is_critical(self):
        """Broken trees are always CRITICAL."""
        event = AuditEventBuilder.invariant_violation(uuid4(), "Cycle detected")
        assert event.severity == AuditSeverity.CRITICAL

    def test_deletion_record_entity_type(self):
        """Only feed entity types are accepted."""
        with pytest.raises(ValidationError):
            DeletionRecord(
                entity_type="invoice",
                entity_id=uuid4(),
                user_id=uuid4(),
            )


# Run tests with: pytest tests/ -v
if __name__ == "__main__":
    pytest.main([__file__, "-v"])
