"""
Expense Approval Workflow

The state machine every expense moves through:

    (none)          --submit-->                     PENDING_REVIEW
    PENDING_REVIEW  --decide(APPROVED) reviewer-->  PENDING_ADMIN
    PENDING_*       --decide(APPROVED) admin/owner--> APPROVED
    PENDING_*       --decide(DENIED) reviewer+-->   DENIED
    APPROVED        --(outside the engine)-->       REIMBURSED

DESIGN DECISION: Reviewers forward, admins finalize.
A REVIEWER (or a REVIEW_ONLY guest) asking for APPROVED gets
PENDING_ADMIN instead. DENIED is final whoever says it.

Guards run in this order for registered users:
1. Self-approval: nobody decides their own expense unless they are ADMIN
   (the workspace owner resolves to ADMIN)
2. Minimum role: REVIEWER on the expense's category
3. State: terminal expenses cannot be decided again

The status update and its Approval row are written in one transaction.
Notifications are scheduled only after that transaction commits.
"""

from datetime import datetime
from typing import Any, Callable, Optional, Union
from uuid import UUID

import structlog

from budgetflow.audit import AuditLogger, ChangeFeed
from budgetflow.config import get_settings
from budgetflow.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from budgetflow.guests import GuestTokenService
from budgetflow.models.audit import AuditEventBuilder
from budgetflow.models.expense import (
    DECISION_STATUSES,
    Approval,
    Expense,
    ExpenseDraft,
    ExpenseStatus,
    ExpenseUpdate,
)
from budgetflow.models.guest import GuestToken, PermissionLevel
from budgetflow.models.workspace import (
    ActorRef,
    GuestActor,
    GuestPrincipal,
    KnownActor,
    Role,
    UserPrincipal,
    utcnow,
)
from budgetflow.permissions import PermissionResolver
from budgetflow.services.notifications import NotificationService
from budgetflow.services.storage import EngineStorageInterface


logger = structlog.get_logger(__name__)

AnyPrincipal = Union[UserPrincipal, GuestPrincipal]

_NOTES_MAX_LENGTH = 1000


class ExpenseWorkflow:
    """
    Submit, decide, edit, delete and move expenses.

    Usage:
        workflow = ExpenseWorkflow(storage, resolver, guest_tokens, notifications)
        expense = await workflow.submit(UserPrincipal(user_id=carol), category_id, draft)
        expense = await workflow.decide(UserPrincipal(user_id=bob), expense.id, "APPROVED")
    """

    def __init__(
        self,
        storage: EngineStorageInterface,
        resolver: PermissionResolver,
        guest_tokens: GuestTokenService,
        notifications: Optional[NotificationService] = None,
        change_feed: Optional[ChangeFeed] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        self._resolver = resolver
        self._guest_tokens = guest_tokens
        self._notifications = notifications
        self._change_feed = change_feed or ChangeFeed(storage)
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock or utcnow
        self._settings = get_settings().engine

    # =========================================================================
    # SUBMIT
    # =========================================================================

    async def submit(
        self,
        principal: AnyPrincipal,
        category_id: Optional[UUID],
        draft: Union[ExpenseDraft, dict[str, Any]],
    ) -> Expense:
        """
        Create an expense in PENDING_REVIEW.

        Registered users need SUBMITTER on the category. Guests need a
        valid token whose scope contains the category; with no category
        given, a guest submits to the token's bound category.

        Raises:
            BadRequestError: Invalid draft or missing required receipt
            UnauthorizedError: Bad guest token
            ForbiddenError: No access, or submissions disabled for this kind of actor
            NotFoundError: Unknown category
        """
        if not isinstance(draft, ExpenseDraft):
            draft = ExpenseDraft.from_payload(draft)

        if isinstance(principal, GuestPrincipal):
            token = await self._guest_tokens.validate(
                principal.token, PermissionLevel.SUBMIT_ONLY
            )
            target_id = await self._guest_tokens.resolve_target_category(token, category_id)
            category = (await self._resolver.get_context(target_id)).category

            if not category.allow_guest_submissions:
                raise await self._deny(
                    "submit_expense",
                    "Guest submissions are not allowed for this category",
                    None,
                    "category",
                    category.id,
                )
            self._check_guest_contact(draft)
            receipt_exempt = False
            actor_user_id = None
            submitter: ActorRef = GuestActor(
                display_name=draft.guest_name or "Guest",
                email=draft.guest_email,
                token_id=token.id,
            )
        else:
            if category_id is None:
                raise BadRequestError("Category is required")
            user_id = principal.user_id
            category = (await self._resolver.get_context(category_id)).category
            role = await self._resolver.resolve_role(user_id, category_id)

            if role is None:
                raise await self._deny(
                    "submit_expense",
                    "You do not have permission to submit expenses to this category",
                    user_id,
                    "category",
                    category_id,
                )
            if not category.allow_user_submissions and role == Role.SUBMITTER:
                raise await self._deny(
                    "submit_expense",
                    "User submissions are not allowed for this category",
                    user_id,
                    "category",
                    category_id,
                )
            receipt_exempt = role.satisfies(Role.REVIEWER)
            actor_user_id = user_id
            submitter = KnownActor(user_id=user_id)

        if category.require_receipt and not draft.has_receipt and not receipt_exempt:
            raise BadRequestError(
                "This category requires a receipt to be uploaded for expense submission",
                {"category_id": str(category.id)},
            )

        now = self._clock()
        expense = Expense(
            report_id=category.report_id,
            category_id=category.id,
            submitter=submitter,
            description=draft.description,
            amount=draft.amount,
            items=draft.items,
            notes=draft.notes or None,
            receipt_url=draft.receipt_url if draft.has_receipt else None,
            transaction_date=draft.transaction_date or now,
            status=ExpenseStatus.PENDING_REVIEW,
            created_at=now,
            updated_at=now,
        )

        async with self._storage.transaction():
            expense = await self._storage.save_expense(expense)

        await self._audit_logger.log(
            AuditEventBuilder.expense_submitted(
                expense_id=expense.id,
                category_id=category.id,
                amount=str(expense.amount),
                actor_id=actor_user_id,
                via_guest=actor_user_id is None,
            )
        )
        if self._notifications:
            self._notifications.expense_created(expense, category, actor_user_id)
        return expense

    # =========================================================================
    # DECIDE
    # =========================================================================

    async def decide(
        self,
        principal: AnyPrincipal,
        expense_id: UUID,
        desired_status: Any,
        notes: Optional[str] = None,
    ) -> Expense:
        """
        Approve or deny an expense.

        Returns the expense with its effective new status, which is
        PENDING_ADMIN when a reviewer-level actor asked for APPROVED.

        Raises:
            BadRequestError: Target other than APPROVED/DENIED, notes too long,
                or the expense is no longer open
            UnauthorizedError: Bad guest token
            ForbiddenError: Self-approval, insufficient role, or out of scope
            NotFoundError: Unknown expense
            ConflictError: The expense changed while the decision was made
        """
        desired = self._parse_decision(desired_status)
        notes = self._clean_notes(notes)

        if isinstance(principal, GuestPrincipal):
            token = await self._guest_tokens.validate(
                principal.token, PermissionLevel.REVIEW_ONLY
            )
            expense = await self._get_expense(expense_id)
            await self._check_guest_scope(token, expense, "decide_expense")

            if isinstance(expense.submitter, GuestActor) and expense.submitter.token_id == token.id:
                raise await self._deny(
                    "decide_expense",
                    "You cannot approve your own expenses",
                    None,
                    "expense",
                    expense.id,
                )
            if not expense.status.is_open:
                raise BadRequestError(
                    "Expense cannot be updated",
                    {"status": expense.status.value},
                )

            is_admin = False
            actor_user_id = None
            actor: ActorRef = GuestActor(
                display_name=self._settings.guest_display_name,
                token_id=token.id,
            )
        else:
            user_id = principal.user_id
            expense = await self._get_expense(expense_id)
            role = await self._role_on_expense(user_id, expense)
            is_admin = role == Role.ADMIN

            if expense.submitter == KnownActor(user_id=user_id) and not is_admin:
                raise await self._deny(
                    "decide_expense",
                    "You cannot approve your own expenses",
                    user_id,
                    "expense",
                    expense.id,
                )
            if role is None or not role.satisfies(Role.REVIEWER):
                raise await self._deny(
                    "decide_expense",
                    "You do not have permission to update this expense status",
                    user_id,
                    "expense",
                    expense.id,
                )
            if expense.status.is_terminal:
                raise BadRequestError(
                    f"Expense is already {expense.status.value}",
                    {"status": expense.status.value},
                )

            actor_user_id = user_id
            actor = KnownActor(user_id=user_id)

        if desired == ExpenseStatus.APPROVED and not is_admin:
            effective = ExpenseStatus.PENDING_ADMIN
        else:
            effective = desired

        previous = expense.status
        async with self._storage.transaction():
            current = await self._storage.get_expense(expense_id)
            if current is None:
                raise NotFoundError("Expense not found", {"expense_id": str(expense_id)})
            if current.status != previous or current.category_id != expense.category_id:
                raise ConflictError(
                    "Expense changed while it was being decided",
                    {"expected_status": previous.value, "status": current.status.value},
                )

            now = self._clock()
            updated = current.model_copy(update={"status": effective, "updated_at": now})
            updated = await self._storage.save_expense(updated)
            await self._storage.append_approval(
                Approval(
                    expense_id=expense_id,
                    actor=actor,
                    status_change=effective,
                    requested_status=desired,
                    notes=notes,
                    created_at=now,
                )
            )

        logger.info(
            "expense_decided",
            expense_id=str(expense_id),
            previous_status=previous.value,
            new_status=effective.value,
            escalated=effective != desired,
        )
        await self._audit_logger.log(
            AuditEventBuilder.expense_decided(
                expense_id=expense_id,
                previous_status=previous.value,
                requested_status=desired.value,
                new_status=effective.value,
                actor_id=actor_user_id,
                via_guest=actor_user_id is None,
            )
        )

        if self._notifications:
            category_name = None
            if updated.category_id is not None:
                category = await self._storage.get_category(updated.category_id)
                category_name = category.name if category else None
            self._notifications.expense_status_changed(updated, actor_user_id, category_name)
        return updated

    # =========================================================================
    # DELETE / EDIT / MOVE
    # =========================================================================

    async def delete(self, user_id: UUID, expense_id: UUID) -> None:
        """
        Delete an expense.

        The submitter may delete while it is PENDING_REVIEW; REVIEWER and
        above may delete at any status.
        """
        expense = await self._get_expense(expense_id)
        is_submitter = expense.submitter == KnownActor(user_id=user_id)
        role = await self._role_on_expense(user_id, expense)
        is_reviewer = role is not None and role.satisfies(Role.REVIEWER)

        if not is_submitter and not is_reviewer:
            raise await self._deny(
                "delete_expense",
                "You do not have permission to delete this expense",
                user_id,
                "expense",
                expense_id,
            )
        if not is_reviewer and expense.status != ExpenseStatus.PENDING_REVIEW:
            raise await self._deny(
                "delete_expense",
                "Cannot delete expense after it has been reviewed",
                user_id,
                "expense",
                expense_id,
            )

        metadata = {
            "description": expense.description,
            "amount": str(expense.amount),
            "category_id": str(expense.category_id) if expense.category_id else None,
            "report_id": str(expense.report_id),
        }
        async with self._storage.transaction():
            if not await self._storage.delete_expense(expense_id):
                raise NotFoundError("Expense not found", {"expense_id": str(expense_id)})
            await self._change_feed.record("expense", expense_id, user_id, metadata)
            submitter_id = (
                expense.submitter.user_id
                if isinstance(expense.submitter, KnownActor) else None
            )
            if submitter_id is not None and submitter_id != user_id:
                await self._change_feed.record("expense", expense_id, submitter_id, metadata)

        await self._audit_logger.log(
            AuditEventBuilder.expense_deleted(expense_id, expense.status.value, user_id)
        )

    async def update(
        self,
        user_id: UUID,
        expense_id: UUID,
        changes: Union[ExpenseUpdate, dict[str, Any]],
    ) -> Expense:
        """
        Edit an expense's description, amount, notes, receipt or date.

        Same rules as delete: the submitter may edit while PENDING_REVIEW;
        REVIEWER and above may edit at any status. The status itself only
        changes through `decide`.

        Raises:
            BadRequestError: Invalid or empty changes, or clearing a receipt
                the category requires
            ForbiddenError: Not the submitter and no REVIEWER role, or the
                submitter after review
            ConflictError: The expense was decided while being edited
        """
        if not isinstance(changes, ExpenseUpdate):
            changes = ExpenseUpdate.from_payload(changes)

        expense = await self._get_expense(expense_id)
        is_submitter = expense.submitter == KnownActor(user_id=user_id)
        role = await self._role_on_expense(user_id, expense)
        is_reviewer = role is not None and role.satisfies(Role.REVIEWER)

        if not is_submitter and not is_reviewer:
            raise await self._deny(
                "update_expense",
                "You do not have permission to update this expense",
                user_id,
                "expense",
                expense_id,
            )
        if not is_reviewer and expense.status != ExpenseStatus.PENDING_REVIEW:
            raise await self._deny(
                "update_expense",
                "Cannot update expense after it has been reviewed",
                user_id,
                "expense",
                expense_id,
            )

        values = changes.changes()
        if "receipt_url" in values and values["receipt_url"] is None and not is_reviewer:
            category = (
                await self._storage.get_category(expense.category_id)
                if expense.category_id is not None else None
            )
            if category is not None and category.require_receipt:
                raise BadRequestError(
                    "This category requires a receipt to be uploaded for expense submission",
                    {"category_id": str(category.id)},
                )

        now = self._clock()
        if "transaction_date" in values and values["transaction_date"] is None:
            values["transaction_date"] = now

        async with self._storage.transaction():
            current = await self._storage.get_expense(expense_id)
            if current is None:
                raise NotFoundError("Expense not found", {"expense_id": str(expense_id)})
            if current.status != expense.status:
                raise ConflictError(
                    "Expense changed while it was being edited",
                    {"expected_status": expense.status.value, "status": current.status.value},
                )
            updated = current.model_copy(update={**values, "updated_at": now})
            updated = await self._storage.save_expense(updated)

        fields = sorted(values)
        logger.info("expense_updated", expense_id=str(expense_id), fields=fields)
        await self._audit_logger.log(
            AuditEventBuilder.expense_updated(expense_id, fields, updated.status.value, user_id)
        )
        return updated

    async def move(
        self,
        user_id: UUID,
        expense_id: UUID,
        new_category_id: UUID,
    ) -> Expense:
        """
        Refile an expense under another category of the same workspace.

        Allowed for the submitter while PENDING_REVIEW, or for an ADMIN of
        the current category. Either way the actor needs SUBMITTER on the
        target.
        """
        expense = await self._get_expense(expense_id)
        is_submitter = expense.submitter == KnownActor(user_id=user_id)
        current_role = await self._role_on_expense(user_id, expense)
        submitter_may_move = is_submitter and expense.status == ExpenseStatus.PENDING_REVIEW
        admin_may_move = current_role == Role.ADMIN
        if not (submitter_may_move or admin_may_move):
            raise await self._deny(
                "move_expense",
                "You do not have permission to move this expense",
                user_id,
                "expense",
                expense_id,
            )

        if expense.category_id == new_category_id:
            return expense

        target = await self._storage.get_category(new_category_id)
        if target is None:
            raise NotFoundError(
                "Target category not found",
                {"category_id": str(new_category_id)},
            )
        if target.report_id != expense.report_id:
            raise BadRequestError("Cannot move expense to a category in a different workspace")
        if not target.allow_user_submissions:
            raise BadRequestError("Target category does not allow expense submissions")

        if not await self._resolver.has_at_least(user_id, new_category_id, Role.SUBMITTER):
            raise await self._deny(
                "move_expense",
                "You do not have permission to move this expense to the selected category",
                user_id,
                "expense",
                expense_id,
            )

        async with self._storage.transaction():
            current = await self._storage.get_expense(expense_id)
            if current is None:
                raise NotFoundError("Expense not found", {"expense_id": str(expense_id)})
            if current.category_id != expense.category_id:
                raise ConflictError("Expense was moved concurrently")
            moved = current.model_copy(
                update={"category_id": new_category_id, "updated_at": self._clock()}
            )
            moved = await self._storage.save_expense(moved)

        await self._audit_logger.log(
            AuditEventBuilder.expense_moved(
                expense_id, expense.category_id, new_category_id, user_id
            )
        )
        return moved

    # =========================================================================
    # READS
    # =========================================================================

    async def list_reviewable(
        self,
        principal: AnyPrincipal,
        category_id: Optional[UUID] = None,
    ) -> list[Expense]:
        """
        Expenses a reviewer can see under a category, newest first.

        Users need REVIEWER and see every status in the subtree. REVIEW_ONLY
        guests see only PENDING_REVIEW expenses in their token's subtree;
        SUBMIT_ONLY guests see nothing (Forbidden).
        """
        if isinstance(principal, GuestPrincipal):
            token = await self._guest_tokens.validate(
                principal.token, PermissionLevel.REVIEW_ONLY
            )
            target_id = await self._guest_tokens.resolve_target_category(token, category_id)
            scope = await self._resolver.descendant_ids(target_id)
            return await self._storage.list_expenses(
                scope, statuses=[ExpenseStatus.PENDING_REVIEW]
            )

        if category_id is None:
            raise BadRequestError("Category is required")
        if not await self._resolver.has_at_least(principal.user_id, category_id, Role.REVIEWER):
            raise await self._deny(
                "list_expenses",
                "You do not have permission to review expenses in this category",
                principal.user_id,
                "category",
                category_id,
            )
        scope = await self._resolver.descendant_ids(category_id)
        return await self._storage.list_expenses(scope)

    async def approvals_for(
        self,
        expense_id: UUID,
        user_id: UUID,
    ) -> list[Approval]:
        """
        Approval rows for an expense in the order they were recorded.

        Only the submitter or a REVIEWER+ on the expense may read them.
        """
        expense = await self._get_expense(expense_id)
        if expense.submitter != KnownActor(user_id=user_id):
            role = await self._role_on_expense(user_id, expense)
            if role is None or not role.satisfies(Role.REVIEWER):
                raise await self._deny(
                    "list_approvals",
                    "You do not have permission to view this expense",
                    user_id,
                    "expense",
                    expense_id,
                )
        return await self._storage.list_approvals(expense_id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _get_expense(self, expense_id: UUID) -> Expense:
        expense = await self._storage.get_expense(expense_id)
        if expense is None:
            raise NotFoundError("Expense not found", {"expense_id": str(expense_id)})
        return expense

    async def _role_on_expense(self, user_id: UUID, expense: Expense) -> Optional[Role]:
        """
        Role on the expense's category. A detached expense (its category
        was deleted) is only reachable by the workspace owner.
        """
        if expense.category_id is not None:
            return await self._resolver.resolve_role(user_id, expense.category_id)
        report = await self._storage.get_report(expense.report_id)
        if report is not None and report.owner_id == user_id:
            return Role.ADMIN
        return None

    async def _check_guest_scope(
        self,
        token: GuestToken,
        expense: Expense,
        operation: str,
    ) -> None:
        in_scope = expense.category_id is not None and await self._guest_tokens.is_within_scope(
            expense.category_id, token.category_id
        )
        if not in_scope:
            raise await self._deny(
                operation,
                "Expense is outside the guest token scope",
                None,
                "expense",
                expense.id,
            )

    def _check_guest_contact(self, draft: ExpenseDraft) -> None:
        limit = self._settings.guest_email_max_length
        if draft.guest_email and len(draft.guest_email) > limit:
            raise BadRequestError(
                "Invalid email format",
                {"field": "guest_email", "max_length": limit},
            )

    @staticmethod
    def _parse_decision(value: Any) -> ExpenseStatus:
        try:
            status = ExpenseStatus(str(getattr(value, "value", value)).strip().upper())
        except ValueError:
            status = None
        if status not in DECISION_STATUSES:
            raise BadRequestError(
                "Status must be either APPROVED or DENIED",
                {"status": str(value)},
            )
        return status

    @staticmethod
    def _clean_notes(notes: Optional[str]) -> Optional[str]:
        if notes is None:
            return None
        notes = notes.strip()
        if len(notes) > _NOTES_MAX_LENGTH:
            raise BadRequestError(
                f"Notes must be at most {_NOTES_MAX_LENGTH} characters"
            )
        return notes or None

    async def _deny(
        self,
        operation: str,
        reason: str,
        actor_id: Optional[UUID],
        entity_type: str,
        entity_id: UUID,
    ) -> ForbiddenError:
        await self._audit_logger.log_authorization_denied(
            operation=operation,
            reason=reason,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return ForbiddenError(reason, {"operation": operation})
