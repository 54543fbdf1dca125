"""
Tests for the permission resolver: owner override, nearest-grant
inheritance, tree walks and corrupted-tree detection.
"""

import pytest
from uuid import uuid4

from budgetflow.errors import InvariantViolationError, NotFoundError
from budgetflow.models.audit import AuditEventType
from budgetflow.models.workspace import OWNER_ROLE, Category, Role


class TestResolveRole:
    """Tests for effective role resolution."""

    async def test_owner_is_admin_everywhere(self, engine, workspace):
        """The workspace owner resolves to ADMIN without any grant row."""
        assert await engine.resolve_role(workspace.alice, workspace.root.id) == Role.ADMIN
        assert await engine.resolve_role(workspace.alice, workspace.travel.id) == Role.ADMIN

    async def test_direct_grant(self, engine, workspace):
        """A direct grant is returned as-is."""
        assert await engine.resolve_role(workspace.carol, workspace.travel.id) == Role.SUBMITTER

    async def test_inherited_grant(self, engine, workspace):
        """A grant on an ancestor applies to the whole subtree."""
        assert await engine.resolve_role(workspace.bob, workspace.travel.id) == Role.REVIEWER

    async def test_grants_do_not_flow_upwards(self, engine, workspace):
        """A grant on a child gives nothing on its parent."""
        assert await engine.resolve_role(workspace.carol, workspace.root.id) is None

    async def test_no_grant_is_none(self, engine, workspace):
        """Users with no grant on the chain have no role."""
        assert await engine.resolve_role(workspace.dave, workspace.travel.id) is None

    async def test_nearest_grant_wins_even_if_lower(self, engine, workspace):
        """A closer SUBMITTER grant overrides an ADMIN grant further up."""
        flights = await engine.create_category(workspace.alice, workspace.travel.id, "Flights")
        await engine.grant_permission(workspace.alice, workspace.root.id, workspace.dave, "ADMIN")
        await engine.grant_permission(workspace.alice, workspace.travel.id, workspace.dave, "SUBMITTER")

        assert await engine.resolve_role(workspace.dave, flights.id) == Role.SUBMITTER
        assert await engine.resolve_role(workspace.dave, workspace.root.id) == Role.ADMIN

    async def test_has_at_least(self, engine, workspace):
        """has_at_least follows the lattice and treats None as nothing."""
        assert await engine.has_at_least(workspace.bob, workspace.travel.id, "SUBMITTER")
        assert not await engine.has_at_least(workspace.bob, workspace.travel.id, Role.ADMIN)
        assert not await engine.has_at_least(workspace.dave, workspace.travel.id, Role.SUBMITTER)

    async def test_unknown_category(self, engine, workspace):
        """Resolving on a missing category is NotFound, not None."""
        with pytest.raises(NotFoundError) as exc_info:
            await engine.resolve_role(workspace.bob, uuid4())
        assert exc_info.value.retryable is False

    async def test_vanished_parent_is_retryable(self, engine, storage, workspace):
        """A parent that disappears mid-walk is a retryable NotFound."""
        orphan = Category(
            report_id=workspace.report.id,
            parent_id=uuid4(),
            name="Orphan",
        )
        await storage.save_category(orphan)

        with pytest.raises(NotFoundError) as exc_info:
            await engine.resolve_role(workspace.dave, orphan.id)
        assert exc_info.value.retryable is True


class TestCorruptedTrees:
    """Cycles in persisted data are detected, never looped over."""

    async def _make_cycle(self, storage, workspace) -> tuple[Category, Category]:
        a = Category(report_id=workspace.report.id, parent_id=workspace.root.id, name="A")
        b = Category(report_id=workspace.report.id, parent_id=a.id, name="B")
        await storage.save_category(a)
        await storage.save_category(b)
        await storage.save_category(a.model_copy(update={"parent_id": b.id}))
        return a, b

    async def test_cycle_in_ancestor_walk(self, engine, storage, audit_storage, workspace):
        """A non-owner walk around a cycle raises InvariantViolation and audits it."""
        _, b = await self._make_cycle(storage, workspace)

        with pytest.raises(InvariantViolationError):
            await engine.resolve_role(workspace.dave, b.id)

        events = await audit_storage.get_recent_events()
        assert any(e.event_type == AuditEventType.INVARIANT_VIOLATION for e in events)

    async def test_owner_short_circuits_before_walk(self, engine, storage, workspace):
        """The owner check needs no walk, so it still answers on a broken tree."""
        _, b = await self._make_cycle(storage, workspace)
        assert await engine.resolve_role(workspace.alice, b.id) == Role.ADMIN

    async def test_cycle_in_descendant_walk(self, engine, storage, workspace):
        """The downward walk detects the loop as well."""
        a, _ = await self._make_cycle(storage, workspace)
        with pytest.raises(InvariantViolationError):
            await engine.descendant_ids(a.id)

    async def test_cross_workspace_parent(self, engine, storage, workspace):
        """A parent in another workspace is a broken invariant."""
        _, other_root = await engine.create_report(uuid4(), "Elsewhere")
        stray = Category(report_id=workspace.report.id, parent_id=other_root.id, name="Stray")
        await storage.save_category(stray)

        with pytest.raises(InvariantViolationError):
            await engine.resolve_role(workspace.dave, stray.id)


class TestTreeWalks:
    """Tests for descendant and ancestor traversal."""

    async def test_descendant_ids_include_self(self, engine, workspace):
        """The subtree of a category contains the category itself."""
        flights = await engine.create_category(workspace.alice, workspace.travel.id, "Flights")
        hotels = await engine.create_category(workspace.alice, workspace.travel.id, "Hotels")

        assert await engine.descendant_ids(workspace.travel.id) == {
            workspace.travel.id, flights.id, hotels.id,
        }
        assert await engine.descendant_ids(flights.id) == {flights.id}

    async def test_descendant_ids_unknown_category(self, engine, workspace):
        """Walking from nowhere is NotFound."""
        with pytest.raises(NotFoundError):
            await engine.descendant_ids(uuid4())

    async def test_ancestor_ids_closest_first(self, engine, workspace):
        """Ancestors are listed from the category up to the root."""
        flights = await engine.create_category(workspace.alice, workspace.travel.id, "Flights")
        assert await engine.resolver.ancestor_ids(flights.id) == [
            flights.id, workspace.travel.id, workspace.root.id,
        ]

    async def test_is_within(self, engine, workspace):
        """Scope checks look upward from the target."""
        assert await engine.resolver.is_within(workspace.travel.id, workspace.root.id)
        assert await engine.resolver.is_within(workspace.travel.id, workspace.travel.id)
        assert not await engine.resolver.is_within(workspace.root.id, workspace.travel.id)


class TestMergedPermissionsView:
    """Tests for the merged permission listing."""

    async def test_owner_first_and_not_revocable(self, engine, workspace):
        """The owner leads the listing as a non-revocable OWNER row."""
        views = await engine.merged_permissions_view(workspace.travel.id)
        owner = views[0]
        assert owner.user_id == workspace.alice
        assert owner.role == OWNER_ROLE
        assert owner.revocable is False

    async def test_direct_and_inherited(self, engine, workspace):
        """Grants on the category are direct; grants above are inherited."""
        views = {v.user_id: v for v in await engine.merged_permissions_view(workspace.travel.id)}

        assert views[workspace.carol].is_direct
        assert views[workspace.carol].role == "SUBMITTER"
        assert views[workspace.bob].is_inherited
        assert views[workspace.bob].source_category_id == workspace.root.id

    async def test_one_row_per_user_closest_wins(self, engine, workspace):
        """A user with grants at several levels appears once, with the closest grant."""
        await engine.grant_permission(workspace.alice, workspace.travel.id, workspace.bob, "ADMIN")
        views = [
            v for v in await engine.merged_permissions_view(workspace.travel.id)
            if v.user_id == workspace.bob
        ]
        assert len(views) == 1
        assert views[0].role == "ADMIN"
        assert views[0].is_direct

    async def test_reviewer_ids(self, engine, workspace):
        """Reviewer recipients are the owner and effective REVIEWER+ users."""
        reviewers = await engine.resolver.reviewer_ids(workspace.travel.id)
        assert reviewers == {workspace.alice, workspace.bob}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
