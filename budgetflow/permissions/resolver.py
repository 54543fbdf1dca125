"""
Permission Resolver

This is the single place that answers "what role does user U hold on
category C?". Every guard in the engine goes through it, including the
workspace-owner override, so the ADMIN-for-owner rule is encoded exactly
once.

Resolution rules:
1. The workspace owner is ADMIN on every category of the workspace.
   This is checked first and short-circuits the tree walk.
2. Otherwise the NEAREST direct grant wins: walk from C up through its
   ancestors and return the first grant found for U, even if an ancestor
   further up grants a higher role.
3. No owner, no grant anywhere on the chain: None.

DESIGN DECISION: All tree walks are iterative with a visited-id set.
A cycle in persisted data is reported as InvariantViolationError (and
audited as CRITICAL) instead of looping forever.

Concurrent structural changes: if a category disappears while we are
walking (moved or deleted mid-walk), the walk fails with a retryable
NotFoundError rather than answering from a half-read tree.
"""

from collections import deque
from typing import Optional
from uuid import UUID

import structlog

from budgetflow.audit import AuditLogger
from budgetflow.errors import InvariantViolationError, NotFoundError
from budgetflow.models.workspace import (
    OWNER_ROLE,
    Category,
    CategoryContext,
    PermissionView,
    Role,
)
from budgetflow.services.storage import WorkspaceStorageInterface


logger = structlog.get_logger(__name__)


class PermissionResolver:
    """
    Resolves effective roles over the category tree.

    Usage:
        resolver = PermissionResolver(storage)
        role = await resolver.resolve_role(user_id, category_id)
        if await resolver.has_at_least(user_id, category_id, Role.REVIEWER):
            ...
    """

    def __init__(
        self,
        storage: WorkspaceStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger or AuditLogger()

    # =========================================================================
    # ROLE RESOLUTION
    # =========================================================================

    async def resolve_role(self, user_id: UUID, category_id: UUID) -> Optional[Role]:
        """
        Effective role of `user_id` on `category_id`, or None.

        Raises:
            NotFoundError: The category does not exist (retryable if an
                ancestor vanished during the walk)
            InvariantViolationError: The ancestor chain contains a cycle
        """
        context = await self._load_context(category_id, user_id)

        if context.owner_id == user_id:
            return Role.ADMIN

        report_id = context.category.report_id
        visited: list[UUID] = []

        while True:
            category = context.category
            if category.id in visited:
                await self._raise_cycle(category.id, visited + [category.id])
            visited.append(category.id)

            if category.report_id != report_id:
                await self._raise_cross_workspace(category_id, category)

            if context.permission is not None:
                return context.permission.role

            if category.parent_id is None:
                return None

            context = await self._load_context(
                category.parent_id, user_id, mid_walk=True
            )

    async def has_at_least(
        self,
        user_id: UUID,
        category_id: UUID,
        required: Role,
    ) -> bool:
        """True if the resolved role satisfies `required`. None satisfies nothing."""
        role = await self.resolve_role(user_id, category_id)
        return role is not None and role.satisfies(required)

    async def is_workspace_owner(self, user_id: UUID, category_id: UUID) -> bool:
        context = await self._load_context(category_id)
        return context.owner_id == user_id

    async def get_context(
        self,
        category_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> CategoryContext:
        """Category + owner (+ direct grant) or NotFoundError."""
        return await self._load_context(category_id, user_id)

    # =========================================================================
    # TREE WALKS
    # =========================================================================

    async def ancestor_chain(self, category_id: UUID) -> list[Category]:
        """
        The category followed by its ancestors, closest first, root last.
        """
        category = await self._storage.get_category(category_id)
        if category is None:
            raise NotFoundError("Category not found", {"category_id": str(category_id)})

        chain: list[Category] = []
        visited: list[UUID] = []
        while True:
            if category.id in visited:
                await self._raise_cycle(category.id, visited + [category.id])
            visited.append(category.id)
            chain.append(category)

            if category.parent_id is None:
                return chain

            parent = await self._storage.get_category(category.parent_id)
            if parent is None:
                raise NotFoundError(
                    "Category changed while it was being read",
                    {"category_id": str(category.parent_id)},
                    retryable=True,
                )
            if parent.report_id != chain[0].report_id:
                await self._raise_cross_workspace(category_id, parent)
            category = parent

    async def ancestor_ids(self, category_id: UUID) -> list[UUID]:
        return [c.id for c in await self.ancestor_chain(category_id)]

    async def descendant_ids(self, category_id: UUID) -> set[UUID]:
        """
        The category and every category below it (breadth-first).

        Raises:
            NotFoundError: The category does not exist
            InvariantViolationError: A category is reachable twice
        """
        if await self._storage.get_category(category_id) is None:
            raise NotFoundError("Category not found", {"category_id": str(category_id)})

        found = {category_id}
        queue = deque([category_id])
        while queue:
            current = queue.popleft()
            for child in await self._storage.list_child_categories(current):
                if child.id in found:
                    await self._raise_cycle(child.id, [current, child.id])
                found.add(child.id)
                queue.append(child.id)
        return found

    async def is_within(self, target_category_id: UUID, bound_category_id: UUID) -> bool:
        """True iff target is the bound category or one of its descendants."""
        if target_category_id == bound_category_id:
            return True
        return bound_category_id in await self.ancestor_ids(target_category_id)

    # =========================================================================
    # LISTINGS
    # =========================================================================

    async def merged_permissions_view(self, category_id: UUID) -> list[PermissionView]:
        """
        Direct and inherited grants on a category, one row per user.

        The workspace owner comes first as a non-revocable OWNER pseudo-grant.
        For every other user the closest grant on the ancestor chain wins.
        """
        context = await self._load_context(category_id)
        chain = await self.ancestor_ids(category_id)
        distance = {cid: i for i, cid in enumerate(chain)}

        grants = await self._storage.list_permissions(chain)
        grants.sort(key=lambda p: (distance[p.category_id], -p.role.rank, p.created_at))

        views = [
            PermissionView(
                user_id=context.owner_id,
                role=OWNER_ROLE,
                is_direct=True,
                revocable=False,
            )
        ]
        seen = {context.owner_id}
        for grant in grants:
            if grant.user_id in seen:
                continue
            seen.add(grant.user_id)
            views.append(
                PermissionView(
                    user_id=grant.user_id,
                    role=grant.role.value,
                    permission_id=grant.id,
                    source_category_id=grant.category_id,
                    is_direct=grant.category_id == category_id,
                )
            )
        return views

    async def reviewer_ids(self, category_id: UUID) -> set[UUID]:
        """
        Users who can review on the category: the owner plus everyone whose
        effective (nearest) grant on the chain is REVIEWER or ADMIN.
        """
        reviewers: set[UUID] = set()
        for view in await self.merged_permissions_view(category_id):
            if view.role == OWNER_ROLE or Role(view.role).satisfies(Role.REVIEWER):
                reviewers.add(view.user_id)
        return reviewers

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _load_context(
        self,
        category_id: UUID,
        user_id: Optional[UUID] = None,
        mid_walk: bool = False,
    ) -> CategoryContext:
        context = await self._storage.get_category_context(category_id, user_id)
        if context is None:
            if mid_walk:
                logger.warning(
                    "category_vanished_mid_walk",
                    category_id=str(category_id),
                )
                raise NotFoundError(
                    "Category changed while it was being read",
                    {"category_id": str(category_id)},
                    retryable=True,
                )
            raise NotFoundError("Category not found", {"category_id": str(category_id)})
        return context

    async def _raise_cycle(self, category_id: UUID, path: list[UUID]) -> None:
        message = "Cycle detected in category tree"
        details = {"path": [str(cid) for cid in path]}
        await self._audit_logger.log_invariant_violation(category_id, message, details)
        raise InvariantViolationError(message, details)

    async def _raise_cross_workspace(self, category_id: UUID, stray: Category) -> None:
        message = "Category chain crosses workspaces"
        details = {
            "category_id": str(category_id),
            "stray_category_id": str(stray.id),
            "stray_report_id": str(stray.report_id),
        }
        await self._audit_logger.log_invariant_violation(category_id, message, details)
        raise InvariantViolationError(message, details)
