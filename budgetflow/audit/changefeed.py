"""
Deletion Change-Feed

Clients that sync incrementally cannot see a row that no longer exists,
so every deletion they care about leaves a record here: "entity X of
type T was deleted, and user U should drop it".

DESIGN DECISION: The feed is persisted through ChangeFeedStorageInterface,
not held in process memory, so it survives restarts and is shared by
every engine instance over the same store. Records are written inside
the same transaction as the deletion they describe.

Records older than the configured TTL are pruned on append. A client
that has been away longer than the TTL must do a full resync.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from budgetflow.config import get_settings
from budgetflow.models.audit import DeletionRecord
from budgetflow.models.workspace import utcnow
from budgetflow.services.storage import ChangeFeedStorageInterface


logger = structlog.get_logger(__name__)

# entity_type -> key in the deleted_since() result
FEED_KEYS = {
    "expense": "expenses",
    "report": "reports",
    "shared_category": "shared_categories",
}


class ChangeFeed:
    """Append-only, TTL-bounded log of deletions, keyed by user."""

    def __init__(
        self,
        storage: ChangeFeedStorageInterface,
        ttl: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage
        if ttl is None:
            ttl = timedelta(days=get_settings().engine.deletion_log_ttl_days)
        self._ttl = ttl
        self._clock = clock or utcnow

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def record(
        self,
        entity_type: str,
        entity_id: UUID,
        user_id: UUID,
        metadata: Optional[dict[str, Any]] = None,
    ) -> DeletionRecord:
        """Append one deletion visible to `user_id` and prune stale records."""
        if entity_type not in FEED_KEYS:
            raise ValueError(f"Unknown change-feed entity type: {entity_type}")

        now = self._clock()
        record = DeletionRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            deleted_at=now,
            metadata=metadata or {},
        )
        await self._storage.append_deletion(record)

        pruned = await self._storage.prune_deletions(now - self._ttl)
        if pruned:
            logger.debug("change_feed_pruned", count=pruned)

        logger.info(
            "deletion_recorded",
            entity_type=entity_type,
            entity_id=str(entity_id),
            user_id=str(user_id),
        )
        return record

    async def deleted_since(
        self,
        user_id: UUID,
        since: datetime,
    ) -> dict[str, list[UUID]]:
        """
        Ids deleted for `user_id` strictly after `since`, grouped as
        {"expenses": [...], "reports": [...], "shared_categories": [...]}.
        """
        result: dict[str, list[UUID]] = {key: [] for key in FEED_KEYS.values()}
        for record in await self._storage.list_deletions(user_id, since):
            result[FEED_KEYS[record.entity_type]].append(record.entity_id)
        return result
