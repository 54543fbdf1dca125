"""Audit logging and deletion change-feed package."""

from budgetflow.audit.logger import AuditLogger
from budgetflow.audit.changefeed import FEED_KEYS, ChangeFeed

__all__ = ["AuditLogger", "ChangeFeed", "FEED_KEYS"]
