"""Services package."""

from budgetflow.services.storage import (
    AuditStorageInterface,
    ChangeFeedStorageInterface,
    DuplicateError,
    EngineStorageInterface,
    ExpenseStorageInterface,
    GuestTokenStorageInterface,
    InMemoryAuditStorage,
    InMemoryEngineStorage,
    StorageError,
    WorkspaceStorageInterface,
)

__all__ = [
    # Storage services
    "AuditStorageInterface",
    "ChangeFeedStorageInterface",
    "DuplicateError",
    "EngineStorageInterface",
    "ExpenseStorageInterface",
    "GuestTokenStorageInterface",
    "InMemoryAuditStorage",
    "InMemoryEngineStorage",
    "StorageError",
    "WorkspaceStorageInterface",
]
