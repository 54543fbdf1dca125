"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Currently implements an in-memory backend, but designed to be swappable.
"""

from budgetflow.services.storage.interface import (
    AuditStorageInterface,
    ChangeFeedStorageInterface,
    DuplicateError,
    EngineStorageInterface,
    ExpenseStorageInterface,
    GuestTokenStorageInterface,
    StorageError,
    WorkspaceStorageInterface,
)
from budgetflow.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryEngineStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ChangeFeedStorageInterface",
    "EngineStorageInterface",
    "ExpenseStorageInterface",
    "GuestTokenStorageInterface",
    "WorkspaceStorageInterface",
    # Exceptions
    "DuplicateError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryEngineStorage",
]
