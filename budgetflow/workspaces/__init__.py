"""Workspace administration package."""

from budgetflow.workspaces.service import WorkspaceService

__all__ = ["WorkspaceService"]
