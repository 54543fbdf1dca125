"""Permission resolution package."""

from budgetflow.permissions.resolver import PermissionResolver

__all__ = ["PermissionResolver"]
