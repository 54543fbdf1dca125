"""Configuration package."""

from budgetflow.config.settings import (
    EngineSettings,
    NotificationSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "EngineSettings",
    "NotificationSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
