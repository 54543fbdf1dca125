"""
Configuration Management for BudgetFlow

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Each concern gets its own settings class with its own env prefix,
so a deployment can see at a glance what it is able to tune.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """
    Core engine settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUDGETFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Guest capability tokens
    guest_token_bytes: int = Field(
        default=32,
        ge=32,
        le=128,
        description="Random bytes per guest token (32 bytes = 256 bits)"
    )
    guest_display_name: str = Field(
        default="Guest Reviewer",
        description="Display name recorded for decisions made with a guest token"
    )
    guest_email_max_length: int = Field(
        default=254,
        ge=3,
        description="Maximum accepted length of a guest submitter email"
    )

    # Deletion change-feed
    deletion_log_ttl_days: int = Field(
        default=7,
        ge=1,
        le=365,
        description="How long deletion records are kept for incremental sync"
    )


class NotificationSettings(BaseSettings):
    """Push notification dispatch configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATIONS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="Dispatch notifications after workflow transitions"
    )
    debug: bool = Field(
        default=False,
        description="Verbose notification logging"
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Dispatch attempts before a notification is given up"
    )
    retry_min_wait_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Minimum backoff between dispatch attempts"
    )
    retry_max_wait_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Maximum backoff between dispatch attempts"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def engine(self) -> EngineSettings:
        return EngineSettings()

    @property
    def notifications(self) -> NotificationSettings:
        return NotificationSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    try:
        _ = settings.engine
        results["engine"] = True
    except Exception as e:
        results["engine"] = False
        results["engine_error"] = str(e)

    try:
        _ = settings.notifications
        results["notifications"] = True
    except Exception as e:
        results["notifications"] = False
        results["notifications_error"] = str(e)

    return results
