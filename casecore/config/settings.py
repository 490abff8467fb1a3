"""
Configuration settings for the casecore transactional side-effect core.

Settings are grouped into nested Pydantic models, one per concern, and
can be overridden from environment variables using a double underscore
as the section delimiter (``EFFECTS__DEFAULT_MAX_RETRIES=3``).
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Document store connection settings."""
    mongodb_url: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URL"
    )
    mongodb_database: str = Field(
        default="casecore",
        description="MongoDB database name"
    )
    server_selection_timeout_ms: int = Field(
        default=5000,
        description="Server selection timeout in milliseconds"
    )


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    format: str = Field(
        default="text",
        description="Log format (json/text)"
    )

    enable_correlation_ids: bool = Field(
        default=True,
        description="Enable correlation ID tracking"
    )

    slow_request_threshold_ms: float = Field(
        default=1000.0,
        description="Threshold for slow request warnings (milliseconds)"
    )


class EffectQueueSettings(BaseModel):
    """Deferred side-effect queue settings."""
    default_max_retries: int = Field(
        default=2,
        description="Retry budget for effects that do not declare one"
    )
    failure_history_size: int = Field(
        default=10,
        description="Capacity of the failed effect ring buffer"
    )
    action_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Deadline for a single effect action (None disables it)"
    )
    shutdown_drain_timeout_seconds: float = Field(
        default=5.0,
        description="How long shutdown waits for the queue to drain"
    )


class SoftDeleteSettings(BaseModel):
    """Soft deletion settings."""
    retention_days: int = Field(
        default=90,
        description="Days a deleted row is kept before it is eligible for purge"
    )
    audit_scope: str = Field(
        default="admin",
        description="Scope label written on soft delete audit entries"
    )


class LifecycleSettings(BaseModel):
    """Request lifecycle settings."""
    correlation_header: str = Field(
        default="X-Request-ID",
        description="Response header carrying the correlation ID"
    )
    accept_inbound_correlation_id: bool = Field(
        default=True,
        description="Reuse a correlation ID supplied by the client"
    )


class Settings(BaseSettings):
    """
    Application configuration settings.

    This class uses Pydantic BaseSettings to load configuration from
    environment variables, a .env file and default values. Each section
    is a nested model addressed as ``SECTION__KEY``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    app_name: str = Field(
        default="casecore",
        description="Application name"
    )

    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )

    environment: str = Field(
        default="development",
        description="Environment (development/staging/production)"
    )

    database: DatabaseSettings = Field(
        default_factory=DatabaseSettings,
        description="Database configuration"
    )

    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration"
    )

    effects: EffectQueueSettings = Field(
        default_factory=EffectQueueSettings,
        description="Deferred effect queue configuration"
    )

    soft_delete: SoftDeleteSettings = Field(
        default_factory=SoftDeleteSettings,
        description="Soft delete configuration"
    )

    lifecycle: LifecycleSettings = Field(
        default_factory=LifecycleSettings,
        description="Request lifecycle configuration"
    )

    def validate_configuration(self) -> Dict[str, list[str]]:
        """
        Validate the entire configuration.

        Returns:
            Dictionary with validation errors by section
        """
        errors: Dict[str, list[str]] = {}

        positive_int_fields = [
            ("effects.failure_history_size", self.effects.failure_history_size),
            ("soft_delete.retention_days", self.soft_delete.retention_days),
        ]

        for field_path, value in positive_int_fields:
            if not isinstance(value, int) or value <= 0:
                section = field_path.split('.')[0]
                errors.setdefault(section, []).append(
                    f"Must be positive integer: {field_path} = {value}"
                )

        if self.effects.default_max_retries < 0:
            errors.setdefault("effects", []).append(
                f"Must not be negative: effects.default_max_retries = {self.effects.default_max_retries}"
            )

        timeout = self.effects.action_timeout_seconds
        if timeout is not None and timeout <= 0:
            errors.setdefault("effects", []).append(
                f"Must be positive or unset: effects.action_timeout_seconds = {timeout}"
            )

        if self.logging.format not in ("json", "text"):
            errors.setdefault("logging", []).append(
                f"Unknown log format: logging.format = {self.logging.format}"
            )

        return errors


@lru_cache()
def get_settings() -> Settings:
    """Get application settings singleton."""
    return Settings()


# Environment variable examples:
# DATABASE__MONGODB_URL=mongodb://mongo:27017
# EFFECTS__DEFAULT_MAX_RETRIES=3
# EFFECTS__ACTION_TIMEOUT_SECONDS=10
# SOFT_DELETE__RETENTION_DAYS=30
# LOGGING__LEVEL=DEBUG
