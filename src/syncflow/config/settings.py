"""Application configuration settings."""

from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    url: str = Field(default="sqlite:///./data/syncflow.db")
    echo: bool = Field(default=False)

    model_config = SettingsConfigDict(env_prefix="SYNCFLOW_DB_")


class ExecutorSettings(BaseSettings):
    """Chunked executor configuration."""

    chunk_size: int = Field(default=10, ge=1)
    skip_unchanged_records: bool = Field(default=False)
    write_timeout_seconds: int = Field(default=30, ge=1)

    model_config = SettingsConfigDict(env_prefix="SYNCFLOW_EXECUTOR_")


class SchedulingSettings(BaseSettings):
    """Scheduling configuration."""

    tick_seconds: int = Field(default=30, ge=1)
    max_concurrent_runs: int = Field(default=5, ge=1)
    # Wall-clock budget for a single run; None disables the supervisor
    run_timeout_minutes: Optional[int] = Field(default=None, ge=1)

    model_config = SettingsConfigDict(env_prefix="SYNCFLOW_SCHEDULE_")


class NotificationSettings(BaseSettings):
    """Run status notification configuration."""

    enabled: bool = Field(default=True)
    recipients: List[str] = Field(default_factory=list)
    host: str = Field(default="http://localhost:8000")
    webhook_url: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(env_prefix="SYNCFLOW_NOTIFY_")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file_path: Optional[str] = Field(default="./logs/syncflow.log")

    model_config = SettingsConfigDict(env_prefix="SYNCFLOW_LOG_")


class ServerSettings(BaseSettings):
    """Health/status web server configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    model_config = SettingsConfigDict(env_prefix="SYNCFLOW_SERVER_")


class AppSettings(BaseSettings):
    """Main application settings."""

    name: str = Field(default="SyncFlow")
    version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    workspace_file: Optional[str] = Field(default=None)

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = SettingsConfigDict(
        env_prefix="SYNCFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """Get application settings."""
    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings


def reset_settings(settings: Optional[AppSettings] = None) -> AppSettings:
    """Replace the global settings instance (used by tests and the CLI)."""
    global _settings
    _settings = settings or AppSettings()
    return _settings
