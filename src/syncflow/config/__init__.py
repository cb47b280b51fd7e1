"""Configuration package for SyncFlow.

Only settings and the workspace schema are exported here; the loader and
manager depend on logging and the database layer and are imported from
their modules.
"""

from .settings import (
    DatabaseSettings,
    ExecutorSettings,
    SchedulingSettings,
    NotificationSettings,
    LoggingSettings,
    ServerSettings,
    AppSettings,
    get_settings,
    reset_settings
)

from .schema import (
    ConnectorConfig,
    ModelConfig,
    SyncConfig,
    WorkspaceConfig,
    WORKSPACE_EXAMPLE
)

__all__ = [
    "DatabaseSettings",
    "ExecutorSettings",
    "SchedulingSettings",
    "NotificationSettings",
    "LoggingSettings",
    "ServerSettings",
    "AppSettings",
    "get_settings",
    "reset_settings",

    "ConnectorConfig",
    "ModelConfig",
    "SyncConfig",
    "WorkspaceConfig",
    "WORKSPACE_EXAMPLE"
]
