"""Database package for SyncFlow."""

from .database import (
    DatabaseManager,
    get_db_manager,
    init_database,
    close_database
)

from .models import (
    ACTIVE_RUN_STATUSES,
    ConnectorModel,
    QueryModel,
    SyncModel,
    SyncRunModel,
    SyncRecordModel,
    ConnectorCreate,
    ConnectorResponse,
    ModelCreate,
    ModelResponse,
    SyncCreate,
    SyncUpdate,
    SyncResponse,
    SyncRunResponse,
    SyncRecordResponse,
    DatabaseStats,
    ConnectorType,
    QueryType,
    ScheduleType,
    IntervalUnit,
    SyncMode,
    SyncStatus,
    SyncRunStatus,
    SyncRunType,
    utcnow
)

from .operations import (
    DiscardScope,
    ConnectorRepository,
    QueryModelRepository,
    SyncRepository,
    SyncRunRepository,
    SyncRecordRepository,
    get_connector_repository,
    get_model_repository,
    get_sync_repository,
    get_sync_run_repository,
    get_sync_record_repository
)

from .service import (
    DatabaseService,
    get_database_service
)

__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "init_database",
    "close_database",

    # Models
    "ACTIVE_RUN_STATUSES",
    "ConnectorModel",
    "QueryModel",
    "SyncModel",
    "SyncRunModel",
    "SyncRecordModel",
    "ConnectorCreate",
    "ConnectorResponse",
    "ModelCreate",
    "ModelResponse",
    "SyncCreate",
    "SyncUpdate",
    "SyncResponse",
    "SyncRunResponse",
    "SyncRecordResponse",
    "DatabaseStats",
    "ConnectorType",
    "QueryType",
    "ScheduleType",
    "IntervalUnit",
    "SyncMode",
    "SyncStatus",
    "SyncRunStatus",
    "SyncRunType",
    "utcnow",

    # Repositories
    "DiscardScope",
    "ConnectorRepository",
    "QueryModelRepository",
    "SyncRepository",
    "SyncRunRepository",
    "SyncRecordRepository",
    "get_connector_repository",
    "get_model_repository",
    "get_sync_repository",
    "get_sync_run_repository",
    "get_sync_record_repository",

    # Service
    "DatabaseService",
    "get_database_service"
]
