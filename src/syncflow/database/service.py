"""High-level database service layer."""

from typing import List, Optional
from contextlib import contextmanager

from .database import DatabaseManager, get_db_manager
from .operations import (
    DiscardScope,
    get_connector_repository,
    get_model_repository,
    get_sync_repository,
    get_sync_run_repository,
    get_sync_record_repository
)
from .models import (
    ConnectorCreate, ConnectorResponse,
    ModelCreate, ModelResponse,
    SyncResponse, SyncRunResponse, SyncRecordResponse,
    DatabaseStats
)
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("database.service")


class DatabaseService:
    """Read-side facade plus connector/model definitions.

    Sync and run mutations that carry domain rules (validation, transitions,
    discard cascades) live in ``syncflow.core`` and open their own
    transactions through ``transaction()``.
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or get_db_manager()

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        with self.db_manager.session_scope() as session:
            yield session

    # Connector and model definitions

    @log_execution_time
    def create_connector(self, connector_data: ConnectorCreate) -> ConnectorResponse:
        with self.transaction() as session:
            connector = get_connector_repository(session).create(connector_data)
            return ConnectorResponse.model_validate(connector)

    @log_execution_time
    def get_connector(self, connector_id: int) -> Optional[ConnectorResponse]:
        with self.transaction() as session:
            connector = get_connector_repository(session).get_by_id(connector_id)
            return ConnectorResponse.model_validate(connector) if connector else None

    @log_execution_time
    def find_connector(self, workspace_id: int, name: str) -> Optional[ConnectorResponse]:
        with self.transaction() as session:
            connector = get_connector_repository(session).get_by_name(workspace_id, name)
            return ConnectorResponse.model_validate(connector) if connector else None

    @log_execution_time
    def create_model(self, model_data: ModelCreate) -> ModelResponse:
        with self.transaction() as session:
            model = get_model_repository(session).create(model_data)
            return ModelResponse.model_validate(model)

    @log_execution_time
    def get_model(self, model_id: int) -> Optional[ModelResponse]:
        with self.transaction() as session:
            model = get_model_repository(session).get_by_id(model_id)
            return ModelResponse.model_validate(model) if model else None

    @log_execution_time
    def find_model(self, workspace_id: int, name: str) -> Optional[ModelResponse]:
        with self.transaction() as session:
            model = get_model_repository(session).get_by_name(workspace_id, name)
            return ModelResponse.model_validate(model) if model else None

    # Syncs

    @log_execution_time
    def get_sync(self, sync_id: int, scope: DiscardScope = DiscardScope.KEPT) -> Optional[SyncResponse]:
        with self.transaction() as session:
            sync = get_sync_repository(session).get_by_id(sync_id, scope)
            return SyncResponse.model_validate(sync) if sync else None

    @log_execution_time
    def list_syncs(
        self,
        scope: DiscardScope = DiscardScope.KEPT,
        workspace_id: Optional[int] = None
    ) -> List[SyncResponse]:
        with self.transaction() as session:
            syncs = get_sync_repository(session).list(scope, workspace_id)
            return [SyncResponse.model_validate(sync) for sync in syncs]

    # Sync runs

    @log_execution_time
    def get_sync_run(
        self,
        sync_run_id: int,
        scope: DiscardScope = DiscardScope.KEPT
    ) -> Optional[SyncRunResponse]:
        with self.transaction() as session:
            sync_run = get_sync_run_repository(session).get_by_id(sync_run_id, scope)
            return SyncRunResponse.model_validate(sync_run) if sync_run else None

    @log_execution_time
    def list_sync_runs(
        self,
        sync_id: Optional[int] = None,
        scope: DiscardScope = DiscardScope.KEPT,
        limit: Optional[int] = None
    ) -> List[SyncRunResponse]:
        with self.transaction() as session:
            repo = get_sync_run_repository(session)
            if sync_id is None:
                runs = repo.list(scope)
            else:
                runs = repo.list_for_sync(sync_id, scope, limit)
            return [SyncRunResponse.model_validate(run) for run in runs]

    @log_execution_time
    def list_active_runs(self, scope: DiscardScope = DiscardScope.KEPT) -> List[SyncRunResponse]:
        with self.transaction() as session:
            runs = get_sync_run_repository(session).active(scope)
            return [SyncRunResponse.model_validate(run) for run in runs]

    # Sync records

    @log_execution_time
    def list_sync_records(
        self,
        sync_id: Optional[int] = None,
        sync_run_id: Optional[int] = None
    ) -> List[SyncRecordResponse]:
        if sync_id is None and sync_run_id is None:
            raise ValueError("sync_id or sync_run_id is required")

        with self.transaction() as session:
            repo = get_sync_record_repository(session)
            if sync_run_id is not None:
                records = repo.list_for_run(sync_run_id)
            else:
                records = repo.list_for_sync(sync_id)
            return [SyncRecordResponse.model_validate(record) for record in records]

    # Statistics

    @log_execution_time
    def get_database_stats(self) -> DatabaseStats:
        with self.transaction() as session:
            sync_repo = get_sync_repository(session)
            run_repo = get_sync_run_repository(session)

            return DatabaseStats(
                syncs=len(sync_repo.list()),
                discarded_syncs=len(sync_repo.list(DiscardScope.DISCARDED_ONLY)),
                sync_runs=len(run_repo.list()),
                active_sync_runs=len(run_repo.active()),
                sync_records=get_sync_record_repository(session).count(),
                runs_by_status=run_repo.count_by_status()
            )


# Global service instance
_database_service: Optional[DatabaseService] = None


def get_database_service() -> DatabaseService:
    """Get the global database service instance."""
    global _database_service
    if _database_service is None:
        _database_service = DatabaseService()
    return _database_service
