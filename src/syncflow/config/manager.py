"""Applies a workspace file to the database."""

from datetime import datetime
from typing import Dict, Optional

from .schema import WorkspaceConfig, SyncConfig
from .loader import ConfigLoader, find_workspace_file
from ..database import (
    DatabaseService,
    ConnectorCreate,
    ModelCreate,
    SyncCreate,
    SyncUpdate,
    SyncResponse
)
from ..exceptions import ConfigurationError, SyncFlowError
from ..utils.logging import get_logger, log_execution_time


class ConfigManager:
    """Loads the workspace file and creates what the database is missing."""

    def __init__(self, database_service: DatabaseService, orchestrator, config_file: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            database_service: Database service for connector and model definitions
            orchestrator: SyncOrchestrator used to validate and persist syncs
            config_file: Optional workspace file path
        """
        self.db_service = database_service
        self.orchestrator = orchestrator
        self.config_file = config_file
        self.loader = ConfigLoader()
        self.logger = get_logger(self.__class__.__name__)

        self._config: Optional[WorkspaceConfig] = None
        self._config_loaded_at: Optional[datetime] = None

    @log_execution_time
    def load_config(self, force_reload: bool = False) -> WorkspaceConfig:
        """Load the workspace file, caching the result."""
        if self._config and not force_reload:
            return self._config

        path = self.config_file or find_workspace_file()
        if path is None:
            raise ConfigurationError("No workspace file configured or found")

        self._config = self.loader.load_from_file(path)
        self._config_loaded_at = datetime.now()
        self.loader.validate_config(self._config)
        return self._config

    @log_execution_time
    def apply(self, config: Optional[WorkspaceConfig] = None) -> Dict[str, int]:
        """Create connectors, models and syncs that do not exist yet.

        Existing syncs whose schedule differs from the file are updated.

        Returns:
            Dictionary with apply statistics
        """
        config = config or self.load_config()
        workspace_id = config.workspace_id

        stats = {
            "connectors_added": 0,
            "models_added": 0,
            "syncs_added": 0,
            "syncs_updated": 0,
            "syncs_skipped": 0
        }

        connector_ids: Dict[str, int] = {}
        for connector_config in config.connectors:
            existing = self.db_service.find_connector(workspace_id, connector_config.name)
            if existing is None:
                existing = self.db_service.create_connector(ConnectorCreate(
                    workspace_id=workspace_id,
                    **connector_config.model_dump()
                ))
                stats["connectors_added"] += 1
            connector_ids[connector_config.name] = existing.id

        model_ids: Dict[str, int] = {}
        for model_config in config.models:
            existing = self.db_service.find_model(workspace_id, model_config.name)
            if existing is None:
                existing = self.db_service.create_model(ModelCreate(
                    workspace_id=workspace_id,
                    connector_id=connector_ids[model_config.connector],
                    name=model_config.name,
                    query=model_config.query,
                    query_type=model_config.query_type,
                    primary_key=model_config.primary_key
                ))
                stats["models_added"] += 1
            model_ids[model_config.name] = existing.id

        existing_syncs = {
            (s.source_id, s.destination_id, s.model_id, s.stream_name): s
            for s in self.db_service.list_syncs(workspace_id=workspace_id)
        }

        for sync_config in config.syncs:
            key = (
                connector_ids[sync_config.source],
                connector_ids[sync_config.destination],
                model_ids[sync_config.model],
                sync_config.stream_name
            )
            try:
                if key not in existing_syncs:
                    self.orchestrator.create_sync(SyncCreate(
                        workspace_id=workspace_id,
                        source_id=key[0],
                        destination_id=key[1],
                        model_id=key[2],
                        **self._sync_fields(sync_config)
                    ))
                    stats["syncs_added"] += 1
                elif self._sync_needs_update(existing_syncs[key], sync_config):
                    self.orchestrator.update_sync(
                        existing_syncs[key].id,
                        SyncUpdate(**self._sync_fields(sync_config))
                    )
                    stats["syncs_updated"] += 1
                else:
                    stats["syncs_skipped"] += 1
            except SyncFlowError as e:
                self.logger.error("Failed to apply sync from workspace", sync=list(sync_config.key), error=str(e))
                raise ConfigurationError(f"Sync {sync_config.key} is invalid: {e}") from e

        self.logger.info("Workspace applied", stats=stats)
        return stats

    def _sync_fields(self, sync_config: SyncConfig) -> Dict:
        return sync_config.model_dump(exclude={"source", "destination", "model"})

    def _sync_needs_update(self, sync: SyncResponse, sync_config: SyncConfig) -> bool:
        wanted = self._sync_fields(sync_config)
        current = sync.model_dump(mode="json")
        wanted = {
            key: value.value if hasattr(value, "value") else value
            for key, value in wanted.items()
        }
        return any(current.get(key) != value for key, value in wanted.items())
