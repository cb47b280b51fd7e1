"""Sync orchestrator: sync definitions, run triggers and run execution."""

from typing import Any, Dict, List, Optional

from ..connectors import ConnectivityError, ConnectorFactory
from ..database import (
    ConnectorType,
    DatabaseService,
    DiscardScope,
    SyncCreate,
    SyncMode,
    SyncResponse,
    SyncRunResponse,
    SyncRunType,
    SyncStatus,
    SyncUpdate,
    get_connector_repository,
    get_model_repository,
    get_sync_repository,
    get_sync_run_repository,
    utcnow
)
from ..exceptions import NotFoundError, SyncValidationError
from ..utils.logging import get_logger, log_async_execution_time
from .discard import DiscardPropagator, DiscardResult
from .executor import ChunkedSyncExecutor, RunSummary
from .notifications import NotificationDispatcher
from .record_tracker import RecordTracker
from .run_state import RunStateManager
from .schedule import SCHEDULE_FIELDS, ScheduleResolver
from .state_machine import SyncRunEvent


CATALOG_MISSING = "Catalog is missing"
STREAM_NAME_INVALID = "Add a valid stream_name associated with destination connector"


class SyncOrchestrator:
    """Entry point for everything that creates, changes or runs syncs."""

    def __init__(
        self,
        database_service: DatabaseService,
        dispatcher: Optional[NotificationDispatcher] = None,
        connector_factory=ConnectorFactory,
        executor: Optional[ChunkedSyncExecutor] = None
    ):
        """Initialize the orchestrator.

        Args:
            database_service: Database service for persistence
            dispatcher: Notification dispatcher for finished runs
            connector_factory: Factory used to build source and destination connectors
            executor: Pre-built executor; one is created when omitted
        """
        self.db_service = database_service
        self.connector_factory = connector_factory
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.run_state = RunStateManager(database_service, self.dispatcher)
        self.schedule_resolver = ScheduleResolver()
        self.discard_propagator = DiscardPropagator(database_service)
        self.executor = executor or ChunkedSyncExecutor(
            database_service,
            self.run_state,
            RecordTracker(database_service),
            connector_factory
        )
        self.logger = get_logger(self.__class__.__name__)

        self.logger.info("Sync orchestrator initialized")

    # Sync definitions

    def _validate_references(self, session, fields: Dict[str, Any]) -> Dict[str, List[str]]:
        errors: Dict[str, List[str]] = {}
        connectors = get_connector_repository(session)

        source = connectors.get_by_id(fields["source_id"])
        if source is None or ConnectorType(source.connector_type) != ConnectorType.SOURCE:
            errors["source_id"] = ["must reference a source connector"]

        destination = connectors.get_by_id(fields["destination_id"])
        if destination is None or ConnectorType(destination.connector_type) != ConnectorType.DESTINATION:
            errors["destination_id"] = ["must reference a destination connector"]
        elif not destination.catalog:
            errors["catalog"] = [CATALOG_MISSING]
        elif destination.stream(fields.get("stream_name") or "") is None:
            errors["stream_name"] = [STREAM_NAME_INVALID]

        if get_model_repository(session).get_by_id(fields["model_id"]) is None:
            errors["model_id"] = ["must reference an existing model"]

        if SyncMode(fields.get("sync_mode") or SyncMode.FULL_REFRESH) == SyncMode.INCREMENTAL:
            if not fields.get("cursor_field"):
                errors["cursor_field"] = ["can't be blank for incremental syncs"]

        return errors

    def create_sync(self, sync_data: SyncCreate) -> SyncResponse:
        """Validate and persist a new sync in ``pending`` status.

        Raises:
            SyncValidationError: If a reference, the stream or the schedule is invalid
        """
        fields = sync_data.model_dump()
        fields["sync_mode"] = SyncMode(fields["sync_mode"]).value
        fields.update(self.schedule_resolver.normalize(fields))

        with self.db_service.transaction() as session:
            errors = self._validate_references(session, fields)
            if errors:
                raise SyncValidationError(errors)

            fields["status"] = SyncStatus.PENDING.value
            sync = get_sync_repository(session).create(fields)
            return SyncResponse.model_validate(sync)

    def update_sync(self, sync_id: int, sync_update: SyncUpdate) -> SyncResponse:
        """Apply an update, re-validating the same invariants as creation.

        Raises:
            NotFoundError: If the sync does not exist or is discarded
            SyncValidationError: If the resulting sync would be invalid
        """
        changes = sync_update.model_dump(exclude_unset=True)

        with self.db_service.transaction() as session:
            sync_repo = get_sync_repository(session)
            sync = sync_repo.get_by_id(sync_id)
            if sync is None:
                raise NotFoundError("Sync", sync_id)

            merged = {
                "source_id": sync.source_id,
                "destination_id": sync.destination_id,
                "model_id": sync.model_id,
                "stream_name": sync.stream_name,
                "sync_mode": sync.sync_mode,
                "cursor_field": sync.cursor_field,
            }
            merged.update({field: getattr(sync, field) for field in SCHEDULE_FIELDS})
            merged.update(changes)

            if any(field in changes for field in SCHEDULE_FIELDS):
                # Fields the resulting type does not use are cleared
                changes.update(self.schedule_resolver.normalize(merged))

            if "sync_mode" in changes and changes["sync_mode"] is not None:
                changes["sync_mode"] = SyncMode(changes["sync_mode"]).value

            errors = self._validate_references(session, merged)
            if errors:
                raise SyncValidationError(errors)

            sync_repo.update(sync, changes)
            session.flush()
            return SyncResponse.model_validate(sync)

    def discard_sync(self, sync_id: int) -> DiscardResult:
        """Soft-delete a sync, its runs and detach its records."""
        return self.discard_propagator.discard_sync(sync_id)

    def disable_sync(self, sync_id: int) -> SyncResponse:
        """Stop scheduling a sync without discarding it."""
        with self.db_service.transaction() as session:
            sync_repo = get_sync_repository(session)
            sync = sync_repo.get_by_id(sync_id)
            if sync is None:
                raise NotFoundError("Sync", sync_id)
            sync_repo.set_status(sync, SyncStatus.DISABLED)
            self.logger.info("Sync disabled", sync_id=sync_id)
            return SyncResponse.model_validate(sync)

    @log_async_execution_time
    async def activate_sync(self, sync_id: int) -> SyncResponse:
        """Check the destination and re-enable the sync.

        Raises:
            NotFoundError: If the sync does not exist or is discarded
            ConnectivityError: If the destination check fails; the sync is
                left disabled
        """
        with self.db_service.transaction() as session:
            sync = get_sync_repository(session).get_by_id(sync_id)
            if sync is None:
                raise NotFoundError("Sync", sync_id)
            destination_name = sync.destination.connector_name
            destination_config = dict(sync.destination.configuration or {})

        destination = self.connector_factory.create_destination(destination_name, destination_config)
        try:
            reachable = await destination.check()
        finally:
            await destination.close()

        with self.db_service.transaction() as session:
            sync_repo = get_sync_repository(session)
            sync = sync_repo.get_by_id(sync_id)
            if sync is None:
                raise NotFoundError("Sync", sync_id)

            if not reachable:
                sync_repo.set_status(sync, SyncStatus.DISABLED)
            elif SyncStatus(sync.status) == SyncStatus.DISABLED:
                sync_repo.set_status(sync, SyncStatus.PENDING)
            response = SyncResponse.model_validate(sync)

        # Raised after commit so the sync stays disabled
        if not reachable:
            self.logger.error("Sync activation failed", sync_id=sync_id, destination=destination_name)
            raise ConnectivityError(f"Destination of sync {sync_id} is not reachable")

        self.logger.info("Sync activated", sync_id=sync_id)
        return response

    # Run triggers

    def create_sync_run(
        self,
        sync_id: int,
        sync_run_type: SyncRunType = SyncRunType.GENERAL
    ) -> SyncRunResponse:
        """Create a ``pending`` run for a kept sync.

        Raises:
            NotFoundError: If the sync does not exist or is discarded
        """
        with self.db_service.transaction() as session:
            sync = get_sync_repository(session).get_by_id(sync_id)
            if sync is None:
                raise NotFoundError("Sync", sync_id)
            sync_run = get_sync_run_repository(session).create(sync, SyncRunType(sync_run_type))
            return SyncRunResponse.model_validate(sync_run)

    async def cancel_run(self, sync_run_id: int) -> SyncRunResponse:
        return await self.run_state.apply(sync_run_id, SyncRunEvent.CANCEL)

    async def abort_run(self, sync_run_id: int, error: Optional[str] = None) -> SyncRunResponse:
        return await self.run_state.apply(sync_run_id, SyncRunEvent.ABORT, error=error)

    async def pause_run(self, sync_run_id: int) -> SyncRunResponse:
        return await self.run_state.apply(sync_run_id, SyncRunEvent.PAUSE)

    async def resume_run(self, sync_run_id: int) -> SyncRunResponse:
        """Return a paused run to ``pending`` so it is picked up again."""
        return await self.run_state.apply(sync_run_id, SyncRunEvent.RESUME)

    async def execute_run(self, sync_run_id: int) -> RunSummary:
        """Execute an existing pending run to completion."""
        return await self.executor.execute(sync_run_id)

    @log_async_execution_time
    async def run_sync_now(
        self,
        sync_id: int,
        sync_run_type: SyncRunType = SyncRunType.GENERAL
    ) -> RunSummary:
        """Create a run for ``sync_id`` and execute it immediately."""
        sync_run = self.create_sync_run(sync_id, sync_run_type)
        return await self.execute_run(sync_run.id)

    # Status

    def get_sync_status(self, sync_id: int) -> Dict[str, Any]:
        """Summary of a sync and its latest run."""
        with self.db_service.transaction() as session:
            sync = get_sync_repository(session).get_by_id(sync_id, DiscardScope.WITH_DISCARDED)
            if sync is None:
                raise NotFoundError("Sync", sync_id)

            run_repo = get_sync_run_repository(session)
            latest = run_repo.latest(sync_id)
            next_trigger = None
            if sync.discarded_at is None and SyncStatus(sync.status) != SyncStatus.DISABLED:
                next_trigger = self.schedule_resolver.next_trigger_at(sync, run_repo.schedule_anchor(sync_id))

            return {
                "sync_id": sync.id,
                "status": sync.status,
                "schedule_type": sync.schedule_type,
                "discarded": sync.discarded_at is not None,
                "current_cursor_field": sync.current_cursor_field,
                "next_trigger_at": next_trigger,
                "has_active_run": run_repo.has_active_run(sync_id),
                "last_run_id": latest.id if latest else None,
                "last_run_status": latest.status if latest else None,
                "last_run_successful_rows": latest.successful_rows if latest else 0,
                "last_run_failed_rows": latest.failed_rows if latest else 0,
                "checked_at": utcnow()
            }

    async def health_check(self) -> Dict[str, Any]:
        """Perform a health check on the orchestrator's dependencies."""
        health = {
            "status": "healthy",
            "timestamp": utcnow(),
            "database": False,
            "syncs": 0,
            "active_runs": 0,
            "issues": []
        }

        health["database"] = self.db_service.db_manager.ping()
        if not health["database"]:
            health["status"] = "unhealthy"
            health["issues"].append("Database connection failed")
            return health

        health["syncs"] = len(self.db_service.list_syncs())
        health["active_runs"] = len(self.db_service.list_active_runs())
        if health["syncs"] == 0:
            health["status"] = "warning"
            health["issues"].append("No syncs configured")

        return health

    async def close(self):
        await self.dispatcher.close()
