"""Database operations and repository classes."""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Iterable

from sqlalchemy import desc, func, update
from sqlalchemy.orm import Query, Session

from .models import (
    ACTIVE_RUN_STATUSES,
    ConnectorModel, QueryModel, SyncModel, SyncRunModel, SyncRecordModel,
    ConnectorCreate, ModelCreate,
    ScheduleType, SyncStatus, SyncRunStatus, SyncRunType,
    utcnow
)
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("database.operations")


class DiscardScope(str, Enum):
    """Which rows a query sees with respect to soft deletion."""
    KEPT = "kept"
    WITH_DISCARDED = "with_discarded"
    DISCARDED_ONLY = "discarded_only"


def apply_discard_scope(query: Query, model, scope: DiscardScope) -> Query:
    """Filter a query on ``model.discarded_at`` according to ``scope``."""
    scope = DiscardScope(scope)
    if scope == DiscardScope.KEPT:
        return query.filter(model.discarded_at.is_(None))
    if scope == DiscardScope.DISCARDED_ONLY:
        return query.filter(model.discarded_at.isnot(None))
    return query


class ConnectorRepository:
    """Repository for connector operations."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def create(self, connector_data: ConnectorCreate) -> ConnectorModel:
        """Create a new connector."""
        connector = ConnectorModel(
            workspace_id=connector_data.workspace_id,
            name=connector_data.name,
            connector_type=connector_data.connector_type.value,
            connector_name=connector_data.connector_name,
            configuration=connector_data.configuration,
            catalog=connector_data.catalog
        )

        self.session.add(connector)
        self.session.flush()

        logger.info(
            "Connector created",
            connector_id=connector.id,
            connector_type=connector.connector_type,
            connector_name=connector.connector_name
        )

        return connector

    def get_by_id(self, connector_id: int) -> Optional[ConnectorModel]:
        """Get connector by ID."""
        return self.session.get(ConnectorModel, connector_id)

    def get_by_name(self, workspace_id: int, name: str) -> Optional[ConnectorModel]:
        """Get connector by workspace and name."""
        return self.session.query(ConnectorModel).filter(
            ConnectorModel.workspace_id == workspace_id,
            ConnectorModel.name == name
        ).first()


class QueryModelRepository:
    """Repository for model operations."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def create(self, model_data: ModelCreate) -> QueryModel:
        """Create a new model."""
        model = QueryModel(
            workspace_id=model_data.workspace_id,
            connector_id=model_data.connector_id,
            name=model_data.name,
            query=model_data.query,
            query_type=model_data.query_type.value,
            primary_key=model_data.primary_key
        )

        self.session.add(model)
        self.session.flush()

        logger.info("Model created", model_id=model.id, connector_id=model.connector_id)

        return model

    def get_by_id(self, model_id: int) -> Optional[QueryModel]:
        """Get model by ID."""
        return self.session.get(QueryModel, model_id)

    def get_by_name(self, workspace_id: int, name: str) -> Optional[QueryModel]:
        """Get model by workspace and name."""
        return self.session.query(QueryModel).filter(
            QueryModel.workspace_id == workspace_id,
            QueryModel.name == name
        ).first()


class SyncRepository:
    """Repository for sync operations."""

    def __init__(self, session: Session):
        self.session = session

    def _query(self, scope: DiscardScope = DiscardScope.KEPT) -> Query:
        return apply_discard_scope(self.session.query(SyncModel), SyncModel, scope)

    @log_execution_time
    def create(self, fields: Dict[str, Any]) -> SyncModel:
        """Create a sync from already validated fields."""
        sync = SyncModel(**fields)

        self.session.add(sync)
        self.session.flush()

        logger.info(
            "Sync created",
            sync_id=sync.id,
            schedule_type=sync.schedule_type,
            stream_name=sync.stream_name
        )

        return sync

    def get_by_id(self, sync_id: int, scope: DiscardScope = DiscardScope.KEPT) -> Optional[SyncModel]:
        """Get sync by ID within a discard scope."""
        return self._query(scope).filter(SyncModel.id == sync_id).first()

    @log_execution_time
    def list(
        self,
        scope: DiscardScope = DiscardScope.KEPT,
        workspace_id: Optional[int] = None
    ) -> List[SyncModel]:
        """List syncs within a discard scope."""
        query = self._query(scope)
        if workspace_id is not None:
            query = query.filter(SyncModel.workspace_id == workspace_id)
        return query.order_by(SyncModel.id).all()

    @log_execution_time
    def list_schedulable(self) -> List[SyncModel]:
        """Kept, enabled syncs with an automatic schedule."""
        return self._query().filter(
            SyncModel.schedule_type != ScheduleType.MANUAL.value,
            SyncModel.status != SyncStatus.DISABLED.value
        ).order_by(SyncModel.id).all()

    def update(self, sync: SyncModel, fields: Dict[str, Any]) -> SyncModel:
        """Apply already validated fields to a sync."""
        for field, value in fields.items():
            setattr(sync, field, value)
        sync.updated_at = utcnow()

        logger.info("Sync updated", sync_id=sync.id, updated_fields=sorted(fields))

        return sync

    def set_status(self, sync: SyncModel, status: SyncStatus) -> None:
        sync.status = status.value
        sync.updated_at = utcnow()

    def discard(self, sync: SyncModel, discarded_at: datetime) -> None:
        sync.discarded_at = discarded_at
        sync.updated_at = discarded_at


class SyncRunRepository:
    """Repository for sync run operations."""

    def __init__(self, session: Session):
        self.session = session

    def _query(self, scope: DiscardScope = DiscardScope.KEPT) -> Query:
        return apply_discard_scope(self.session.query(SyncRunModel), SyncRunModel, scope)

    @log_execution_time
    def create(
        self,
        sync: SyncModel,
        sync_run_type: SyncRunType = SyncRunType.GENERAL,
        status: SyncRunStatus = SyncRunStatus.PENDING
    ) -> SyncRunModel:
        """Create a run, copying connector and model ids from the sync."""
        sync_run = SyncRunModel(
            sync_id=sync.id,
            status=SyncRunStatus(status).value,
            sync_run_type=SyncRunType(sync_run_type).value,
            workspace_id=sync.workspace_id,
            source_id=sync.source_id,
            destination_id=sync.destination_id,
            model_id=sync.model_id
        )

        self.session.add(sync_run)
        self.session.flush()

        logger.info(
            "Sync run created",
            sync_run_id=sync_run.id,
            sync_id=sync.id,
            sync_run_type=sync_run.sync_run_type,
            status=sync_run.status
        )

        return sync_run

    def get_by_id(self, sync_run_id: int, scope: DiscardScope = DiscardScope.KEPT) -> Optional[SyncRunModel]:
        """Get sync run by ID within a discard scope."""
        return self._query(scope).filter(SyncRunModel.id == sync_run_id).first()

    @log_execution_time
    def list_for_sync(
        self,
        sync_id: int,
        scope: DiscardScope = DiscardScope.KEPT,
        limit: Optional[int] = None
    ) -> List[SyncRunModel]:
        """Runs of one sync, newest first."""
        query = self._query(scope).filter(SyncRunModel.sync_id == sync_id)
        query = query.order_by(desc(SyncRunModel.id))
        if limit:
            query = query.limit(limit)
        return query.all()

    @log_execution_time
    def list(self, scope: DiscardScope = DiscardScope.KEPT) -> List[SyncRunModel]:
        return self._query(scope).order_by(SyncRunModel.id).all()

    @log_execution_time
    def active(self, scope: DiscardScope = DiscardScope.KEPT) -> List[SyncRunModel]:
        """Runs in a non-terminal, non-paused state."""
        return self._query(scope).filter(
            SyncRunModel.status.in_([status.value for status in ACTIVE_RUN_STATUSES])
        ).order_by(SyncRunModel.id).all()

    def has_active_run(self, sync_id: int) -> bool:
        return self._query().filter(
            SyncRunModel.sync_id == sync_id,
            SyncRunModel.status.in_([status.value for status in ACTIVE_RUN_STATUSES])
        ).count() > 0

    def schedule_anchor(self, sync_id: int) -> Optional[SyncRunModel]:
        """Most recent finished general run; the next scheduled trigger is computed from it.

        Test runs and runs still in flight do not move the schedule.
        """
        return self._query(DiscardScope.WITH_DISCARDED).filter(
            SyncRunModel.sync_id == sync_id,
            SyncRunModel.sync_run_type == SyncRunType.GENERAL.value,
            SyncRunModel.finished_at.isnot(None)
        ).order_by(desc(SyncRunModel.finished_at)).first()

    def latest(self, sync_id: int) -> Optional[SyncRunModel]:
        """Most recent run of a sync regardless of state."""
        return self._query(DiscardScope.WITH_DISCARDED).filter(
            SyncRunModel.sync_id == sync_id
        ).order_by(desc(SyncRunModel.id)).first()

    def started_before(self, cutoff: datetime) -> List[SyncRunModel]:
        """Active runs created before ``cutoff``."""
        return self._query().filter(
            SyncRunModel.status.in_([status.value for status in ACTIVE_RUN_STATUSES]),
            SyncRunModel.created_at < cutoff
        ).all()

    def increment_counters(self, sync_run_id: int, successful_rows: int = 0, failed_rows: int = 0) -> None:
        """Atomically add chunk results to the run counters.

        Issued as a single UPDATE so it does not race with status transitions
        on the version column.
        """
        self.session.execute(
            update(SyncRunModel)
            .where(SyncRunModel.id == sync_run_id)
            .values(
                successful_rows=SyncRunModel.successful_rows + successful_rows,
                failed_rows=SyncRunModel.failed_rows + failed_rows,
                updated_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )

    def set_fields(self, sync_run_id: int, **fields) -> None:
        """Write executor-owned columns without touching the status version."""
        fields.setdefault("updated_at", utcnow())
        self.session.execute(
            update(SyncRunModel)
            .where(SyncRunModel.id == sync_run_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )

    def discard_for_sync(self, sync_id: int, discarded_at: datetime) -> List[int]:
        """Stamp every kept run of a sync and return their ids."""
        runs = self._query().filter(SyncRunModel.sync_id == sync_id).all()
        for run in runs:
            run.discarded_at = discarded_at
        self.session.flush()
        return [run.id for run in runs]

    def count_by_status(self) -> Dict[str, int]:
        rows = self._query().with_entities(
            SyncRunModel.status, func.count(SyncRunModel.id)
        ).group_by(SyncRunModel.status).all()
        return {status: count for status, count in rows}


class SyncRecordRepository:
    """Repository for sync record operations."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_primary_key(self, sync_id: int, primary_key: str) -> Optional[SyncRecordModel]:
        return self.session.query(SyncRecordModel).filter(
            SyncRecordModel.sync_id == sync_id,
            SyncRecordModel.primary_key == primary_key
        ).first()

    def upsert(
        self,
        sync_id: int,
        sync_run_id: Optional[int],
        fingerprint: str,
        primary_key: Optional[str],
        record: Optional[Dict[str, Any]] = None
    ) -> SyncRecordModel:
        """Insert a record fingerprint, or refresh the one stored for the same key."""
        existing = None
        if primary_key is not None:
            existing = self.get_by_primary_key(sync_id, primary_key)

        if existing:
            existing.fingerprint = fingerprint
            existing.sync_run_id = sync_run_id
            existing.record = record
            existing.updated_at = utcnow()
            return existing

        sync_record = SyncRecordModel(
            sync_id=sync_id,
            sync_run_id=sync_run_id,
            fingerprint=fingerprint,
            primary_key=primary_key,
            record=record
        )
        self.session.add(sync_record)
        self.session.flush()
        return sync_record

    def list_for_sync(self, sync_id: int) -> List[SyncRecordModel]:
        return self.session.query(SyncRecordModel).filter(
            SyncRecordModel.sync_id == sync_id
        ).order_by(SyncRecordModel.id).all()

    def list_for_run(self, sync_run_id: int) -> List[SyncRecordModel]:
        return self.session.query(SyncRecordModel).filter(
            SyncRecordModel.sync_run_id == sync_run_id
        ).order_by(SyncRecordModel.id).all()

    def detach_runs(self, sync_run_ids: Iterable[int]) -> int:
        """Clear ``sync_run_id`` on records of the given runs. Returns the row count."""
        sync_run_ids = list(sync_run_ids)
        if not sync_run_ids:
            return 0

        result = self.session.execute(
            update(SyncRecordModel)
            .where(SyncRecordModel.sync_run_id.in_(sync_run_ids))
            .values(sync_run_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def count(self) -> int:
        return self.session.query(func.count(SyncRecordModel.id)).scalar() or 0


# Repository factory functions

def get_connector_repository(session: Session) -> ConnectorRepository:
    return ConnectorRepository(session)


def get_model_repository(session: Session) -> QueryModelRepository:
    return QueryModelRepository(session)


def get_sync_repository(session: Session) -> SyncRepository:
    return SyncRepository(session)


def get_sync_run_repository(session: Session) -> SyncRunRepository:
    return SyncRunRepository(session)


def get_sync_record_repository(session: Session) -> SyncRecordRepository:
    return SyncRecordRepository(session)
