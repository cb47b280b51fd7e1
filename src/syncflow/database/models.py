"""Database models for SyncFlow."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Text, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from pydantic import BaseModel, ConfigDict, Field


Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ConnectorType(str, Enum):
    """Role of a connector in a sync."""
    SOURCE = "source"
    DESTINATION = "destination"


class QueryType(str, Enum):
    """How a model describes the rows to extract."""
    RAW_SQL = "raw_sql"
    TABLE_SELECTOR = "table_selector"


class ScheduleType(str, Enum):
    """How a sync is triggered."""
    MANUAL = "manual"
    INTERVAL = "interval"
    CRON_EXPRESSION = "cron_expression"


class IntervalUnit(str, Enum):
    """Units accepted for interval schedules."""
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class SyncMode(str, Enum):
    """Extraction mode of a sync."""
    FULL_REFRESH = "full_refresh"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    """Health of a sync as seen from its latest general run."""
    PENDING = "pending"
    HEALTHY = "healthy"
    FAILED = "failed"
    DISABLED = "disabled"


class SyncRunStatus(str, Enum):
    """Lifecycle states of a sync run."""
    PENDING = "pending"
    STARTED = "started"
    QUERYING = "querying"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PAUSED = "paused"
    FAILED = "failed"
    CANCELED = "canceled"


# Non-terminal, non-paused run states
ACTIVE_RUN_STATUSES = frozenset({
    SyncRunStatus.PENDING,
    SyncRunStatus.STARTED,
    SyncRunStatus.QUERYING,
    SyncRunStatus.QUEUED,
    SyncRunStatus.IN_PROGRESS,
})


class SyncRunType(str, Enum):
    """Why a sync run was created."""
    GENERAL = "general"
    TEST = "test"


# SQLAlchemy Models (Database Tables)

class ConnectorModel(Base):
    """A configured source or destination connector."""

    __tablename__ = "connectors"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    connector_type = Column(String(20), nullable=False, index=True)
    connector_name = Column(String(100), nullable=False)  # factory key, e.g. "sql", "http"
    configuration = Column(JSON, nullable=False, default=dict)
    catalog = Column(JSON, nullable=True)  # {"streams": [{"name": ..., "request_method": ...}]}
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    models = relationship("QueryModel", back_populates="connector")

    def stream(self, stream_name: str) -> Optional[Dict[str, Any]]:
        """Look up a catalog stream by name."""
        for stream in (self.catalog or {}).get("streams", []):
            if stream.get("name") == stream_name:
                return stream
        return None

    def __repr__(self):
        return f"<ConnectorModel(id={self.id}, name='{self.name}', type='{self.connector_type}')>"


class QueryModel(Base):
    """A query or table selection over a source connector."""

    __tablename__ = "models"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    connector_id = Column(Integer, ForeignKey("connectors.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    query = Column(Text, nullable=False)
    query_type = Column(String(20), default=QueryType.RAW_SQL.value, nullable=False)
    primary_key = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    connector = relationship("ConnectorModel", back_populates="models")

    def __repr__(self):
        return f"<QueryModel(id={self.id}, name='{self.name}')>"


class SyncModel(Base):
    """A source to destination pairing over one model."""

    __tablename__ = "syncs"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    source_id = Column(Integer, ForeignKey("connectors.id"), nullable=False, index=True)
    destination_id = Column(Integer, ForeignKey("connectors.id"), nullable=False, index=True)
    model_id = Column(Integer, ForeignKey("models.id"), nullable=False, index=True)

    # Schedule; only the group matching schedule_type is populated
    schedule_type = Column(String(20), default=ScheduleType.MANUAL.value, nullable=False)
    sync_interval = Column(Integer, nullable=True)
    sync_interval_unit = Column(String(10), nullable=True)
    cron_expression = Column(String(100), nullable=True)

    stream_name = Column(String(255), nullable=False)
    sync_mode = Column(String(20), default=SyncMode.FULL_REFRESH.value, nullable=False)
    cursor_field = Column(String(255), nullable=True)
    current_cursor_field = Column(String(255), nullable=True)  # incremental watermark
    configuration = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), default=SyncStatus.PENDING.value, nullable=False)

    discarded_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    source = relationship("ConnectorModel", foreign_keys=[source_id])
    destination = relationship("ConnectorModel", foreign_keys=[destination_id])
    model = relationship("QueryModel")
    sync_runs = relationship("SyncRunModel", back_populates="sync")

    def __repr__(self):
        return f"<SyncModel(id={self.id}, schedule_type='{self.schedule_type}', status='{self.status}')>"


class SyncRunModel(Base):
    """One execution attempt of a sync."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    sync_id = Column(Integer, ForeignKey("syncs.id"), nullable=False, index=True)
    status = Column(String(20), default=SyncRunStatus.PENDING.value, nullable=False, index=True)
    sync_run_type = Column(String(10), default=SyncRunType.GENERAL.value, nullable=False)

    # Counters
    total_query_rows = Column(Integer, default=0, nullable=False)
    total_rows = Column(Integer, default=0, nullable=False)
    successful_rows = Column(Integer, default=0, nullable=False)
    failed_rows = Column(Integer, default=0, nullable=False)

    # Copied from the sync at creation so history survives sync edits
    workspace_id = Column(Integer, nullable=False)
    source_id = Column(Integer, nullable=False)
    destination_id = Column(Integer, nullable=False)
    model_id = Column(Integer, nullable=False)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)

    lock_version = Column(Integer, nullable=False, default=1)
    discarded_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    sync = relationship("SyncModel", back_populates="sync_runs")
    sync_records = relationship("SyncRecordModel", back_populates="sync_run")

    __mapper_args__ = {"version_id_col": lock_version}

    def __repr__(self):
        return f"<SyncRunModel(id={self.id}, sync_id={self.sync_id}, status='{self.status}')>"


class SyncRecordModel(Base):
    """Fingerprint of one record written to a destination."""

    __tablename__ = "sync_records"
    __table_args__ = (
        UniqueConstraint("sync_id", "primary_key", name="uq_sync_records_sync_primary_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sync_id = Column(Integer, ForeignKey("syncs.id"), nullable=False, index=True)
    sync_run_id = Column(Integer, ForeignKey("sync_runs.id"), nullable=True, index=True)
    fingerprint = Column(String(64), nullable=False, index=True)
    primary_key = Column(String(255), nullable=True)
    record = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    sync_run = relationship("SyncRunModel", back_populates="sync_records")

    def __repr__(self):
        return f"<SyncRecordModel(id={self.id}, sync_id={self.sync_id}, primary_key='{self.primary_key}')>"


# Pydantic Models (API/Transfer Objects)

class ConnectorCreate(BaseModel):
    """Pydantic model for creating a connector."""
    workspace_id: int
    name: str
    connector_type: ConnectorType
    connector_name: str
    configuration: Dict[str, Any] = Field(default_factory=dict)
    catalog: Optional[Dict[str, Any]] = None


class ConnectorResponse(BaseModel):
    """Pydantic model for connector response."""
    id: int
    workspace_id: int
    name: str
    connector_type: ConnectorType
    connector_name: str
    configuration: Dict[str, Any]
    catalog: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class ModelCreate(BaseModel):
    """Pydantic model for creating a model."""
    workspace_id: int
    connector_id: int
    name: str
    query: str
    query_type: QueryType = QueryType.RAW_SQL
    primary_key: Optional[str] = None


class ModelResponse(BaseModel):
    """Pydantic model for model response."""
    id: int
    workspace_id: int
    connector_id: int
    name: str
    query: str
    query_type: QueryType
    primary_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class SyncCreate(BaseModel):
    """Pydantic model for creating a sync.

    ``schedule_type`` is kept as a plain string so an unknown value reaches
    the schedule resolver and is reported as a field error.
    """
    workspace_id: int
    source_id: int
    destination_id: int
    model_id: int
    stream_name: str
    schedule_type: str = ScheduleType.MANUAL.value
    sync_interval: Optional[int] = None
    sync_interval_unit: Optional[str] = None
    cron_expression: Optional[str] = None
    sync_mode: SyncMode = SyncMode.FULL_REFRESH
    cursor_field: Optional[str] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(protected_namespaces=())


class SyncUpdate(BaseModel):
    """Pydantic model for updating a sync."""
    stream_name: Optional[str] = None
    schedule_type: Optional[str] = None
    sync_interval: Optional[int] = None
    sync_interval_unit: Optional[str] = None
    cron_expression: Optional[str] = None
    sync_mode: Optional[SyncMode] = None
    cursor_field: Optional[str] = None
    configuration: Optional[Dict[str, Any]] = None


class SyncResponse(BaseModel):
    """Pydantic model for sync response."""
    id: int
    workspace_id: int
    source_id: int
    destination_id: int
    model_id: int
    schedule_type: ScheduleType
    sync_interval: Optional[int] = None
    sync_interval_unit: Optional[IntervalUnit] = None
    cron_expression: Optional[str] = None
    stream_name: str
    sync_mode: SyncMode
    cursor_field: Optional[str] = None
    current_cursor_field: Optional[str] = None
    configuration: Dict[str, Any]
    status: SyncStatus
    discarded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class SyncRunResponse(BaseModel):
    """Pydantic model for sync run response."""
    id: int
    sync_id: int
    status: SyncRunStatus
    sync_run_type: SyncRunType
    total_query_rows: int
    total_rows: int
    successful_rows: int
    failed_rows: int
    workspace_id: int
    source_id: int
    destination_id: int
    model_id: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    lock_version: int
    discarded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class SyncRecordResponse(BaseModel):
    """Pydantic model for sync record response."""
    id: int
    sync_id: int
    sync_run_id: Optional[int] = None
    fingerprint: str
    primary_key: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class DatabaseStats(BaseModel):
    """Row counts per table, used by the status endpoint."""
    syncs: int
    sync_runs: int
    active_sync_runs: int
    sync_records: int
    discarded_syncs: int = 0
    runs_by_status: Dict[str, int] = Field(default_factory=dict)
