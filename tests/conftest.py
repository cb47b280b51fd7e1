"""Shared fixtures: in-memory database, fake connectors and a seeded sync."""

from typing import Any, Dict, List, Optional

import pytest

from syncflow.config.settings import (
    AppSettings,
    DatabaseSettings,
    ExecutorSettings,
    LoggingSettings,
    NotificationSettings,
    SchedulingSettings,
    reset_settings
)
from syncflow.connectors import (
    DestinationConnector,
    DestinationWriteError,
    ExtractionError,
    ExtractResult,
    Record,
    SourceConnector,
    WriteResult
)
from syncflow.core import NotificationDispatcher, Notifier, SyncOrchestrator
from syncflow.database import (
    ConnectorCreate,
    ConnectorType,
    DatabaseService,
    ModelCreate,
    SyncCreate,
    close_database,
    init_database
)


DESTINATION_URL = "https://crm.example.com/api/records"


class FakeSource(SourceConnector):
    """In-memory source; optionally fails the query or the stream.

    ``reported_count`` overrides the row count returned with the stream,
    like a warehouse gaining rows between the count and the reads.
    """

    def __init__(
        self,
        records: Optional[List[Dict[str, Any]]] = None,
        fail_query: Optional[Exception] = None,
        fail_after: Optional[int] = None,
        fail_error: Optional[Exception] = None,
        reported_count: Optional[int] = None
    ):
        super().__init__({})
        self.records = [Record(record) for record in records or []]
        self.fail_query = fail_query
        self.fail_after = fail_after
        self.fail_error = fail_error or ExtractionError("connection reset by peer")
        self.reported_count = reported_count
        self.descriptors = []
        self.closed = False

    async def query(self, descriptor):
        self.descriptors.append(descriptor)
        if self.fail_query is not None:
            raise self.fail_query
        count = len(self.records) if self.reported_count is None else self.reported_count
        return ExtractResult(records=self._stream(), total_row_count=count)

    async def _stream(self):
        for index, record in enumerate(self.records):
            if self.fail_after is not None and index == self.fail_after:
                raise self.fail_error
            yield record

    async def close(self):
        self.closed = True


class FakeDestination(DestinationConnector):
    """Collects payloads; write calls listed in ``fail_calls`` are rejected (1-based)."""

    def __init__(self, fail_calls=(), raise_calls=(), on_write=None):
        super().__init__({"destination_url": DESTINATION_URL})
        self.fail_calls = set(fail_calls)
        self.raise_calls = set(raise_calls)
        self.on_write = on_write
        self.reachable = True
        self.calls = []
        self.closed = False

    async def write(self, url, method, payload):
        self.calls.append((url, method, payload))
        call_number = len(self.calls)
        if self.on_write is not None:
            await self.on_write(call_number)
        if call_number in self.raise_calls:
            raise DestinationWriteError("Bad gateway", status_code=502)
        if call_number in self.fail_calls:
            return WriteResult(success=False, status_code=500, error="HTTP 500: rejected")
        return WriteResult(success=True, status_code=200)

    async def check(self, url=None):
        return self.reachable

    async def close(self):
        self.closed = True

    @property
    def written_records(self) -> List[Dict[str, Any]]:
        return [
            item["fields"]
            for _, _, payload in self.calls
            for item in payload["records"]
        ]


class FakeConnectorFactory:
    """Hands out the same fake instances for every run."""

    def __init__(self, source: FakeSource, destination: FakeDestination):
        self.source = source
        self.destination = destination

    def create_source(self, connector_name, configuration, **kwargs):
        return self.source

    def create_destination(self, connector_name, configuration, **kwargs):
        return self.destination


class RecordingNotifier(Notifier):
    """Keeps every payload it is asked to send."""

    def __init__(self):
        self.sent = []

    async def send(self, payload):
        self.sent.append(payload)

    @property
    def variants(self) -> List[str]:
        return [payload.variant.value for payload in self.sent]


def make_records(count: int, start: int = 1) -> List[Dict[str, Any]]:
    return [
        {"id": i, "email": f"user{i}@example.com", "updated_at": f"2024-01-{(i % 28) + 1:02d}"}
        for i in range(start, start + count)
    ]


@pytest.fixture
def settings():
    """Test settings: in-memory database, chunks of 10, no log file."""
    app_settings = reset_settings(AppSettings(
        database=DatabaseSettings(url="sqlite://"),
        executor=ExecutorSettings(chunk_size=10),
        scheduling=SchedulingSettings(tick_seconds=1, max_concurrent_runs=2),
        notifications=NotificationSettings(recipients=["ops@example.com"], host="https://app.example.com"),
        logging=LoggingSettings(level="WARNING", format="console", file_path=None)
    ))
    yield app_settings
    reset_settings()


@pytest.fixture
def db_service(settings):
    manager = init_database("sqlite://")
    yield DatabaseService(manager)
    close_database()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(settings, notifier):
    return NotificationDispatcher(notifier=notifier, settings=settings.notifications)


@pytest.fixture
def source():
    return FakeSource(make_records(25))


@pytest.fixture
def destination():
    return FakeDestination()


@pytest.fixture
def connector_factory(source, destination):
    return FakeConnectorFactory(source, destination)


@pytest.fixture
def orchestrator(db_service, dispatcher, connector_factory):
    return SyncOrchestrator(db_service, dispatcher, connector_factory)


@pytest.fixture
def workspace(db_service):
    """Source connector, destination connector with a catalog, and a model."""
    source_connector = db_service.create_connector(ConnectorCreate(
        workspace_id=1,
        name="warehouse",
        connector_type=ConnectorType.SOURCE,
        connector_name="sql",
        configuration={"url": "sqlite://"}
    ))
    destination_connector = db_service.create_connector(ConnectorCreate(
        workspace_id=1,
        name="crm",
        connector_type=ConnectorType.DESTINATION,
        connector_name="http",
        configuration={"destination_url": DESTINATION_URL},
        catalog={"streams": [{"name": "contacts", "request_method": "POST"}]}
    ))
    model = db_service.create_model(ModelCreate(
        workspace_id=1,
        connector_id=source_connector.id,
        name="users",
        query="SELECT * FROM users",
        primary_key="id"
    ))
    return {
        "source_id": source_connector.id,
        "destination_id": destination_connector.id,
        "model_id": model.id
    }


@pytest.fixture
def make_sync(orchestrator, workspace):
    """Create a sync over the seeded workspace; keyword arguments override fields."""
    def _make_sync(**overrides):
        fields = {"workspace_id": 1, "stream_name": "contacts", **workspace, **overrides}
        return orchestrator.create_sync(SyncCreate(**fields))
    return _make_sync
