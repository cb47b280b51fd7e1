"""Chunked extract-and-write pipeline for a single sync run."""

import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..config.settings import ExecutorSettings, get_settings
from ..connectors import (
    ConnectorFactory,
    DestinationConnector,
    ExtractionError,
    QueryDescriptor,
    Record,
    SourceConnector
)
from ..database import (
    DatabaseService,
    DiscardScope,
    QueryType,
    SyncMode,
    SyncRunStatus,
    SyncRunType,
    get_sync_repository,
    get_sync_run_repository
)
from ..exceptions import NotFoundError, SyncFlowError
from ..utils.logging import bind_run_context, log_async_execution_time
from .record_tracker import RecordTracker
from .run_state import RunStateManager
from .state_machine import InvalidTransition, SyncRunEvent, is_terminal


@dataclass
class SyncContext:
    """Everything the executor reads from the sync, resolved up front."""

    sync_id: int
    sync_run_id: int
    sync_run_type: SyncRunType
    source_connector: str
    source_configuration: Dict[str, Any]
    destination_connector: str
    destination_configuration: Dict[str, Any]
    destination_url: Optional[str]
    request_method: str
    query: str
    query_type: QueryType
    primary_key: Optional[str]
    sync_mode: SyncMode
    cursor_field: Optional[str]
    current_cursor_field: Optional[str]

    @property
    def is_incremental(self) -> bool:
        return self.sync_mode == SyncMode.INCREMENTAL and bool(self.cursor_field)

    @property
    def advances_cursor(self) -> bool:
        return self.is_incremental and self.sync_run_type == SyncRunType.GENERAL

    def descriptor(self) -> QueryDescriptor:
        return QueryDescriptor(
            query=self.query,
            query_type=self.query_type,
            primary_key=self.primary_key,
            cursor_field=self.cursor_field if self.is_incremental else None,
            current_cursor=self.current_cursor_field if self.is_incremental else None
        )


@dataclass
class RunSummary:
    """Result of executing one sync run."""

    sync_run_id: int
    status: SyncRunStatus
    total_query_rows: int = 0
    total_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    skipped_rows: int = 0
    error_message: Optional[str] = None
    interrupted: bool = False
    cursor: Optional[str] = None
    duration: Optional[float] = None

    @property
    def result(self) -> Dict[str, int]:
        """The artifact stored on the run."""
        return {"successful": self.successful_rows, "failed": self.failed_rows}


class _RunStopped(Exception):
    """Internal signal: the run was moved out of the executor's hands."""


class ChunkedSyncExecutor:
    """Drives one sync run from ``pending`` to a terminal state.

    Records are pulled lazily from the source and written to the
    destination in sequential chunks. A failed chunk only adds to
    ``failed_rows``; the loop goes on with the next one. Between chunks the
    executor re-reads the run and stops issuing writes once someone else
    cancelled, aborted, paused or discarded it.
    """

    def __init__(
        self,
        database_service: DatabaseService,
        run_state: RunStateManager,
        record_tracker: Optional[RecordTracker] = None,
        connector_factory=ConnectorFactory,
        settings: Optional[ExecutorSettings] = None
    ):
        self.db_service = database_service
        self.run_state = run_state
        self.record_tracker = record_tracker or RecordTracker(database_service)
        self.connector_factory = connector_factory
        self.settings = settings or get_settings().executor

    @property
    def chunk_size(self) -> int:
        return self.settings.chunk_size

    def load_context(self, sync_run_id: int) -> SyncContext:
        """Resolve the run's sync, connectors and model.

        Raises:
            NotFoundError: If the run, its sync or a referenced definition is missing
            SyncFlowError: If the destination has no stream matching the sync
        """
        with self.db_service.transaction() as session:
            sync_run = get_sync_run_repository(session).get_by_id(sync_run_id, DiscardScope.WITH_DISCARDED)
            if sync_run is None:
                raise NotFoundError("Sync run", sync_run_id)

            sync = get_sync_repository(session).get_by_id(sync_run.sync_id, DiscardScope.WITH_DISCARDED)
            if sync is None:
                raise NotFoundError("Sync", sync_run.sync_id)

            source, destination, model = sync.source, sync.destination, sync.model
            if source is None or destination is None or model is None:
                raise NotFoundError("Sync definition", sync.id)

            stream = destination.stream(sync.stream_name)
            if stream is None:
                raise SyncFlowError(
                    f"Destination {destination.id} has no stream named '{sync.stream_name}'"
                )

            return SyncContext(
                sync_id=sync.id,
                sync_run_id=sync_run.id,
                sync_run_type=SyncRunType(sync_run.sync_run_type),
                source_connector=source.connector_name,
                source_configuration=dict(source.configuration or {}),
                destination_connector=destination.connector_name,
                destination_configuration=dict(destination.configuration or {}),
                destination_url=stream.get("url") or (destination.configuration or {}).get("destination_url"),
                request_method=stream.get("request_method") or "POST",
                query=model.query,
                query_type=QueryType(model.query_type),
                primary_key=model.primary_key,
                sync_mode=SyncMode(sync.sync_mode),
                cursor_field=sync.cursor_field,
                current_cursor_field=sync.current_cursor_field
            )

    def _run_state(self, sync_run_id: int):
        """Current status and discard flag of the run."""
        with self.db_service.transaction() as session:
            sync_run = get_sync_run_repository(session).get_by_id(sync_run_id, DiscardScope.WITH_DISCARDED)
            return SyncRunStatus(sync_run.status), sync_run.discarded_at is not None

    def _should_stop(self, sync_run_id: int) -> bool:
        status, discarded = self._run_state(sync_run_id)
        return discarded or is_terminal(status) or status == SyncRunStatus.PAUSED

    def _set_fields(self, sync_run_id: int, **fields):
        with self.db_service.transaction() as session:
            get_sync_run_repository(session).set_fields(sync_run_id, **fields)

    def _increment(self, sync_run_id: int, successful_rows: int = 0, failed_rows: int = 0):
        with self.db_service.transaction() as session:
            get_sync_run_repository(session).increment_counters(sync_run_id, successful_rows, failed_rows)

    async def _fire(self, sync_run_id: int, event: SyncRunEvent, **kwargs):
        try:
            return await self.run_state.apply(sync_run_id, event, **kwargs)
        except InvalidTransition as e:
            raise _RunStopped(str(e)) from e

    @log_async_execution_time
    async def execute(self, sync_run_id: int) -> RunSummary:
        """Run the extract-and-write pipeline for a pending run.

        Returns:
            RunSummary with the final counters; ``interrupted`` is set when
            the run was stopped from outside before it could finish
        """
        start_time = time.perf_counter()
        summary = RunSummary(sync_run_id=sync_run_id, status=SyncRunStatus.PENDING)

        try:
            context = self.load_context(sync_run_id)
        except NotFoundError as e:
            if e.entity == "Sync run":
                raise
            return await self._fail_unloadable(summary, e)
        except SyncFlowError as e:
            return await self._fail_unloadable(summary, e)

        logger = bind_run_context("core.executor", sync_run_id=sync_run_id, sync_id=context.sync_id)

        source: Optional[SourceConnector] = None
        destination: Optional[DestinationConnector] = None
        started = False

        try:
            await self._fire(sync_run_id, SyncRunEvent.START)
            started = True
            # Counters restart from zero; a resumed run re-sends everything
            self._set_fields(
                sync_run_id,
                total_query_rows=0, total_rows=0, successful_rows=0, failed_rows=0, error=None
            )
            await self._fire(sync_run_id, SyncRunEvent.QUERY)

            try:
                source = self.connector_factory.create_source(
                    context.source_connector, context.source_configuration
                )
                destination = self.connector_factory.create_destination(
                    context.destination_connector, context.destination_configuration
                )
                extract = await source.query(context.descriptor())
            except Exception as e:
                summary.error_message = f"Extraction failed: {e}"
                logger.error("Source query failed", error=str(e))
                self._set_fields(sync_run_id, total_query_rows=0, result=summary.result)
                run = await self._fire(sync_run_id, SyncRunEvent.ABORT, error=summary.error_message)
                summary.status = run.status
                return summary

            summary.total_query_rows = extract.total_row_count
            self._set_fields(sync_run_id, total_query_rows=extract.total_row_count)

            await self._fire(sync_run_id, SyncRunEvent.QUEUE)
            await self._fire(sync_run_id, SyncRunEvent.PROGRESS)

            logger.info(
                "Sync run in progress",
                total_query_rows=summary.total_query_rows,
                chunk_size=self.chunk_size,
                incremental=context.is_incremental
            )

            rows_seen = 0
            chunk: List[Record] = []
            try:
                async for record in _pull_records(extract.records):
                    rows_seen += 1
                    self._track_cursor(context, record, summary)
                    chunk.append(record)
                    if len(chunk) >= self.chunk_size:
                        await self._process_chunk(context, destination, chunk, summary, logger)
                        chunk = []
                if chunk:
                    await self._process_chunk(context, destination, chunk, summary, logger)
            except ExtractionError as e:
                summary.error_message = f"Extraction failed after {rows_seen} rows: {e}"
                summary.total_query_rows = rows_seen
                summary.total_rows = summary.successful_rows + summary.failed_rows
                logger.error("Source stream failed", rows_seen=rows_seen, error=str(e))
                self._set_fields(
                    sync_run_id,
                    total_query_rows=rows_seen,
                    total_rows=summary.total_rows,
                    successful_rows=summary.successful_rows,
                    failed_rows=summary.failed_rows,
                    result=summary.result
                )
                run = await self._fire(sync_run_id, SyncRunEvent.ABORT, error=summary.error_message)
                summary.status = run.status
                return summary

            # Rows can appear between the count and the reads; the stream is authoritative
            summary.total_query_rows = max(extract.total_row_count, rows_seen)
            summary.total_rows = summary.successful_rows + summary.failed_rows
            self._set_fields(
                sync_run_id,
                total_query_rows=summary.total_query_rows,
                total_rows=summary.total_rows,
                successful_rows=summary.successful_rows,
                failed_rows=summary.failed_rows,
                result=summary.result
            )

            sync_fields = None
            if context.advances_cursor and summary.failed_rows == 0 and summary.cursor is not None:
                sync_fields = {"current_cursor_field": summary.cursor}

            run = await self._fire(sync_run_id, SyncRunEvent.COMPLETE, sync_fields=sync_fields)
            summary.status = run.status

            logger.info(
                "Sync run completed",
                total_rows=summary.total_rows,
                successful_rows=summary.successful_rows,
                failed_rows=summary.failed_rows,
                skipped_rows=summary.skipped_rows,
                cursor_advanced=sync_fields is not None
            )
            return summary

        except _RunStopped as e:
            status, _ = self._run_state(sync_run_id)
            summary.status = status
            summary.interrupted = True
            if started:
                summary.total_rows = summary.successful_rows + summary.failed_rows
                self._set_fields(sync_run_id, total_rows=summary.total_rows, result=summary.result)
            logger.warning("Sync run stopped externally", status=status.value, reason=str(e))
            return summary

        finally:
            summary.duration = time.perf_counter() - start_time
            if source is not None:
                await source.close()
            if destination is not None:
                await destination.close()

    async def _fail_unloadable(self, summary: RunSummary, error: Exception) -> RunSummary:
        summary.error_message = str(error)
        try:
            run = await self.run_state.apply(summary.sync_run_id, SyncRunEvent.ABORT, error=str(error))
            summary.status = run.status
        except InvalidTransition:
            status, _ = self._run_state(summary.sync_run_id)
            summary.status = status
            summary.interrupted = True
        return summary

    def _track_cursor(self, context: SyncContext, record: Record, summary: RunSummary):
        if not context.is_incremental:
            return
        value = record.get_field(context.cursor_field)
        if value is None:
            return
        if summary.cursor is None or _cursor_key(value) > _cursor_key(summary.cursor):
            # str() keeps datetimes comparable with what SQL returns as text
            summary.cursor = str(value)

    async def _process_chunk(
        self,
        context: SyncContext,
        destination: DestinationConnector,
        chunk: List[Record],
        summary: RunSummary,
        logger
    ):
        if self._should_stop(context.sync_run_id):
            raise _RunStopped("run left in_progress before the next chunk")

        if self.settings.skip_unchanged_records and context.primary_key:
            pending = [
                record for record in chunk
                if not self.record_tracker.is_unchanged(context.sync_id, record, context.primary_key)
            ]
            summary.skipped_rows += len(chunk) - len(pending)
            chunk = pending
            if not chunk:
                return

        payload = {"records": [{"fields": dict(record)} for record in chunk]}

        try:
            write_result = await destination.write(context.destination_url, context.request_method, payload)
            success = write_result.success
            error = write_result.error
        except Exception as e:
            success = False
            error = str(e)

        if not success:
            summary.failed_rows += len(chunk)
            logger.warning("Chunk write failed", chunk_rows=len(chunk), error=error)
            self._persist_counters(context.sync_run_id, logger, failed_rows=len(chunk))
            return

        # The destination accepted the chunk; bookkeeping errors do not undo that
        summary.successful_rows += len(chunk)
        try:
            self.record_tracker.record_many(
                context.sync_id, context.sync_run_id, chunk, context.primary_key
            )
        except Exception as e:
            logger.error("Record tracking failed for delivered chunk", chunk_rows=len(chunk), error=str(e))
        self._persist_counters(context.sync_run_id, logger, successful_rows=len(chunk))

    def _persist_counters(self, sync_run_id: int, logger, successful_rows: int = 0, failed_rows: int = 0):
        # Final counters are rewritten from the summary when the run ends
        try:
            self._increment(sync_run_id, successful_rows=successful_rows, failed_rows=failed_rows)
        except SQLAlchemyError as e:
            logger.error("Failed to persist chunk counters", error=str(e))


async def _pull_records(records: AsyncIterator[Record]) -> AsyncIterator[Record]:
    """Yield from a source stream, reporting any failure as an ExtractionError."""
    try:
        async for record in records:
            yield record
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(str(e)) from e


def _cursor_key(value: Any):
    """Comparison key for cursor values; numbers compare numerically."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value, "")
    if isinstance(value, str):
        try:
            return (0, float(value), "")
        except ValueError:
            return (1, 0, value)
    return (1, 0, str(value))
