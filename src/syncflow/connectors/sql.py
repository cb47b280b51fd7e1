"""SQL source backed by a SQLAlchemy engine."""

import asyncio
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from ..database.models import QueryType
from ..utils.logging import log_async_execution_time
from .base import ExtractionError, ExtractResult, QueryDescriptor, Record, SourceConnector


DEFAULT_PAGE_SIZE = 500


class SqlSource(SourceConnector):
    """Extracts model rows from any database SQLAlchemy can reach.

    Configuration keys:
        url: SQLAlchemy database URL (required)
        page_size: rows fetched per round trip while streaming
    """

    def __init__(self, configuration: Dict[str, Any], **kwargs):
        super().__init__(configuration, **kwargs)

        self.database_url = configuration.get("url")
        if not self.database_url:
            raise ValueError("SQL source configuration requires 'url'")

        self.page_size = int(configuration.get("page_size", DEFAULT_PAGE_SIZE))
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            connect_args = {}
            if make_url(self.database_url).get_backend_name() == "sqlite":
                # Pages are fetched on executor threads
                connect_args["check_same_thread"] = False
            self._engine = create_engine(self.database_url, pool_pre_ping=True, connect_args=connect_args)
        return self._engine

    def build_query(self, descriptor: QueryDescriptor) -> str:
        """Render the SQL for a descriptor.

        Pages are read with LIMIT/OFFSET on separate connections, so the
        query is ordered by the cursor (incremental) and the primary key
        whenever the model declares one. Without either, the model query
        runs as written and keeps whatever ORDER BY it carries.
        """
        preparer = self.engine.dialect.identifier_preparer

        if QueryType(descriptor.query_type) == QueryType.TABLE_SELECTOR:
            base = f"SELECT * FROM {preparer.quote(descriptor.query.strip())}"
        else:
            base = descriptor.query.strip().rstrip(";")

        order_by = [
            f"src.{preparer.quote(column)}"
            for column in dict.fromkeys([descriptor.cursor_field, descriptor.primary_key])
            if column
        ]
        if not order_by:
            return base

        sql = f"SELECT * FROM ({base}) AS src"
        if descriptor.is_incremental and descriptor.current_cursor is not None:
            sql += f" WHERE src.{preparer.quote(descriptor.cursor_field)} > :cursor"
        return sql + " ORDER BY " + ", ".join(order_by)

    def _params(self, descriptor: QueryDescriptor) -> Dict[str, Any]:
        if descriptor.is_incremental and descriptor.current_cursor is not None:
            return {"cursor": descriptor.current_cursor}
        return {}

    def _count(self, sql: str, params: Dict[str, Any]) -> int:
        with self.engine.connect() as connection:
            return connection.execute(
                text(f"SELECT COUNT(*) FROM ({sql}) AS counted"), params
            ).scalar_one()

    def _fetch_page(self, sql: str, params: Dict[str, Any], offset: int):
        with self.engine.connect() as connection:
            result = connection.execute(
                text(f"{sql} LIMIT :_limit OFFSET :_offset"),
                {**params, "_limit": self.page_size, "_offset": offset}
            )
            return [Record(row._mapping) for row in result]

    @log_async_execution_time
    async def query(self, descriptor: QueryDescriptor) -> ExtractResult:
        sql = self.build_query(descriptor)
        params = self._params(descriptor)
        loop = asyncio.get_running_loop()

        try:
            total = await loop.run_in_executor(None, self._count, sql, params)
        except SQLAlchemyError as e:
            self.logger.error("Source query failed", error=str(e))
            raise ExtractionError(f"Source query failed: {e}") from e

        if not descriptor.primary_key and not descriptor.is_incremental:
            self.logger.warning("Model has no primary key; page order relies on the query's own ORDER BY")

        self.logger.info(
            "Source query started",
            total_row_count=total,
            incremental=descriptor.is_incremental,
            current_cursor=descriptor.current_cursor
        )

        return ExtractResult(records=self._stream(sql, params), total_row_count=total)

    async def _stream(self, sql: str, params: Dict[str, Any]) -> AsyncIterator[Record]:
        loop = asyncio.get_running_loop()
        offset = 0

        while True:
            try:
                page = await loop.run_in_executor(None, self._fetch_page, sql, params, offset)
            except SQLAlchemyError as e:
                raise ExtractionError(f"Failed to fetch rows at offset {offset}: {e}") from e

            for record in page:
                yield record

            if len(page) < self.page_size:
                return
            offset += len(page)

    async def check(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._ping)
            return True
        except SQLAlchemyError as e:
            self.logger.error("Source connectivity check failed", error=str(e))
            return False

    def _ping(self):
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    async def close(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
