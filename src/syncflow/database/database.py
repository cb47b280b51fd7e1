"""Engine construction and transactional session scopes."""

from pathlib import Path
from typing import Any, Dict, Generator, Optional
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base
from ..config.settings import get_settings
from ..utils.logging import get_logger


logger = get_logger("database")


def engine_options(url: URL, echo: bool = False) -> Dict[str, Any]:
    """Keyword arguments for ``create_engine`` depending on the backend."""
    if url.get_backend_name() == "sqlite":
        # StaticPool shares one connection, so sqlite:// stays alive between sessions
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False, "timeout": 20},
            "echo": echo,
        }
    return {"pool_pre_ping": True, "pool_recycle": 300, "echo": echo}


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Owns the engine and hands out sessions for the sync store.

    Session scopes share a single connection on SQLite, so callers must not
    open one scope inside another.
    """

    def __init__(self, database_url: Optional[str] = None):
        settings = get_settings()
        self.url = make_url(database_url or settings.database.url)
        self.is_sqlite = self.url.get_backend_name() == "sqlite"

        self.engine = create_engine(self.url, **engine_options(self.url, settings.database.echo))
        if self.is_sqlite:
            event.listen(self.engine, "connect", _sqlite_pragmas)

        # Rows read inside a scope are converted to responses after it closes
        self.session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False
        )

        logger.info("Database manager initialized", database_url=self.url.render_as_string(hide_password=True))

    def create_tables(self):
        """Create the sync store schema, making the SQLite directory if needed."""
        if self.is_sqlite and self.url.database not in (None, "", ":memory:"):
            Path(self.url.database).parent.mkdir(parents=True, exist_ok=True)

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error("Failed to create sync store schema", error=str(e))
            raise
        logger.info("Sync store schema ready", tables=sorted(Base.metadata.tables))

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Commit on success, roll back and re-raise on any error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.warning("Database transaction rolled back", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        """Return True when a trivial query succeeds."""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("Database ping failed", error=str(e))
            return False
        return True

    def dispose(self):
        self.engine.dispose()


_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Return the process-wide manager, creating it from settings on first use."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> DatabaseManager:
    """Replace the process-wide manager and make sure the store is reachable.

    Raises:
        RuntimeError: If the database does not answer a ping
    """
    global _db_manager
    if _db_manager is not None:
        _db_manager.dispose()

    _db_manager = DatabaseManager(database_url)
    if create_tables:
        _db_manager.create_tables()

    if not _db_manager.ping():
        raise RuntimeError(f"Cannot reach database {_db_manager.url.render_as_string(hide_password=True)}")

    return _db_manager


def close_database():
    global _db_manager
    if _db_manager is not None:
        _db_manager.dispose()
        _db_manager = None
        logger.info("Database connections closed")
