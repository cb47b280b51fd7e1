"""Structured logging for syncflow.

Every module logs through ``get_logger(name)`` with an event string and
keyword context. ``setup_logging`` wires structlog into the standard
library tree so third-party loggers (SQLAlchemy, APScheduler, aiohttp)
land in the same handlers.
"""

import functools
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import Optional

import structlog
import colorlog
from structlog.typing import Processor

from ..config.settings import get_settings


LOG_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}

# Rotated at 10MB, five backups
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("apscheduler.executors", "aiohttp.access", "sqlalchemy.engine")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """Configure structlog and the root handlers.

    Arguments override the ``logging`` settings group. Calling this again
    replaces the previous handlers instead of adding to them.
    """
    config = get_settings().logging

    level = getattr(logging, (log_level or config.level).upper())
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if (log_format or config.format) == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    file_path = log_file if log_file is not None else config.file_path

    structlog.configure(
        processors=_shared_processors() + [renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handlers = [_console_handler()]
    if file_path:
        handlers.append(_rotating_file_handler(Path(file_path)))
    for handler in handlers:
        handler.setLevel(level)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _console_handler() -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(message)s",
        reset=True,
        log_colors=LOG_COLORS
    ))
    return handler


def _rotating_file_handler(path: Path) -> logging.Handler:
    # structlog has already rendered the event, so the file gets it verbatim
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_run_context(
    name: str,
    sync_run_id: int,
    sync_id: int
) -> structlog.stdlib.BoundLogger:
    """Logger with the run and sync ids attached to every event."""
    return get_logger(name).bind(sync_run_id=sync_run_id, sync_id=sync_id)


def _report(func, started: float, error: Optional[Exception] = None, level: str = "debug"):
    logger = get_logger(func.__module__)
    elapsed = f"{time.perf_counter() - started:.4f}s"
    if error is not None:
        logger.error("Call failed", function=func.__qualname__, execution_time=elapsed, error=str(error))
    else:
        getattr(logger, level)("Call finished", function=func.__qualname__, execution_time=elapsed)


def log_execution_time(func):
    """Log how long a repository or service call took, at debug level."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _report(func, started, e)
            raise
        _report(func, started)
        return result

    return wrapper


def log_async_execution_time(func):
    """Async variant of ``log_execution_time``; logs at info level."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        started = time.perf_counter()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            _report(func, started, e)
            raise
        _report(func, started, level="info")
        return result

    return wrapper
