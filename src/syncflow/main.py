"""Service and command line entry points.

``syncflow serve`` runs the scheduler together with a small aiohttp server
exposing ``/health`` and ``/status``. The other commands open the database,
perform one action and exit.
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Optional

from aiohttp import web, web_runner

from .config.settings import get_settings
from .utils.logging import setup_logging, get_logger
from .database import init_database, close_database, DatabaseService, SyncRunType, utcnow
from .core import NotificationDispatcher, SyncOrchestrator
from .config.loader import find_workspace_file
from .config.manager import ConfigManager
from .scheduler import SchedulerManager
from .exceptions import SyncFlowError


def _dumps(data) -> str:
    return json.dumps(data, default=str)


class SyncFlowApp:
    """Long-running service: database, orchestrator, scheduler and status server."""

    def __init__(self, workspace_file: Optional[str] = None):
        self.settings = get_settings()
        self.logger = get_logger("SyncFlow")
        self.workspace_file = workspace_file
        self.stopping = asyncio.Event()
        self.started_at = None
        self.db_service: Optional[DatabaseService] = None
        self.orchestrator: Optional[SyncOrchestrator] = None
        self.scheduler_manager: Optional[SchedulerManager] = None
        self._runner: Optional[web_runner.AppRunner] = None

    @property
    def running(self) -> bool:
        return self.started_at is not None and not self.stopping.is_set()

    def apply_workspace(self):
        """Apply the configured or discovered workspace file, if any."""
        path = self.workspace_file or find_workspace_file()
        if not path:
            self.logger.info("No workspace file found; using syncs already in the database")
            return

        try:
            stats = ConfigManager(self.db_service, self.orchestrator, str(path)).apply()
        except SyncFlowError as e:
            self.logger.warning("Workspace apply failed", workspace_file=str(path), error=str(e))
            return
        self.logger.info("Workspace applied", workspace_file=str(path), **stats)

    async def startup(self):
        self.logger.info(
            "Starting SyncFlow",
            version=self.settings.version,
            environment=self.settings.environment
        )

        init_database(create_tables=True)
        self.db_service = DatabaseService()
        self.orchestrator = SyncOrchestrator(self.db_service, NotificationDispatcher())
        self.apply_workspace()

        self.scheduler_manager = SchedulerManager(self.orchestrator, self.db_service)
        await self.scheduler_manager.start()
        await self._start_status_server()

        self.started_at = utcnow()
        self.logger.info("SyncFlow started")

    async def shutdown(self):
        self.logger.info("Shutting down SyncFlow")
        self.stopping.set()

        if self.scheduler_manager is not None and self.scheduler_manager.is_running:
            await self.scheduler_manager.stop()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self.orchestrator is not None:
            await self.orchestrator.close()

        close_database()
        self.started_at = None
        self.logger.info("SyncFlow stopped")

    def request_stop(self, signame: str = "request"):
        self.logger.info("Stop requested", signal=signame)
        self.stopping.set()

    async def run(self):
        """Start, block until a stop is requested, then shut down."""
        await self.startup()
        try:
            await self.stopping.wait()
        finally:
            await self.shutdown()

    async def _start_status_server(self):
        app = web.Application()
        app.add_routes([
            web.get("/health", self.handle_health),
            web.get("/status", self.handle_status),
        ])

        self._runner = web_runner.AppRunner(app)
        await self._runner.setup()
        host, port = self.settings.server.host, self.settings.server.port
        await web_runner.TCPSite(self._runner, host, port).start()
        self.logger.info("Status server listening", host=host, port=port)

    async def handle_health(self, request):
        """200 while the service runs and the orchestrator is not unhealthy, 503 otherwise."""
        health = await self.orchestrator.health_check() if self.orchestrator else {"status": "unhealthy"}
        healthy = self.running and health["status"] != "unhealthy"

        body = {
            "status": health["status"] if self.running else "unhealthy",
            "timestamp": utcnow().isoformat(),
            "version": self.settings.version,
            "uptime_seconds": (utcnow() - self.started_at).total_seconds() if self.started_at else 0,
            "issues": health.get("issues", [])
        }
        return web.json_response(body, status=200 if healthy else 503)

    async def handle_status(self, request):
        body = {
            "application": {
                "name": self.settings.name,
                "version": self.settings.version,
                "environment": self.settings.environment,
                "running": self.running,
            },
            "database": self.db_service.get_database_stats().model_dump() if self.db_service else None,
            "scheduler": self.scheduler_manager.get_status() if self.scheduler_manager else None
        }
        return web.json_response(body, dumps=_dumps)


def setup_signal_handlers(app: SyncFlowApp):
    """Route SIGINT and SIGTERM to a graceful stop."""
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, app.request_stop, signal.Signals(signum).name)


async def serve(workspace_file: Optional[str] = None):
    """Run the scheduler service until interrupted."""
    app = SyncFlowApp(workspace_file)
    setup_signal_handlers(app)
    await app.run()

async def _with_orchestrator(action):
    init_database(create_tables=True)
    orchestrator = SyncOrchestrator(DatabaseService(), NotificationDispatcher())
    try:
        return await action(orchestrator)
    finally:
        await orchestrator.close()
        close_database()


async def trigger(sync_id: int, test: bool = False) -> dict:
    """Create a run for a sync and execute it in the foreground."""
    sync_run_type = SyncRunType.TEST if test else SyncRunType.GENERAL

    async def action(orchestrator: SyncOrchestrator):
        summary = await orchestrator.run_sync_now(sync_id, sync_run_type)
        return {
            "sync_run_id": summary.sync_run_id,
            "status": summary.status.value,
            "total_query_rows": summary.total_query_rows,
            "successful_rows": summary.successful_rows,
            "failed_rows": summary.failed_rows,
            "skipped_rows": summary.skipped_rows,
            "error": summary.error_message,
            "duration": summary.duration
        }

    return await _with_orchestrator(action)


async def stop_run(sync_run_id: int, abort: bool = False) -> dict:
    """Cancel or abort a run."""
    async def action(orchestrator: SyncOrchestrator):
        if abort:
            sync_run = await orchestrator.abort_run(sync_run_id, error="Aborted from the command line")
        else:
            sync_run = await orchestrator.cancel_run(sync_run_id)
        return {"sync_run_id": sync_run.id, "status": sync_run.status}

    return await _with_orchestrator(action)


def load_workspace(file_path: str) -> dict:
    """Apply a workspace file to the database."""
    init_database(create_tables=True)
    try:
        db_service = DatabaseService()
        manager = ConfigManager(db_service, SyncOrchestrator(db_service), file_path)
        return manager.apply()
    finally:
        close_database()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="syncflow",
        description="Schedule and execute syncs from sources to destinations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve                          # Run the scheduler and status server
  %(prog)s serve --workspace ws.yaml      # Apply a workspace file on startup
  %(prog)s trigger 3                      # Run sync 3 now
  %(prog)s trigger 3 --test               # Test run; cursor and sync status untouched
  %(prog)s cancel 42                      # Cancel run 42
  %(prog)s load config/workspace.yaml     # Create connectors, models and syncs
        """
    )
    parser.add_argument("--log-level", help="Override the configured log level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the scheduler service")
    serve_parser.add_argument("--workspace", help="Workspace file to apply on startup")

    trigger_parser = subparsers.add_parser("trigger", help="Run a sync immediately")
    trigger_parser.add_argument("sync_id", type=int)
    trigger_parser.add_argument("--test", action="store_true", help="Create a test run")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a sync run")
    cancel_parser.add_argument("sync_run_id", type=int)

    abort_parser = subparsers.add_parser("abort", help="Abort a sync run")
    abort_parser.add_argument("sync_run_id", type=int)

    load_parser = subparsers.add_parser("load", help="Apply a workspace file")
    load_parser.add_argument("file")

    return parser


def cli(argv=None) -> int:
    """Console script entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(log_level=args.log_level)
    logger = get_logger("main")

    try:
        if args.command == "serve":
            asyncio.run(serve(args.workspace))
            return 0
        if args.command == "trigger":
            result = asyncio.run(trigger(args.sync_id, args.test))
        elif args.command == "cancel":
            result = asyncio.run(stop_run(args.sync_run_id))
        elif args.command == "abort":
            result = asyncio.run(stop_run(args.sync_run_id, abort=True))
        else:
            result = load_workspace(args.file)
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        return 0
    except SyncFlowError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(cli())
