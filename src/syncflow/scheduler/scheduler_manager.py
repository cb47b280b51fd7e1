"""Supervises the job scheduler and keeps a rolling health snapshot."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .job_scheduler import JobScheduler, SchedulerError
from ..config.settings import SchedulingSettings, get_settings
from ..core import SyncOrchestrator
from ..database import DatabaseService, SyncRunType, SyncRunResponse, utcnow
from ..utils.logging import get_logger, log_async_execution_time


DEFAULT_HEALTH_CHECK_INTERVAL = 300


@dataclass
class HealthSnapshot:
    """Result of the latest periodic health check."""
    status: str = "unknown"
    checked_at: Optional[datetime] = None
    issues: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


class SchedulerManager:
    """Owns a ``JobScheduler`` and reports on it.

    The manager is what the application starts and stops. Besides the
    scheduler itself it runs a background loop that combines the
    orchestrator's health check with scheduler-level checks (scheduler
    alive, run slots saturated).
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        database_service: DatabaseService,
        settings: Optional[SchedulingSettings] = None,
        health_check_interval: int = DEFAULT_HEALTH_CHECK_INTERVAL
    ):
        self.orchestrator = orchestrator
        self.db_service = database_service
        self.settings = settings or get_settings().scheduling
        self.health_check_interval = health_check_interval
        self.logger = get_logger(self.__class__.__name__)

        self.job_scheduler = JobScheduler(orchestrator, database_service, self.settings)
        self.health = HealthSnapshot()
        self.started_at: Optional[datetime] = None
        self._monitor: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.started_at is not None

    @log_async_execution_time
    async def start(self):
        if self.is_running:
            self.logger.warning("Scheduler manager is already running")
            return

        try:
            await self.job_scheduler.start()
        except Exception as e:
            self.logger.error("Failed to start job scheduler", error=str(e))
            raise SchedulerError(f"Failed to start scheduler manager: {e}") from e

        self.started_at = utcnow()
        self.health = HealthSnapshot(status="healthy", checked_at=self.started_at)
        self._monitor = asyncio.create_task(self._monitor_health())
        self.logger.info(
            "Scheduler manager started",
            max_concurrent_runs=self.settings.max_concurrent_runs,
            health_check_interval=self.health_check_interval
        )

    async def stop(self, wait: bool = True):
        """Stop monitoring, then the scheduler; ``wait`` lets in-flight runs finish."""
        if not self.is_running:
            self.logger.warning("Scheduler manager is not running")
            return

        self.started_at = None
        if self._monitor is not None:
            self._monitor.cancel()
            await asyncio.gather(self._monitor, return_exceptions=True)
            self._monitor = None

        await self.job_scheduler.stop(wait=wait)
        self.logger.info("Scheduler manager stopped")

    async def trigger_sync(
        self,
        sync_id: int,
        sync_run_type: SyncRunType = SyncRunType.GENERAL
    ) -> SyncRunResponse:
        if not self.is_running:
            raise SchedulerError("Scheduler manager is not running")
        return await self.job_scheduler.trigger_sync(sync_id, sync_run_type)

    async def _monitor_health(self):
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                await self.check_health()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))

    async def check_health(self) -> HealthSnapshot:
        """Refresh and return the health snapshot."""
        report = await self.orchestrator.health_check()
        issues = list(report.get("issues", []))
        status = report["status"]

        if not self.job_scheduler.running:
            status = "unhealthy"
            issues.append("Job scheduler is not running")
        elif len(self.job_scheduler.in_flight) >= self.settings.max_concurrent_runs:
            if status == "healthy":
                status = "warning"
            issues.append("All run slots are busy")

        self.health = HealthSnapshot(
            status=status,
            checked_at=utcnow(),
            issues=issues,
            details={key: report[key] for key in ("database", "syncs", "active_runs") if key in report}
        )
        if issues:
            self.logger.warning("Health check found issues", status=status, issues=issues)
        return self.health

    def get_status(self) -> Dict[str, Any]:
        """Snapshot served by the ``/status`` endpoint."""
        uptime = (utcnow() - self.started_at).total_seconds() if self.started_at else None
        return {
            "is_running": self.is_running,
            "health_status": self.health.status,
            "health_issues": self.health.issues,
            "start_time": self.started_at,
            "uptime_seconds": uptime,
            "last_health_check": self.health.checked_at,
            "scheduler": self.job_scheduler.get_scheduler_stats()
        }
