"""Job scheduler that turns due syncs into executed sync runs."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED

from ..config.settings import SchedulingSettings, get_settings
from ..core import (
    ConcurrentTransitionError,
    InvalidTransition,
    RunSummary,
    ScheduleResolver,
    SyncOrchestrator
)
from ..database import (
    DatabaseService,
    SyncRunResponse,
    SyncRunStatus,
    SyncRunType,
    get_sync_repository,
    get_sync_run_repository,
    utcnow
)
from ..exceptions import SyncFlowError
from ..utils.logging import get_logger, log_async_execution_time


TICK_JOB_ID = "syncflow_tick"
SUPERVISOR_JOB_ID = "syncflow_supervisor"


class SchedulerError(SyncFlowError):
    """Raised when scheduler operations fail."""
    pass


class JobScheduler:
    """Periodically evaluates schedules and executes pending runs.

    Every tick creates a run for each due sync, then starts every pending
    run that is not already executing in this process. Runs execute as
    asyncio tasks bounded by a semaphore. Syncs with an active run are
    skipped until that run finishes.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        database_service: DatabaseService,
        settings: Optional[SchedulingSettings] = None
    ):
        """Initialize job scheduler.

        Args:
            orchestrator: Orchestrator that creates and executes runs
            database_service: Database service for schedule queries
            settings: Scheduling settings; read from the environment when omitted
        """
        self.orchestrator = orchestrator
        self.db_service = database_service
        self.settings = settings or get_settings().scheduling
        self.schedule_resolver = ScheduleResolver()
        self.logger = get_logger(self.__class__.__name__)

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,  # Combine multiple pending executions
                'max_instances': 1,  # Only one instance per job
                'misfire_grace_time': 300
            }
        )
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed, EVENT_JOB_MISSED)

        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_runs)
        self._in_flight: Dict[int, asyncio.Task] = {}

        self.stats: Dict[str, Any] = {
            "ticks": 0,
            "runs_created": 0,
            "runs_executed": 0,
            "runs_failed": 0,
            "runs_timed_out": 0,
            "last_tick": None,
            "last_result": None
        }

        self.logger.info(
            "Job scheduler initialized",
            tick_seconds=self.settings.tick_seconds,
            max_concurrent_runs=self.settings.max_concurrent_runs
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    @property
    def in_flight(self) -> List[int]:
        return sorted(self._in_flight)

    @log_async_execution_time
    async def start(self):
        """Start the tick job and, when configured, the run supervisor."""
        if self.scheduler.running:
            self.logger.warning("Scheduler is already running")
            return

        try:
            self.scheduler.add_job(
                func=self.tick,
                trigger=IntervalTrigger(seconds=self.settings.tick_seconds),
                id=TICK_JOB_ID,
                name="Evaluate sync schedules",
                next_run_time=datetime.now(timezone.utc),
                replace_existing=True
            )

            if self.settings.run_timeout_minutes:
                self.scheduler.add_job(
                    func=self.supervise,
                    trigger=IntervalTrigger(seconds=self.settings.tick_seconds),
                    id=SUPERVISOR_JOB_ID,
                    name="Abort overlong sync runs",
                    replace_existing=True
                )

            self.scheduler.start()
            self.logger.info("Job scheduler started successfully")

        except Exception as e:
            self.logger.error("Failed to start scheduler", error=str(e))
            raise SchedulerError(f"Failed to start scheduler: {e}")

    async def stop(self, wait: bool = True):
        """Stop scheduling and optionally wait for in-flight runs.

        Args:
            wait: Whether to wait for running sync runs to complete
        """
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        tasks = list(self._in_flight.values())
        if tasks:
            if wait:
                await asyncio.gather(*tasks, return_exceptions=True)
            else:
                for task in tasks:
                    task.cancel()

        self.logger.info("Job scheduler stopped", waited_for_runs=len(tasks) if wait else 0)

    def due_sync_ids(self, now=None) -> List[int]:
        """Ids of schedulable syncs that are due and have no active run."""
        now = now or utcnow()
        due = []

        with self.db_service.transaction() as session:
            run_repo = get_sync_run_repository(session)
            for sync in get_sync_repository(session).list_schedulable():
                if run_repo.has_active_run(sync.id):
                    continue
                if self.schedule_resolver.is_due(sync, run_repo.schedule_anchor(sync.id), now):
                    due.append(sync.id)

        return due

    @log_async_execution_time
    async def tick(self) -> List[int]:
        """Create runs for due syncs and launch every pending run.

        Returns:
            Ids of the runs launched by this tick
        """
        self.stats["ticks"] += 1
        self.stats["last_tick"] = utcnow()

        for sync_id in self.due_sync_ids():
            try:
                sync_run = self.orchestrator.create_sync_run(sync_id, SyncRunType.GENERAL)
                self.stats["runs_created"] += 1
                self.logger.info("Scheduled sync run created", sync_id=sync_id, sync_run_id=sync_run.id)
            except SyncFlowError as e:
                self.logger.error("Failed to create scheduled run", sync_id=sync_id, error=str(e))

        launched = []
        for sync_run in self.db_service.list_active_runs():
            if SyncRunStatus(sync_run.status) != SyncRunStatus.PENDING:
                continue
            if sync_run.id in self._in_flight:
                continue
            self._launch(sync_run.id)
            launched.append(sync_run.id)

        return launched

    def _launch(self, sync_run_id: int) -> asyncio.Task:
        task = asyncio.create_task(self._execute(sync_run_id), name=f"sync-run-{sync_run_id}")
        self._in_flight[sync_run_id] = task
        task.add_done_callback(lambda _: self._in_flight.pop(sync_run_id, None))
        return task

    async def _execute(self, sync_run_id: int) -> Optional[RunSummary]:
        async with self._semaphore:
            try:
                summary = await self.orchestrator.execute_run(sync_run_id)
            except Exception as e:
                self.stats["runs_failed"] += 1
                self.logger.error("Sync run execution failed", sync_run_id=sync_run_id, error=str(e))
                return None

        self.stats["runs_executed"] += 1
        self.stats["last_result"] = {
            "sync_run_id": sync_run_id,
            "status": summary.status.value,
            "successful_rows": summary.successful_rows,
            "failed_rows": summary.failed_rows,
            "duration": summary.duration
        }
        return summary

    async def trigger_sync(
        self,
        sync_id: int,
        sync_run_type: SyncRunType = SyncRunType.GENERAL
    ) -> SyncRunResponse:
        """Create a run outside the schedule and start it right away.

        Explicit triggers are allowed even while another run of the sync is active.
        """
        try:
            sync_run = self.orchestrator.create_sync_run(sync_id, sync_run_type)
        except SyncFlowError as e:
            self.logger.error("Failed to trigger sync", sync_id=sync_id, error=str(e))
            raise SchedulerError(f"Failed to trigger sync {sync_id}: {e}")

        self._launch(sync_run.id)
        self.logger.info("Sync triggered manually", sync_id=sync_id, sync_run_id=sync_run.id)
        return sync_run

    async def wait_for(self, sync_run_id: int) -> Optional[RunSummary]:
        """Wait for an in-flight run launched by this scheduler."""
        task = self._in_flight.get(sync_run_id)
        if task is None:
            return None
        return await task

    @log_async_execution_time
    async def supervise(self) -> List[int]:
        """Abort active runs older than ``run_timeout_minutes``.

        Returns:
            Ids of the runs that were aborted
        """
        if not self.settings.run_timeout_minutes:
            return []

        cutoff = utcnow() - timedelta(minutes=self.settings.run_timeout_minutes)
        with self.db_service.transaction() as session:
            overdue = [run.id for run in get_sync_run_repository(session).started_before(cutoff)]

        aborted = []
        for sync_run_id in overdue:
            try:
                await self.orchestrator.abort_run(
                    sync_run_id,
                    error=f"Run exceeded {self.settings.run_timeout_minutes} minutes"
                )
                aborted.append(sync_run_id)
                self.stats["runs_timed_out"] += 1
            except (InvalidTransition, ConcurrentTransitionError) as e:
                self.logger.warning("Could not abort overdue run", sync_run_id=sync_run_id, error=str(e))

        if aborted:
            self.logger.warning("Overdue sync runs aborted", sync_run_ids=aborted)
        return aborted

    def get_scheduler_stats(self) -> Dict[str, Any]:
        """Get overall scheduler statistics."""
        tick_job = self.scheduler.get_job(TICK_JOB_ID) if self.scheduler.running else None
        return {
            **self.stats,
            "is_running": self.scheduler.running,
            "in_flight_runs": self.in_flight,
            "max_concurrent_runs": self.settings.max_concurrent_runs,
            "next_tick": tick_job.next_run_time if tick_job else None
        }

    def _job_error(self, event):
        """Handle job error event."""
        self.logger.error("Scheduled job failed", job_id=event.job_id, error=str(event.exception))

    def _job_missed(self, event):
        """Handle job missed event."""
        self.logger.warning("Scheduled job missed", job_id=event.job_id)

