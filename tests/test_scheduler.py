"""Tests for the job scheduler and scheduler manager."""

from datetime import timedelta

import pytest

from syncflow.config.settings import SchedulingSettings
from syncflow.database import SyncRunStatus, SyncRunType, get_sync_run_repository, utcnow
from syncflow.scheduler import JobScheduler, SchedulerError, SchedulerManager


@pytest.fixture
def job_scheduler(orchestrator, db_service, settings):
    return JobScheduler(orchestrator, db_service, settings.scheduling)


class TestDueSyncs:
    """Test which syncs a tick picks up."""

    def test_manual_and_disabled_syncs_are_skipped(self, job_scheduler, orchestrator, make_sync):
        make_sync()
        disabled = make_sync(schedule_type="interval", sync_interval=1, sync_interval_unit="minutes")
        orchestrator.disable_sync(disabled.id)
        due = make_sync(schedule_type="interval", sync_interval=1, sync_interval_unit="minutes")

        assert job_scheduler.due_sync_ids() == [due.id]

    def test_sync_with_active_run_is_skipped(self, job_scheduler, orchestrator, make_sync):
        sync = make_sync(schedule_type="interval", sync_interval=1, sync_interval_unit="minutes")
        orchestrator.create_sync_run(sync.id)

        assert job_scheduler.due_sync_ids() == []

    def test_discarded_sync_is_skipped(self, job_scheduler, orchestrator, make_sync):
        sync = make_sync(schedule_type="interval", sync_interval=1, sync_interval_unit="minutes")
        orchestrator.discard_sync(sync.id)

        assert job_scheduler.due_sync_ids() == []


class TestTick:
    """Test run creation and execution from a tick."""

    @pytest.mark.asyncio
    async def test_test_runs_do_not_move_the_schedule(self, job_scheduler, orchestrator, make_sync):
        sync = make_sync(schedule_type="interval", sync_interval=1, sync_interval_unit="hours")

        await orchestrator.run_sync_now(sync.id, SyncRunType.TEST)

        assert job_scheduler.due_sync_ids() == [sync.id]
        assert orchestrator.get_sync_status(sync.id)["next_trigger_at"] <= utcnow()

        await orchestrator.run_sync_now(sync.id)
        next_trigger = orchestrator.get_sync_status(sync.id)["next_trigger_at"]

        assert next_trigger > utcnow()
        assert job_scheduler.due_sync_ids(now=next_trigger - timedelta(seconds=1)) == []
        assert job_scheduler.due_sync_ids(now=next_trigger) == [sync.id]

    @pytest.mark.asyncio
    async def test_tick_creates_and_executes_runs(self, job_scheduler, db_service, make_sync, destination):
        sync = make_sync(schedule_type="interval", sync_interval=1, sync_interval_unit="hours")

        launched = await job_scheduler.tick()
        assert len(launched) == 1
        summary = await job_scheduler.wait_for(launched[0])

        assert summary.status == SyncRunStatus.SUCCESS
        assert len(destination.written_records) == 25
        assert job_scheduler.stats["runs_created"] == 1
        assert job_scheduler.stats["runs_executed"] == 1
        assert job_scheduler.stats["last_result"]["successful_rows"] == 25

        # Next interval has not elapsed yet
        assert await job_scheduler.tick() == []
        assert job_scheduler.due_sync_ids(now=utcnow() + timedelta(hours=2)) == [sync.id]

    @pytest.mark.asyncio
    async def test_tick_launches_pending_runs_created_elsewhere(self, job_scheduler, orchestrator, make_sync):
        sync_run = orchestrator.create_sync_run(make_sync().id)

        launched = await job_scheduler.tick()

        assert launched == [sync_run.id]
        summary = await job_scheduler.wait_for(sync_run.id)
        assert summary.status == SyncRunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_trigger_sync(self, job_scheduler, db_service, make_sync):
        sync = make_sync()

        sync_run = await job_scheduler.trigger_sync(sync.id, SyncRunType.TEST)
        summary = await job_scheduler.wait_for(sync_run.id)

        assert summary.status == SyncRunStatus.SUCCESS
        assert db_service.get_sync_run(sync_run.id).sync_run_type == SyncRunType.TEST

    @pytest.mark.asyncio
    async def test_trigger_unknown_sync(self, job_scheduler):
        with pytest.raises(SchedulerError):
            await job_scheduler.trigger_sync(777)

    @pytest.mark.asyncio
    async def test_wait_for_unknown_run(self, job_scheduler):
        assert await job_scheduler.wait_for(1) is None


class TestSupervisor:
    """Test aborting runs that exceed the wall-clock budget."""

    @pytest.mark.asyncio
    async def test_overdue_run_is_aborted(self, orchestrator, db_service, make_sync, notifier):
        scheduler = JobScheduler(
            orchestrator,
            db_service,
            SchedulingSettings(tick_seconds=1, run_timeout_minutes=5)
        )
        sync_run = orchestrator.create_sync_run(make_sync().id)
        fresh_run = orchestrator.create_sync_run(make_sync().id)
        with db_service.transaction() as session:
            get_sync_run_repository(session).set_fields(
                sync_run.id, created_at=utcnow() - timedelta(minutes=10)
            )

        aborted = await scheduler.supervise()

        assert aborted == [sync_run.id]
        stored = db_service.get_sync_run(sync_run.id)
        assert stored.status == SyncRunStatus.FAILED
        assert "exceeded 5 minutes" in stored.error
        assert db_service.get_sync_run(fresh_run.id).status == SyncRunStatus.PENDING
        assert notifier.variants == ["failure"]

    @pytest.mark.asyncio
    async def test_supervisor_disabled_without_timeout(self, job_scheduler):
        assert await job_scheduler.supervise() == []


class TestSchedulerManager:
    """Test the manager wrapper."""

    @pytest.mark.asyncio
    async def test_trigger_requires_running_manager(self, orchestrator, db_service, settings, make_sync):
        manager = SchedulerManager(orchestrator, db_service, settings.scheduling)

        with pytest.raises(SchedulerError):
            await manager.trigger_sync(make_sync().id)

    def test_status_before_start(self, orchestrator, db_service, settings):
        manager = SchedulerManager(orchestrator, db_service, settings.scheduling)

        status = manager.get_status()

        assert status["is_running"] is False
        assert status["health_status"] == "unknown"
        assert status["scheduler"]["is_running"] is False
        assert status["scheduler"]["in_flight_runs"] == []
        assert status["scheduler"]["max_concurrent_runs"] == 2

    @pytest.mark.asyncio
    async def test_check_health_flags_stopped_scheduler(self, orchestrator, db_service, settings, make_sync):
        make_sync()
        manager = SchedulerManager(orchestrator, db_service, settings.scheduling)

        snapshot = await manager.check_health()

        assert snapshot.status == "unhealthy"
        assert "Job scheduler is not running" in snapshot.issues
        assert snapshot.details["syncs"] == 1
        assert manager.get_status()["health_status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator, db_service, settings, make_sync):
        make_sync()
        manager = SchedulerManager(orchestrator, db_service, settings.scheduling)

        await manager.start()
        try:
            assert manager.is_running
            assert manager.job_scheduler.running
            snapshot = await manager.check_health()
            assert snapshot.status == "healthy"
            assert manager.get_status()["uptime_seconds"] >= 0
        finally:
            await manager.stop()

        assert not manager.is_running
