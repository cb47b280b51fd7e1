"""Tests for the sync run state machine and persisted transitions."""

import pytest

from syncflow.core import (
    ConcurrentTransitionError,
    InvalidTransition,
    RunStateManager,
    SyncRunEvent,
    can_fire,
    is_active,
    is_terminal,
    transition
)
from syncflow.database import (
    SyncRunStatus,
    SyncRunType,
    SyncStatus,
    get_sync_repository,
    get_sync_run_repository
)
from syncflow.exceptions import NotFoundError


class TestTransitionTable:
    """Test the pure transition function."""

    def test_happy_path(self):
        status = SyncRunStatus.PENDING
        for event, expected in [
            (SyncRunEvent.START, SyncRunStatus.STARTED),
            (SyncRunEvent.QUERY, SyncRunStatus.QUERYING),
            (SyncRunEvent.QUEUE, SyncRunStatus.QUEUED),
            (SyncRunEvent.PROGRESS, SyncRunStatus.IN_PROGRESS),
            (SyncRunEvent.COMPLETE, SyncRunStatus.SUCCESS),
        ]:
            result = transition(status, event)
            assert result.ok
            assert result.status == expected
            status = result.status

        assert is_terminal(status)

    def test_steps_cannot_be_skipped(self):
        assert not can_fire(SyncRunStatus.PENDING, SyncRunEvent.QUERY)
        assert not can_fire(SyncRunStatus.STARTED, SyncRunEvent.COMPLETE)
        assert not can_fire(SyncRunStatus.QUEUED, SyncRunEvent.COMPLETE)

    @pytest.mark.parametrize("status", [
        SyncRunStatus.PENDING,
        SyncRunStatus.STARTED,
        SyncRunStatus.QUERYING,
        SyncRunStatus.QUEUED,
        SyncRunStatus.IN_PROGRESS,
        SyncRunStatus.PAUSED,
    ])
    def test_abort_and_cancel_from_interruptible_states(self, status):
        assert transition(status, SyncRunEvent.ABORT).status == SyncRunStatus.FAILED
        assert transition(status, SyncRunEvent.CANCEL).status == SyncRunStatus.CANCELED

    def test_pause_and_resume(self):
        assert transition(SyncRunStatus.IN_PROGRESS, SyncRunEvent.PAUSE).status == SyncRunStatus.PAUSED
        assert transition(SyncRunStatus.PAUSED, SyncRunEvent.RESUME).status == SyncRunStatus.PENDING
        assert not can_fire(SyncRunStatus.PAUSED, SyncRunEvent.PAUSE)
        assert not can_fire(SyncRunStatus.IN_PROGRESS, SyncRunEvent.RESUME)

    @pytest.mark.parametrize("status", [
        SyncRunStatus.SUCCESS,
        SyncRunStatus.FAILED,
        SyncRunStatus.CANCELED,
    ])
    def test_terminal_states_accept_no_event(self, status):
        for event in SyncRunEvent:
            assert not can_fire(status, event)

    def test_invalid_transition_leaves_no_status(self):
        result = transition(SyncRunStatus.SUCCESS, SyncRunEvent.START)

        assert not result.ok
        assert result.previous == SyncRunStatus.SUCCESS
        with pytest.raises(InvalidTransition) as exc_info:
            result.unwrap(sync_run_id=7)
        assert exc_info.value.event == SyncRunEvent.START
        assert "sync run 7" in str(exc_info.value)

    def test_notifying_states(self):
        assert transition(SyncRunStatus.IN_PROGRESS, SyncRunEvent.COMPLETE).notifies
        assert transition(SyncRunStatus.IN_PROGRESS, SyncRunEvent.ABORT).notifies
        assert not transition(SyncRunStatus.IN_PROGRESS, SyncRunEvent.CANCEL).notifies
        assert not transition(SyncRunStatus.IN_PROGRESS, SyncRunEvent.PAUSE).notifies

    def test_active_states(self):
        assert is_active(SyncRunStatus.PENDING)
        assert is_active("in_progress")
        assert not is_active(SyncRunStatus.PAUSED)
        assert not is_active(SyncRunStatus.CANCELED)


class TestRunStateManager:
    """Test transitions applied to persisted runs."""

    @pytest.fixture
    def run_state(self, db_service, dispatcher):
        return RunStateManager(db_service, dispatcher)

    @pytest.mark.asyncio
    async def test_start_stamps_started_at(self, run_state, orchestrator, make_sync):
        sync_run = orchestrator.create_sync_run(make_sync().id)

        started = await run_state.apply(sync_run.id, SyncRunEvent.START)

        assert started.status == SyncRunStatus.STARTED
        assert started.started_at is not None
        assert started.finished_at is None
        assert started.lock_version == sync_run.lock_version + 1

    @pytest.mark.asyncio
    async def test_invalid_event_does_not_change_run(self, run_state, db_service, orchestrator, make_sync):
        sync_run = orchestrator.create_sync_run(make_sync().id)

        with pytest.raises(InvalidTransition):
            await run_state.apply(sync_run.id, SyncRunEvent.COMPLETE)

        stored = db_service.get_sync_run(sync_run.id)
        assert stored.status == SyncRunStatus.PENDING
        assert stored.lock_version == sync_run.lock_version

    @pytest.mark.asyncio
    async def test_stale_version_is_rejected(self, run_state, db_service, orchestrator, make_sync):
        sync_run = orchestrator.create_sync_run(make_sync().id)

        await run_state.apply(sync_run.id, SyncRunEvent.START, expected_version=sync_run.lock_version)

        # A second writer still holding the old version loses
        with pytest.raises(ConcurrentTransitionError):
            await run_state.apply(sync_run.id, SyncRunEvent.CANCEL, expected_version=sync_run.lock_version)

        assert db_service.get_sync_run(sync_run.id).status == SyncRunStatus.STARTED

    @pytest.mark.asyncio
    async def test_missing_run(self, run_state, db_service):
        with pytest.raises(NotFoundError):
            await run_state.apply(999, SyncRunEvent.START)

    @pytest.mark.asyncio
    async def test_terminal_failure_marks_sync_failed_and_notifies(
        self, run_state, db_service, orchestrator, make_sync, notifier
    ):
        sync = make_sync()
        sync_run = orchestrator.create_sync_run(sync.id)

        failed = await run_state.apply(sync_run.id, SyncRunEvent.ABORT, error="boom")

        assert failed.status == SyncRunStatus.FAILED
        assert failed.finished_at is not None
        assert failed.error == "boom"
        assert db_service.get_sync(sync.id).status == SyncStatus.FAILED
        assert notifier.variants == ["failure"]

    @pytest.mark.asyncio
    async def test_cancel_does_not_notify(self, run_state, orchestrator, make_sync, notifier):
        sync_run = orchestrator.create_sync_run(make_sync().id)

        canceled = await run_state.apply(sync_run.id, SyncRunEvent.CANCEL)

        assert canceled.status == SyncRunStatus.CANCELED
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_test_run_leaves_sync_status_alone(self, run_state, db_service, orchestrator, make_sync):
        sync = make_sync()
        sync_run = orchestrator.create_sync_run(sync.id, SyncRunType.TEST)

        await run_state.apply(sync_run.id, SyncRunEvent.ABORT)

        assert db_service.get_sync(sync.id).status == SyncStatus.PENDING

    @pytest.mark.asyncio
    async def test_disabled_sync_stays_disabled(self, run_state, db_service, orchestrator, make_sync):
        sync = make_sync()
        sync_run = orchestrator.create_sync_run(sync.id)
        orchestrator.disable_sync(sync.id)

        await run_state.apply(sync_run.id, SyncRunEvent.ABORT)

        assert db_service.get_sync(sync.id).status == SyncStatus.DISABLED

    @pytest.mark.asyncio
    async def test_resume_clears_finished_at(self, run_state, orchestrator, make_sync):
        sync_run = orchestrator.create_sync_run(make_sync().id)

        paused = await run_state.apply(sync_run.id, SyncRunEvent.PAUSE)
        resumed = await run_state.apply(sync_run.id, SyncRunEvent.RESUME)

        assert paused.status == SyncRunStatus.PAUSED
        assert resumed.status == SyncRunStatus.PENDING
        assert resumed.finished_at is None

    def test_run_created_terminal_does_not_notify(self, db_service, make_sync, notifier):
        sync = make_sync()

        with db_service.transaction() as session:
            sync_model = get_sync_repository(session).get_by_id(sync.id)
            sync_run = get_sync_run_repository(session).create(
                sync_model, SyncRunType.GENERAL, SyncRunStatus.SUCCESS
            )
            assert sync_run.status == SyncRunStatus.SUCCESS.value

        assert notifier.sent == []
