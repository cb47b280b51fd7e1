"""Applies state machine events to persisted sync runs."""

import threading
from typing import Any, Dict, Optional

from sqlalchemy.orm.exc import StaleDataError

from ..database import (
    DatabaseService,
    DiscardScope,
    SyncRunResponse,
    SyncRunStatus,
    SyncRunType,
    SyncStatus,
    get_sync_repository,
    get_sync_run_repository,
    utcnow
)
from ..exceptions import NotFoundError
from ..utils.logging import get_logger
from .notifications import NotificationDispatcher
from .state_machine import ConcurrentTransitionError, SyncRunEvent, transition


logger = get_logger("core.run_state")

# Sync health after a general run lands on these states
_SYNC_STATUS_AFTER = {
    SyncRunStatus.SUCCESS: SyncStatus.HEALTHY,
    SyncRunStatus.FAILED: SyncStatus.FAILED,
}


class RunStateManager:
    """Serializes transitions per run and fires the post-commit hook.

    Each transition runs in its own transaction under a per-run lock. The
    ``lock_version`` column catches writers outside this process; a
    transition that loses the race raises ``ConcurrentTransitionError``.
    """

    def __init__(
        self,
        database_service: DatabaseService,
        dispatcher: Optional[NotificationDispatcher] = None
    ):
        self.db_service = database_service
        self.dispatcher = dispatcher
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, sync_run_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(sync_run_id)
            if lock is None:
                lock = self._locks[sync_run_id] = threading.Lock()
            return lock

    def release(self, sync_run_id: int):
        """Forget the lock of a run that will not transition again."""
        with self._locks_guard:
            self._locks.pop(sync_run_id, None)

    def _apply_in_transaction(
        self,
        sync_run_id: int,
        event: SyncRunEvent,
        expected_version: Optional[int],
        error: Optional[str],
        sync_fields: Optional[Dict[str, Any]]
    ):
        with self._lock_for(sync_run_id):
            try:
                with self.db_service.transaction() as session:
                    run_repo = get_sync_run_repository(session)
                    sync_run = run_repo.get_by_id(sync_run_id, DiscardScope.WITH_DISCARDED)
                    if sync_run is None:
                        raise NotFoundError("Sync run", sync_run_id)

                    if expected_version is not None and sync_run.lock_version != expected_version:
                        raise ConcurrentTransitionError(sync_run_id)

                    result = transition(sync_run.status, event)
                    new_status = result.unwrap(sync_run_id)
                    now = utcnow()

                    sync_run.status = new_status.value
                    sync_run.updated_at = now
                    if event == SyncRunEvent.START:
                        sync_run.started_at = now
                    if event == SyncRunEvent.RESUME:
                        sync_run.finished_at = None
                    if result.is_terminal:
                        sync_run.finished_at = now
                    if error is not None:
                        sync_run.error = error

                    if SyncRunType(sync_run.sync_run_type) == SyncRunType.GENERAL:
                        self._update_sync(session, sync_run.sync_id, new_status, sync_fields)

                    session.flush()
                    return result, SyncRunResponse.model_validate(sync_run)

            except StaleDataError as e:
                logger.warning(
                    "Concurrent transition detected",
                    sync_run_id=sync_run_id,
                    transition_event=event.value,
                    error=str(e)
                )
                raise ConcurrentTransitionError(sync_run_id) from e

    def _update_sync(self, session, sync_id: int, status: SyncRunStatus, sync_fields):
        sync_repo = get_sync_repository(session)
        sync = sync_repo.get_by_id(sync_id, DiscardScope.WITH_DISCARDED)
        if sync is None:
            return

        if sync_fields and status == SyncRunStatus.SUCCESS:
            sync_repo.update(sync, sync_fields)

        sync_status = _SYNC_STATUS_AFTER.get(status)
        if sync_status and SyncStatus(sync.status) != SyncStatus.DISABLED:
            sync_repo.set_status(sync, sync_status)

    async def apply(
        self,
        sync_run_id: int,
        event: SyncRunEvent,
        expected_version: Optional[int] = None,
        error: Optional[str] = None,
        sync_fields: Optional[Dict[str, Any]] = None
    ) -> SyncRunResponse:
        """Fire ``event`` on a run and persist the new state.

        Args:
            sync_run_id: Run to transition
            event: Event to fire
            expected_version: Fail unless the stored ``lock_version`` matches
            error: Error message to store on the run
            sync_fields: Sync columns to update when the run reaches success

        Returns:
            The run after the transition

        Raises:
            NotFoundError: If the run does not exist
            InvalidTransition: If the event cannot fire from the stored state
            ConcurrentTransitionError: If another writer changed the run first
        """
        event = SyncRunEvent(event)
        result, sync_run = self._apply_in_transaction(
            sync_run_id, event, expected_version, error, sync_fields
        )

        logger.info(
            "Sync run transitioned",
            sync_run_id=sync_run_id,
            sync_id=sync_run.sync_id,
            transition_event=event.value,
            previous_status=result.previous.value,
            status=sync_run.status.value
        )

        if result.is_terminal:
            self.release(sync_run_id)

        if result.notifies and self.dispatcher is not None:
            await self.dispatcher.dispatch(
                sync_id=sync_run.sync_id,
                sync_run_id=sync_run.id,
                status=sync_run.status,
                successful_rows=sync_run.successful_rows,
                failed_rows=sync_run.failed_rows,
                error=sync_run.error
            )

        return sync_run
