"""Sync run lifecycle: states, events and the transition table.

The transition function is pure. It never touches persistence; callers
apply the resulting status inside their own transaction and decide what
to do with an invalid result (normally ``result.unwrap()`` which raises
``InvalidTransition``).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from ..database.models import ACTIVE_RUN_STATUSES, SyncRunStatus
from ..exceptions import SyncFlowError


class SyncRunEvent(str, Enum):
    """Events that move a sync run between states."""
    START = "start"
    QUERY = "query"
    QUEUE = "queue"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ABORT = "abort"
    CANCEL = "cancel"
    PAUSE = "pause"
    RESUME = "resume"


ACTIVE_STATUSES: FrozenSet[SyncRunStatus] = ACTIVE_RUN_STATUSES

TERMINAL_STATUSES: FrozenSet[SyncRunStatus] = frozenset({
    SyncRunStatus.SUCCESS,
    SyncRunStatus.FAILED,
    SyncRunStatus.CANCELED,
})

# Terminal states that trigger a status notification
NOTIFY_STATUSES: FrozenSet[SyncRunStatus] = frozenset({
    SyncRunStatus.SUCCESS,
    SyncRunStatus.FAILED,
})

_INTERRUPTIBLE = ACTIVE_STATUSES | {SyncRunStatus.PAUSED}


@dataclass(frozen=True)
class TransitionRule:
    """Valid source states and the target state of one event."""

    sources: FrozenSet[SyncRunStatus]
    target: SyncRunStatus


TRANSITIONS: Dict[SyncRunEvent, TransitionRule] = {
    SyncRunEvent.START: TransitionRule(frozenset({SyncRunStatus.PENDING}), SyncRunStatus.STARTED),
    SyncRunEvent.QUERY: TransitionRule(frozenset({SyncRunStatus.STARTED}), SyncRunStatus.QUERYING),
    SyncRunEvent.QUEUE: TransitionRule(frozenset({SyncRunStatus.QUERYING}), SyncRunStatus.QUEUED),
    SyncRunEvent.PROGRESS: TransitionRule(frozenset({SyncRunStatus.QUEUED}), SyncRunStatus.IN_PROGRESS),
    SyncRunEvent.COMPLETE: TransitionRule(frozenset({SyncRunStatus.IN_PROGRESS}), SyncRunStatus.SUCCESS),
    SyncRunEvent.ABORT: TransitionRule(_INTERRUPTIBLE, SyncRunStatus.FAILED),
    SyncRunEvent.CANCEL: TransitionRule(_INTERRUPTIBLE, SyncRunStatus.CANCELED),
    SyncRunEvent.PAUSE: TransitionRule(ACTIVE_STATUSES, SyncRunStatus.PAUSED),
    SyncRunEvent.RESUME: TransitionRule(frozenset({SyncRunStatus.PAUSED}), SyncRunStatus.PENDING),
}


class InvalidTransition(SyncFlowError):
    """Raised when an event is not allowed from the current state."""

    def __init__(self, event: SyncRunEvent, status: SyncRunStatus, sync_run_id: Optional[int] = None):
        self.event = SyncRunEvent(event)
        self.status = SyncRunStatus(status)
        self.sync_run_id = sync_run_id
        run = f" for sync run {sync_run_id}" if sync_run_id is not None else ""
        super().__init__(
            f"Event '{self.event.value}' cannot fire from state '{self.status.value}'{run}"
        )


class ConcurrentTransitionError(SyncFlowError):
    """Raised when another transition on the same run committed first."""

    def __init__(self, sync_run_id: int):
        super().__init__(f"Sync run {sync_run_id} was modified by a concurrent transition")
        self.sync_run_id = sync_run_id


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of evaluating one event against a status."""

    event: SyncRunEvent
    previous: SyncRunStatus
    status: Optional[SyncRunStatus] = None

    @property
    def ok(self) -> bool:
        return self.status is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def notifies(self) -> bool:
        """Whether landing on the new status triggers a notification."""
        return self.status in NOTIFY_STATUSES

    def unwrap(self, sync_run_id: Optional[int] = None) -> SyncRunStatus:
        """Return the new status or raise ``InvalidTransition``."""
        if self.status is None:
            raise InvalidTransition(self.event, self.previous, sync_run_id)
        return self.status


def transition(status: SyncRunStatus, event: SyncRunEvent) -> TransitionResult:
    """Evaluate ``event`` from ``status`` against the transition table."""
    status = SyncRunStatus(status)
    event = SyncRunEvent(event)
    rule = TRANSITIONS[event]

    if status in rule.sources:
        return TransitionResult(event=event, previous=status, status=rule.target)
    return TransitionResult(event=event, previous=status)


def can_fire(status: SyncRunStatus, event: SyncRunEvent) -> bool:
    """Check whether ``event`` is allowed from ``status``."""
    return transition(status, event).ok


def is_active(status: SyncRunStatus) -> bool:
    return SyncRunStatus(status) in ACTIVE_STATUSES


def is_terminal(status: SyncRunStatus) -> bool:
    return SyncRunStatus(status) in TERMINAL_STATUSES
