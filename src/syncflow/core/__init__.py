"""Core sync run orchestration."""

from .state_machine import (
    SyncRunEvent,
    TransitionResult,
    InvalidTransition,
    ConcurrentTransitionError,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    transition,
    can_fire,
    is_active,
    is_terminal
)
from .schedule import ScheduleResolver
from .record_tracker import RecordTracker, fingerprint
from .notifications import (
    NotificationVariant,
    NotificationPayload,
    NotificationDispatcher,
    Notifier,
    LogNotifier,
    WebhookNotifier,
    select_variant
)
from .discard import DiscardPropagator, DiscardResult
from .run_state import RunStateManager
from .executor import ChunkedSyncExecutor, RunSummary, SyncContext
from .orchestrator import SyncOrchestrator

__all__ = [
    "SyncRunEvent",
    "TransitionResult",
    "InvalidTransition",
    "ConcurrentTransitionError",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "transition",
    "can_fire",
    "is_active",
    "is_terminal",
    "ScheduleResolver",
    "RecordTracker",
    "fingerprint",
    "NotificationVariant",
    "NotificationPayload",
    "NotificationDispatcher",
    "Notifier",
    "LogNotifier",
    "WebhookNotifier",
    "select_variant",
    "DiscardPropagator",
    "DiscardResult",
    "RunStateManager",
    "ChunkedSyncExecutor",
    "RunSummary",
    "SyncContext",
    "SyncOrchestrator"
]
