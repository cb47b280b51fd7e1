"""Exception hierarchy shared across the package."""

from typing import Dict, List, Optional


class SyncFlowError(Exception):
    """Base exception for all SyncFlow errors."""
    pass


class NotFoundError(SyncFlowError):
    """Raised when an entity does not exist or is discarded."""

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class SyncValidationError(SyncFlowError):
    """Raised when a sync definition is rejected before anything is persisted.

    ``errors`` maps a field name to the list of messages for that field,
    e.g. ``{"schedule_type": ["invalid schedule type"]}``.
    """

    def __init__(self, errors: Dict[str, List[str]], message: Optional[str] = None):
        self.errors = errors
        super().__init__(message or self._format(errors))

    @staticmethod
    def _format(errors: Dict[str, List[str]]) -> str:
        return "; ".join(
            f"{field}: {', '.join(messages)}" for field, messages in errors.items()
        )


class ScheduleValidationError(SyncValidationError):
    """Raised when schedule fields are invalid or inconsistent."""
    pass


class ConfigurationError(SyncFlowError):
    """Raised when configuration loading fails."""
    pass
