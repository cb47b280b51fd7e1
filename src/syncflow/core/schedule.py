"""Schedule validation and next-trigger resolution for syncs."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from ..database.models import IntervalUnit, ScheduleType, SyncStatus, utcnow
from ..exceptions import ScheduleValidationError
from ..utils.logging import get_logger


logger = get_logger("core.schedule")

SCHEDULE_FIELDS = ("schedule_type", "sync_interval", "sync_interval_unit", "cron_expression")


def parse_cron(expression: str) -> CronTrigger:
    """Parse a 5-field crontab expression evaluated in UTC."""
    return CronTrigger.from_crontab(expression, timezone=timezone.utc)


class ScheduleResolver:
    """Validates schedule fields and answers "when does this sync run next".

    All datetimes going in and out are naive UTC, matching what the
    database stores. Works with ORM rows and pydantic responses alike.
    """

    def normalize(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Validate schedule fields and clear the ones the type does not use.

        Args:
            fields: Mapping with ``schedule_type`` and any of the interval
                or cron fields

        Returns:
            A new mapping with exactly the four schedule fields

        Raises:
            ScheduleValidationError: If the type is unknown or its fields
                are missing or malformed
        """
        raw_type = fields.get("schedule_type")
        if isinstance(raw_type, ScheduleType):
            raw_type = raw_type.value

        try:
            schedule_type = ScheduleType(raw_type)
        except ValueError:
            raise ScheduleValidationError({"schedule_type": ["invalid schedule type"]})

        normalized: Dict[str, Any] = {
            "schedule_type": schedule_type.value,
            "sync_interval": None,
            "sync_interval_unit": None,
            "cron_expression": None,
        }

        if schedule_type == ScheduleType.INTERVAL:
            normalized["sync_interval"], normalized["sync_interval_unit"] = self._validate_interval(
                fields.get("sync_interval"), fields.get("sync_interval_unit")
            )
        elif schedule_type == ScheduleType.CRON_EXPRESSION:
            normalized["cron_expression"] = self._validate_cron(fields.get("cron_expression"))

        return normalized

    def _validate_interval(self, interval: Any, unit: Any):
        errors: Dict[str, List[str]] = {}

        if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
            errors["sync_interval"] = ["must be a positive integer"]

        if isinstance(unit, IntervalUnit):
            unit = unit.value
        if unit not in {member.value for member in IntervalUnit}:
            errors["sync_interval_unit"] = ["must be one of minutes, hours, days"]

        if errors:
            raise ScheduleValidationError(errors)
        return interval, unit

    def _validate_cron(self, expression: Any) -> str:
        if not isinstance(expression, str) or not expression.strip():
            raise ScheduleValidationError({"cron_expression": ["can't be blank"]})

        expression = expression.strip()
        try:
            parse_cron(expression)
        except ValueError as e:
            raise ScheduleValidationError({"cron_expression": [f"invalid cron expression: {e}"]})
        return expression

    def next_trigger_at(self, sync, last_run=None) -> Optional[datetime]:
        """Compute the next time ``sync`` should run.

        Args:
            sync: Sync row or response
            last_run: The sync's latest finished general run, or None

        Returns:
            Naive UTC datetime, or None for manual syncs
        """
        schedule_type = ScheduleType(sync.schedule_type)

        if schedule_type == ScheduleType.MANUAL:
            return None

        if schedule_type == ScheduleType.INTERVAL:
            if last_run is None:
                return sync.created_at
            last_end = last_run.finished_at or last_run.created_at
            unit = IntervalUnit(sync.sync_interval_unit).value
            return last_end + timedelta(**{unit: sync.sync_interval})

        # Cron: first match strictly after the last trigger
        anchor = last_run.created_at if last_run is not None else sync.created_at
        return self._next_cron_match(sync.cron_expression, anchor)

    def _next_cron_match(self, expression: str, after: datetime) -> Optional[datetime]:
        trigger = parse_cron(expression)
        after_utc = after.replace(tzinfo=timezone.utc)
        fire_time = trigger.get_next_fire_time(after_utc, after_utc)
        if fire_time is None:
            return None
        return fire_time.astimezone(timezone.utc).replace(tzinfo=None)

    def is_due(self, sync, last_run=None, now: Optional[datetime] = None) -> bool:
        """True when the sync's next trigger time is not in the future."""
        if getattr(sync, "discarded_at", None) is not None:
            return False
        if SyncStatus(sync.status) == SyncStatus.DISABLED:
            return False

        next_at = self.next_trigger_at(sync, last_run)
        if next_at is None:
            return False

        now = now or utcnow()
        due = next_at <= now
        if due:
            logger.debug("Sync is due", sync_id=sync.id, next_trigger_at=next_at.isoformat())
        return due
