"""Tests for schedule validation and next-trigger resolution."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from syncflow.core import ScheduleResolver
from syncflow.exceptions import ScheduleValidationError


CREATED_AT = datetime(2024, 3, 1, 10, 15)


def make_sync(**fields):
    defaults = {
        "id": 1,
        "schedule_type": "manual",
        "sync_interval": None,
        "sync_interval_unit": None,
        "cron_expression": None,
        "status": "pending",
        "discarded_at": None,
        "created_at": CREATED_AT,
    }
    defaults.update(fields)
    return SimpleNamespace(**defaults)


def make_run(created_at, finished_at=None):
    return SimpleNamespace(created_at=created_at, finished_at=finished_at)


class TestNormalize:
    """Test schedule field validation."""

    def setup_method(self):
        self.resolver = ScheduleResolver()

    def test_unknown_schedule_type(self):
        with pytest.raises(ScheduleValidationError) as exc_info:
            self.resolver.normalize({"schedule_type": "weekly"})
        assert exc_info.value.errors == {"schedule_type": ["invalid schedule type"]}

    def test_manual_clears_everything(self):
        normalized = self.resolver.normalize({
            "schedule_type": "manual",
            "sync_interval": 5,
            "sync_interval_unit": "minutes",
            "cron_expression": "* * * * *"
        })
        assert normalized == {
            "schedule_type": "manual",
            "sync_interval": None,
            "sync_interval_unit": None,
            "cron_expression": None
        }

    def test_interval_keeps_only_interval_fields(self):
        normalized = self.resolver.normalize({
            "schedule_type": "interval",
            "sync_interval": 2,
            "sync_interval_unit": "hours",
            "cron_expression": "0 * * * *"
        })
        assert normalized["sync_interval"] == 2
        assert normalized["sync_interval_unit"] == "hours"
        assert normalized["cron_expression"] is None

    @pytest.mark.parametrize("interval,unit,bad_fields", [
        (None, "hours", {"sync_interval"}),
        (0, "hours", {"sync_interval"}),
        (-3, "days", {"sync_interval"}),
        (True, "days", {"sync_interval"}),
        (5, "weeks", {"sync_interval_unit"}),
        (None, None, {"sync_interval", "sync_interval_unit"}),
    ])
    def test_invalid_interval(self, interval, unit, bad_fields):
        with pytest.raises(ScheduleValidationError) as exc_info:
            self.resolver.normalize({
                "schedule_type": "interval",
                "sync_interval": interval,
                "sync_interval_unit": unit
            })
        assert set(exc_info.value.errors) == bad_fields

    def test_cron_requires_expression(self):
        with pytest.raises(ScheduleValidationError) as exc_info:
            self.resolver.normalize({"schedule_type": "cron_expression", "cron_expression": "  "})
        assert exc_info.value.errors == {"cron_expression": ["can't be blank"]}

    def test_cron_rejects_malformed_expression(self):
        with pytest.raises(ScheduleValidationError) as exc_info:
            self.resolver.normalize({"schedule_type": "cron_expression", "cron_expression": "61 * * *"})
        assert "cron_expression" in exc_info.value.errors

    def test_cron_clears_interval_fields(self):
        normalized = self.resolver.normalize({
            "schedule_type": "cron_expression",
            "cron_expression": " */15 * * * * ",
            "sync_interval": 1,
            "sync_interval_unit": "days"
        })
        assert normalized["cron_expression"] == "*/15 * * * *"
        assert normalized["sync_interval"] is None
        assert normalized["sync_interval_unit"] is None


class TestNextTrigger:
    """Test due-time computation."""

    def setup_method(self):
        self.resolver = ScheduleResolver()

    def test_manual_is_never_due(self):
        sync = make_sync()
        assert self.resolver.next_trigger_at(sync) is None
        assert not self.resolver.is_due(sync, now=CREATED_AT + timedelta(days=365))

    def test_interval_never_ran_is_due_immediately(self):
        sync = make_sync(schedule_type="interval", sync_interval=1, sync_interval_unit="hours")
        assert self.resolver.next_trigger_at(sync) == CREATED_AT
        assert self.resolver.is_due(sync, now=CREATED_AT)

    def test_interval_counts_from_last_finish(self):
        sync = make_sync(schedule_type="interval", sync_interval=30, sync_interval_unit="minutes")
        finished = datetime(2024, 3, 1, 12, 0)
        last_run = make_run(created_at=datetime(2024, 3, 1, 11, 50), finished_at=finished)

        assert self.resolver.next_trigger_at(sync, last_run) == finished + timedelta(minutes=30)
        assert not self.resolver.is_due(sync, last_run, now=finished + timedelta(minutes=29))
        assert self.resolver.is_due(sync, last_run, now=finished + timedelta(minutes=30))

    def test_interval_unfinished_run_counts_from_creation(self):
        sync = make_sync(schedule_type="interval", sync_interval=1, sync_interval_unit="days")
        last_run = make_run(created_at=datetime(2024, 3, 2, 8, 0))

        assert self.resolver.next_trigger_at(sync, last_run) == datetime(2024, 3, 3, 8, 0)

    def test_cron_is_due_only_after_next_match(self):
        sync = make_sync(schedule_type="cron_expression", cron_expression="0 * * * *")

        assert self.resolver.next_trigger_at(sync) == datetime(2024, 3, 1, 11, 0)
        assert not self.resolver.is_due(sync, now=datetime(2024, 3, 1, 10, 59, 59))
        assert self.resolver.is_due(sync, now=datetime(2024, 3, 1, 11, 0))

    def test_cron_match_is_strictly_after_last_trigger(self):
        sync = make_sync(schedule_type="cron_expression", cron_expression="0 * * * *")
        last_run = make_run(created_at=datetime(2024, 3, 1, 11, 0), finished_at=datetime(2024, 3, 1, 11, 5))

        assert self.resolver.next_trigger_at(sync, last_run) == datetime(2024, 3, 1, 12, 0)
        assert not self.resolver.is_due(sync, last_run, now=datetime(2024, 3, 1, 11, 30))

    def test_discarded_sync_is_never_due(self):
        sync = make_sync(
            schedule_type="interval",
            sync_interval=1,
            sync_interval_unit="minutes",
            discarded_at=CREATED_AT
        )
        assert not self.resolver.is_due(sync, now=CREATED_AT + timedelta(days=30))

    def test_disabled_sync_is_never_due(self):
        sync = make_sync(
            schedule_type="interval",
            sync_interval=1,
            sync_interval_unit="minutes",
            status="disabled"
        )
        assert not self.resolver.is_due(sync, now=CREATED_AT + timedelta(days=30))
