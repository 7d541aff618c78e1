"""
Tests for cron parsing and the schedule registry.
"""

import pytest
from datetime import datetime, timedelta, timezone

from storeflow.lifecycle.schedule import CronExpression, ScheduleRegistry


def at(day, hour, minute, second=0):
    # January 2026: the 1st is a Thursday, the 4th a Sunday, the 5th a Monday
    return datetime(2026, 1, day, hour, minute, second, tzinfo=timezone.utc)


class TestCronExpression:
    """Tests for CronExpression."""

    def test_every_six_hours(self):
        """Test steps over the hour field."""
        cron = CronExpression("0 */6 * * *")
        assert cron.matches(at(5, 0, 0))
        assert cron.matches(at(5, 18, 0, 45))
        assert not cron.matches(at(5, 7, 0))
        assert not cron.matches(at(5, 6, 1))

    def test_lists_and_ranges(self):
        """Test lists and ranges."""
        cron = CronExpression("15,45 9-17 * * 1-5")
        assert cron.matches(at(5, 9, 45))
        assert not cron.matches(at(4, 9, 45))
        assert not cron.matches(at(5, 18, 15))

    def test_sunday_aliases(self):
        """Test both 0 and 7 mean Sunday."""
        assert CronExpression("0 12 * * 0").matches(at(4, 12, 0))
        assert CronExpression("0 12 * * 7").matches(at(4, 12, 0))

    def test_day_or_weekday(self):
        """Test that either day field may match when both are restricted."""
        cron = CronExpression("0 0 1 * 1")
        assert cron.matches(at(1, 0, 0))
        assert cron.matches(at(5, 0, 0))
        assert not cron.matches(at(6, 0, 0))

    def test_weekday_numbers_count_from_sunday(self):
        """Test numeric weekdays use crontab numbering, not Monday = 0."""
        weekdays = CronExpression("0 9 * * 1-5")
        assert weekdays.matches(at(5, 9, 0))
        assert weekdays.matches(at(9, 9, 0))
        assert not weekdays.matches(at(4, 9, 0))
        assert not weekdays.matches(at(10, 9, 0))

        every_other = CronExpression("0 9 * * */2")
        assert every_other.matches(at(4, 9, 0))
        assert every_other.matches(at(6, 9, 0))
        assert not every_other.matches(at(5, 9, 0))

    def test_weekday_names(self):
        """Test named weekdays are accepted."""
        cron = CronExpression("30 8 * * sat,sun")
        assert cron.matches(at(3, 8, 30))
        assert cron.matches(at(4, 8, 30))
        assert not cron.matches(at(5, 8, 30))

    def test_timezone(self):
        """Test matching happens in the entry's timezone."""
        cron = CronExpression("0 9 * * *", "Europe/Paris")
        assert cron.matches(at(5, 8, 0))
        assert not cron.matches(at(5, 9, 0))

    def test_invalid_expressions(self):
        """Test malformed expressions raise ValueError."""
        bad_expressions = (
            "* * * *", "60 * * * *", "* 24 * * *", "*/0 * * * *", "a * * * *",
            "5-1 * * * *", "* * * * 8", "* * 32 * *", "* * * 13 *",
        )
        for bad in bad_expressions:
            with pytest.raises(ValueError):
                CronExpression(bad)

    def test_invalid_timezone(self):
        """Test unknown timezones raise ValueError."""
        with pytest.raises(ValueError, match="unknown timezone"):
            CronExpression("* * * * *", "Mars/Olympus")


class TestScheduleRegistry:
    """Tests for ScheduleRegistry."""

    def test_due_once_per_minute(self):
        """Test an entry fires at most once in a given minute."""
        registry = ScheduleRegistry()
        registry.register("wf-1", "*/5 * * * *")

        assert [e.workflow_id for e in registry.due(at(5, 10, 5))] == ["wf-1"]
        assert registry.due(at(5, 10, 5, 30)) == []
        assert registry.due(at(5, 10, 6)) == []
        assert len(registry.due(at(5, 10, 10))) == 1

    def test_only_matching_entries(self):
        """Test only entries whose cron matches are due."""
        registry = ScheduleRegistry()
        registry.register("hourly", "0 * * * *")
        registry.register("daily", "0 3 * * *")

        assert [e.workflow_id for e in registry.due(at(5, 4, 0))] == ["hourly"]

    def test_reregister_keeps_last_fired(self):
        """Test re-registering the same cron does not fire twice in one minute."""
        registry = ScheduleRegistry()
        registry.register("wf-1", "* * * * *")
        now = at(5, 10, 0)
        registry.due(now)

        registry.register("wf-1", "* * * * *")
        assert registry.due(now + timedelta(seconds=10)) == []

    def test_unregister(self):
        """Test unregistered entries are never due."""
        registry = ScheduleRegistry()
        registry.register("wf-1", "* * * * *")

        assert registry.unregister("wf-1") is True
        assert registry.unregister("wf-1") is False
        assert registry.due(at(5, 10, 0)) == []
        assert len(registry) == 0

    def test_register_rejects_bad_cron(self):
        """Test registration validates the expression."""
        with pytest.raises(ValueError):
            ScheduleRegistry().register("wf-1", "not a cron")
