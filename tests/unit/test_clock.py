"""
Unit tests for timers and the auto-stop schedule.
"""
from datetime import timedelta

import pytest

from conftest import NOW
from cloudctl.clock import AutoStopSchedule, IntervalTimer, RefreshTimer


@pytest.mark.unit
class TestIntervalTimer:
    """Tests for IntervalTimer."""

    def test_first_check_is_due(self):
        """Test that a fresh timer fires immediately."""
        timer = IntervalTimer(timedelta(seconds=60))
        assert timer.due(NOW)
        assert timer.remaining(NOW) is None

    def test_fires_once_per_interval(self):
        """Test that fire_if_due only fires after the interval."""
        timer = IntervalTimer(timedelta(seconds=60))

        assert timer.fire_if_due(NOW) is True
        assert timer.fire_if_due(NOW + timedelta(seconds=59)) is False
        assert timer.fire_if_due(NOW + timedelta(seconds=60)) is True

    def test_remaining_never_negative(self):
        """Test remaining time counts down to zero."""
        timer = IntervalTimer(timedelta(seconds=60))
        timer.mark(NOW)

        assert timer.remaining(NOW + timedelta(seconds=45)) == timedelta(seconds=15)
        assert timer.remaining(NOW + timedelta(hours=1)) == timedelta(0)

    def test_reset(self):
        """Test that reset makes the timer due again."""
        timer = IntervalTimer(timedelta(seconds=60))
        timer.mark(NOW)
        timer.reset()
        assert timer.due(NOW)


@pytest.mark.unit
class TestRefreshTimer:
    """Tests for the boosted refresh timer."""

    def test_boost_and_settle(self):
        """Test that boost shortens the interval until settled."""
        timer = RefreshTimer(timedelta(seconds=60))
        timer.mark(NOW)

        timer.boost()
        assert timer.boosted
        assert timer.due(NOW + RefreshTimer.BOOST_INTERVAL)

        timer.settle()
        assert not timer.boosted
        assert not timer.due(NOW + RefreshTimer.BOOST_INTERVAL)

    def test_set_interval_while_boosted(self):
        """Test that a new interval applies once the boost ends."""
        timer = RefreshTimer(timedelta(seconds=60))
        timer.boost()

        timer.set_interval(timedelta(seconds=300))
        assert timer.interval == RefreshTimer.BOOST_INTERVAL

        timer.settle()
        assert timer.interval == timedelta(seconds=300)


@pytest.mark.unit
class TestAutoStopSchedule:
    """Tests for AutoStopSchedule."""

    def test_due_only_returns_armed_entries(self):
        """Test that due() skips future and disarmed entries."""
        schedule = AutoStopSchedule()
        schedule.schedule("i-past", NOW - timedelta(minutes=1))
        schedule.schedule("i-now", NOW)
        schedule.schedule("i-future", NOW + timedelta(minutes=1))
        schedule.get("i-now").armed = False

        assert [e.resource_id for e in schedule.due(NOW)] == ["i-past"]

    def test_reschedule_replaces_and_rearms(self):
        """Test that scheduling again replaces the deadline and re-arms."""
        schedule = AutoStopSchedule()
        schedule.schedule("i-1", NOW)
        schedule.get("i-1").armed = False

        entry = schedule.schedule("i-1", NOW + timedelta(hours=1))

        assert len(schedule) == 1
        assert entry.armed
        assert schedule.get("i-1").deadline == NOW + timedelta(hours=1)

    def test_cancel(self):
        """Test that cancel removes the entry and reports whether it existed."""
        schedule = AutoStopSchedule()
        schedule.schedule("i-1", NOW)

        assert schedule.cancel("i-1") is True
        assert schedule.cancel("i-1") is False
        assert "i-1" not in schedule

    def test_cancel_while_iterating(self):
        """Test that entries can be removed during iteration."""
        schedule = AutoStopSchedule()
        for rid in ("i-1", "i-2", "i-3"):
            schedule.schedule(rid, NOW)

        for entry in schedule:
            schedule.cancel(entry.resource_id)

        assert len(schedule) == 0
