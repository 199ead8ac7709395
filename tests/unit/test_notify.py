"""
Unit tests for notifications and long-running instance alerts.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import NOW
from cloudctl.clock import AutoStopSchedule
from cloudctl.models import Instance
from cloudctl.notify import (
    HISTORY_SIZE,
    LongRunningMonitor,
    Notification,
    Notifier,
    Severity,
    format_duration,
)


@pytest.mark.unit
class TestNotifier:
    """Tests for the notification dispatcher."""

    def test_alert_rings_when_sound_enabled(self):
        """Test that alerts and errors trigger the sound hook."""
        sound = MagicMock()
        notifier = Notifier(sound_enabled=True, sound=sound)

        notifier.info("just info")
        notifier.warning("heads up", alert=True)
        notifier.error("broken")

        assert sound.call_count == 2

    def test_no_sound_when_disabled(self):
        """Test that the sound setting silences alerts."""
        sound = MagicMock()
        notifier = Notifier(sound_enabled=False, sound=sound)

        notifier.warning("heads up", alert=True)

        sound.assert_not_called()
        assert notifier.pop_alert().message == "heads up"

    def test_sound_failure_is_not_fatal(self):
        """Test that a broken sound hook does not break dispatch."""
        notifier = Notifier(sound=MagicMock(side_effect=RuntimeError("no terminal")))

        notifier.error("broken")

        assert notifier.history[-1].message == "broken"

    def test_alerts_queue_in_order(self):
        """Test that alerts are popped oldest first."""
        notifier = Notifier(sound_enabled=False)
        notifier.warning("first", alert=True)
        notifier.warning("not an alert")
        notifier.warning("second", alert=True)

        assert notifier.pop_alert().message == "first"
        assert notifier.pop_alert().message == "second"
        assert notifier.pop_alert() is None

    def test_toasts_expire(self):
        """Test that toasts disappear after their TTL."""
        notifier = Notifier(sound_enabled=False)
        notifier.dispatch(Notification(Severity.INFO, "old", created_at=NOW - timedelta(seconds=10)))
        notifier.dispatch(Notification(Severity.SUCCESS, "new", created_at=NOW))

        assert [t.message for t in notifier.active_toasts(NOW)] == ["new"]
        assert len(notifier.history) == 2

    def test_history_is_capped(self):
        """Test that only the most recent notifications are kept."""
        notifier = Notifier(sound_enabled=False)
        for i in range(HISTORY_SIZE + 50):
            notifier.info(f"message {i}")

        assert len(notifier.history) == HISTORY_SIZE
        assert notifier.history[0].message == "message 50"
        assert notifier.history[-1].message == f"message {HISTORY_SIZE + 49}"

    def test_messages_are_logged(self, caplog):
        """Test that notifications go to the log at a matching level."""
        notifier = Notifier(sound_enabled=False)

        with caplog.at_level("INFO", logger="cloudctl.notify"):
            notifier.error("Failed to stop web-server")

        assert ("cloudctl.notify", 40, "Failed to stop web-server") in caplog.record_tuples


@pytest.mark.unit
def test_format_duration():
    """Test running-time formatting."""
    assert format_duration(timedelta(hours=2, minutes=5, seconds=59)) == "2h 5m"
    assert format_duration(timedelta(minutes=45)) == "0h 45m"


def instance(state="running", hours=3, instance_id="i-1"):
    return Instance(instance_id, "web-server", state=state, launch_time=NOW - timedelta(hours=hours))


@pytest.mark.unit
class TestLongRunningMonitor:
    """Tests for long-running instance alerts."""

    def test_alerts_once(self):
        """Test that an instance over the threshold is reported once."""
        monitor = LongRunningMonitor(timedelta(hours=1))
        schedule = AutoStopSchedule()

        [alert] = monitor.check([instance()], schedule, NOW)
        again = monitor.check([instance()], schedule, NOW + timedelta(minutes=5))

        assert alert.alert is True
        assert alert.severity is Severity.WARNING
        assert alert.message == "Instance web-server (i-1) running for 3h 0m without auto-stop!"
        assert again == []

    def test_scheduled_instance_not_reported(self):
        """Test that an auto-stop schedule silences the alert."""
        monitor = LongRunningMonitor(timedelta(hours=1))
        schedule = AutoStopSchedule()
        schedule.schedule("i-1", NOW + timedelta(minutes=30))

        assert monitor.check([instance()], schedule, NOW) == []

    def test_under_threshold(self):
        """Test that young instances are not reported."""
        monitor = LongRunningMonitor(timedelta(hours=4))

        assert monitor.check([instance(hours=3)], AutoStopSchedule(), NOW) == []

    def test_realert_after_restart(self):
        """Test that a stopped and restarted instance can alert again."""
        monitor = LongRunningMonitor(timedelta(hours=1), interval=timedelta(0))
        schedule = AutoStopSchedule()

        assert len(monitor.check([instance()], schedule, NOW)) == 1
        assert monitor.check([instance(state="stopped")], schedule, NOW) == []
        assert len(monitor.check([instance()], schedule, NOW)) == 1

    def test_check_interval(self):
        """Test that checks run at most once per interval."""
        monitor = LongRunningMonitor(timedelta(hours=1), interval=timedelta(seconds=30))
        schedule = AutoStopSchedule()

        assert monitor.check([], schedule, NOW) == []
        assert monitor.check([instance()], schedule, NOW + timedelta(seconds=10)) == []
        assert len(monitor.check([instance()], schedule, NOW + timedelta(seconds=30))) == 1
