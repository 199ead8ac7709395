"""
Notification dispatcher and long-running instance alerts.

The core emits `Notification(severity, message)` payloads; the dispatcher
logs them, keeps short-lived toasts for the UI and rings the sound hook for
alerts when sound is enabled.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional, Set

from cloudctl.clock import AutoStopSchedule, IntervalTimer, utc_now
from cloudctl.models import Instance

logger = logging.getLogger("cloudctl.notify")

TOAST_TTL = timedelta(seconds=5)
ALERT_CHECK_INTERVAL = timedelta(seconds=30)
HISTORY_SIZE = 200


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class Notification:
    severity: Severity
    message: str
    alert: bool = False
    created_at: datetime = field(default_factory=utc_now)


class Notifier:
    """Receives notifications from the core; the UI reads toasts and alerts back."""

    def __init__(self, sound_enabled: bool = True, sound: Optional[Callable[[], None]] = None):
        self.sound_enabled = sound_enabled
        self.sound = sound
        self.history = deque(maxlen=HISTORY_SIZE)
        self.toasts: List[Notification] = []
        self.alerts: List[Notification] = []

    def dispatch(self, notification: Notification) -> Notification:
        logger.log(_LOG_LEVELS[notification.severity], notification.message)
        self.history.append(notification)
        self.toasts.append(notification)
        if notification.alert:
            self.alerts.append(notification)
        if (notification.alert or notification.severity is Severity.ERROR) and self.sound_enabled:
            self.ring()
        return notification

    def info(self, message: str) -> Notification:
        return self.dispatch(Notification(Severity.INFO, message))

    def success(self, message: str) -> Notification:
        return self.dispatch(Notification(Severity.SUCCESS, message))

    def warning(self, message: str, alert: bool = False) -> Notification:
        return self.dispatch(Notification(Severity.WARNING, message, alert=alert))

    def error(self, message: str) -> Notification:
        return self.dispatch(Notification(Severity.ERROR, message))

    def ring(self) -> None:
        if self.sound is None:
            return
        try:
            self.sound()
        except Exception as e:
            logger.debug(f"Sound hook failed: {e}")

    def active_toasts(self, now: Optional[datetime] = None) -> List[Notification]:
        """Drop toasts older than TOAST_TTL and return the rest."""
        now = now or utc_now()
        self.toasts = [t for t in self.toasts if now - t.created_at < TOAST_TTL]
        return list(self.toasts)

    def pop_alert(self) -> Optional[Notification]:
        return self.alerts.pop(0) if self.alerts else None


def format_duration(duration: timedelta) -> str:
    total_minutes = int(duration.total_seconds() // 60)
    return f"{total_minutes // 60}h {total_minutes % 60}m"


class LongRunningMonitor:
    """
    Alerts once per instance that has been running longer than the threshold
    without an auto-stop scheduled. Checks at most every ALERT_CHECK_INTERVAL.
    """

    def __init__(self, threshold: timedelta, interval: timedelta = ALERT_CHECK_INTERVAL):
        self.threshold = threshold
        self.timer = IntervalTimer(interval)
        self.alerted: Set[str] = set()

    def check(self, instances: Iterable[Instance], schedule: AutoStopSchedule,
              now: datetime) -> List[Notification]:
        if not self.timer.fire_if_due(now):
            return []

        notifications = []
        for instance in instances:
            if instance.state != "running":
                # Re-alert if it is started again later
                self.alerted.discard(instance.id)
                continue
            if instance.id in schedule or instance.launch_time is None:
                continue
            running_for = now - instance.launch_time
            if running_for <= self.threshold or instance.id in self.alerted:
                continue
            self.alerted.add(instance.id)
            notifications.append(Notification(
                Severity.WARNING,
                f"Instance {instance.name} ({instance.id}) running for "
                f"{format_duration(running_for)} without auto-stop!",
                alert=True,
                created_at=now,
            ))
        return notifications
