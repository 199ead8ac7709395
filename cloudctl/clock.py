"""
Clock and timer primitives.

All deadlines are timezone-aware UTC datetimes. Nothing in here sleeps; the
main loop asks "is it due?" once per tick.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


class IntervalTimer:
    """Fires once per interval; the first check fires immediately."""

    def __init__(self, interval: timedelta):
        self.interval = interval
        self.last_fired: Optional[datetime] = None

    def due(self, now: datetime) -> bool:
        if self.last_fired is None:
            return True
        return now - self.last_fired >= self.interval

    def mark(self, now: datetime) -> None:
        self.last_fired = now

    def fire_if_due(self, now: datetime) -> bool:
        if not self.due(now):
            return False
        self.mark(now)
        return True

    def remaining(self, now: datetime) -> Optional[timedelta]:
        if self.last_fired is None:
            return None
        left = self.interval - (now - self.last_fired)
        return max(left, timedelta(0))

    def reset(self) -> None:
        self.last_fired = None


class RefreshTimer(IntervalTimer):
    """
    Auto-refresh timer with a "boost" mode.

    After a start/stop/terminate the dashboard polls faster until every
    instance reaches a stable state.
    """

    BOOST_INTERVAL = timedelta(seconds=5)

    def __init__(self, interval: timedelta):
        super().__init__(interval)
        self.normal_interval = interval
        self.boosted = False

    def set_interval(self, interval: timedelta) -> None:
        self.normal_interval = interval
        if not self.boosted:
            self.interval = interval

    def boost(self) -> None:
        self.boosted = True
        self.interval = self.BOOST_INTERVAL

    def settle(self) -> None:
        self.boosted = False
        self.interval = self.normal_interval


@dataclass
class AutoStopEntry:
    resource_id: str
    deadline: datetime
    armed: bool = True


class AutoStopSchedule:
    """resource id -> deadline + armed flag. Mutated only on the main loop."""

    def __init__(self):
        self._entries: Dict[str, AutoStopEntry] = {}

    def schedule(self, resource_id: str, deadline: datetime) -> AutoStopEntry:
        # Rescheduling replaces (and re-arms) any previous entry
        entry = AutoStopEntry(resource_id, deadline)
        self._entries[resource_id] = entry
        return entry

    def cancel(self, resource_id: str) -> bool:
        return self._entries.pop(resource_id, None) is not None

    def get(self, resource_id: str) -> Optional[AutoStopEntry]:
        return self._entries.get(resource_id)

    def due(self, now: datetime) -> List[AutoStopEntry]:
        return [e for e in self._entries.values() if e.armed and e.deadline <= now]

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._entries

    def __iter__(self) -> Iterator[AutoStopEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)
