"""
Application controller.

Owns the resource snapshot and wires the scheduler, session machine and
notifier together. `tick()` is the main loop's event-drain step: it is the
only place where completions are applied, auto-stops are fired, long-running
alerts are checked and auto-refresh is submitted. UI code calls the command
methods and reads state; it never touches the gateways directly.
"""
import logging
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from cloudctl.clock import RefreshTimer, utc_now
from cloudctl.config import Settings
from cloudctl.errors import Unauthorized
from cloudctl.models import ResourceSnapshot
from cloudctl.notify import LongRunningMonitor, Notifier
from cloudctl.scheduler import (
    REFRESH,
    RESOURCE_KINDS,
    Completion,
    Kind,
    Operation,
    Scheduler,
    resource_action,
)
from cloudctl.session import SessionMachine
from cloudctl.watcher import ProfilesChanged

logger = logging.getLogger("cloudctl.app")

_VERBS = {
    Kind.START: ("Starting", "Started", "start"),
    Kind.STOP: ("Stopping", "Stopped", "stop"),
    Kind.TERMINATE: ("Terminating", "Terminated", "terminate"),
    Kind.AUTO_STOP: ("Auto-stopping", "Auto-stopped", "auto-stop"),
}


class App:
    def __init__(self, credentials, resources, settings: Optional[Settings] = None,
                 settings_path: Optional[Path] = None, scheduler: Optional[Scheduler] = None,
                 notifier: Optional[Notifier] = None, clock: Callable = utc_now,
                 sound: Optional[Callable[[], None]] = None):
        self.credentials = credentials
        self.resources = resources
        self.settings = settings or Settings()
        self.settings_path = settings_path
        self.clock = clock
        self.scheduler = scheduler or Scheduler()
        self.notifier = notifier or Notifier(self.settings.sound_enabled, sound)
        self.session = SessionMachine(credentials, self.scheduler, self.notifier,
                                      on_activated=self._on_profile_activated)
        self.snapshot = ResourceSnapshot()
        self.refresh_timer = RefreshTimer(self.settings.refresh_interval)
        self.long_running = LongRunningMonitor(self.settings.alert_threshold)
        self.should_quit = False

    # ---- lifecycle ----

    def start(self, preferred_profile: Optional[str] = None) -> None:
        logger.info("Application started")
        self.session.start(preferred_profile or self.settings.default_profile)

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        logger.info("Application stopped")

    @property
    def fetching(self) -> bool:
        return self.scheduler.is_running(REFRESH)

    def seconds_until_refresh(self) -> Optional[int]:
        if self.session.active_profile is None:
            return None
        remaining = self.refresh_timer.remaining(self.clock())
        return int(remaining.total_seconds()) if remaining is not None else None

    # ---- main loop step ----

    def tick(self, now=None) -> None:
        """Drain completed work, then run the time-driven checks."""
        now = now or self.clock()

        for event in self.scheduler.drain():
            try:
                self._handle_event(event)
            except Exception as e:
                logger.exception(f"Error handling {event}")
                self.notifier.error(f"Internal error: {e}")

        profile = self.session.active_profile
        if profile is None:
            return

        schedule = self.scheduler.auto_stop_schedule
        fired = self.scheduler.check_auto_stop(
            now, lambda rid: self._action_work(Kind.AUTO_STOP, profile, rid), context=profile
        )
        for resource_id in fired:
            self.notifier.info(f"Auto-stop triggered for {self.snapshot.display_name(resource_id)}")

        for notification in self.long_running.check(self.snapshot.instances, schedule, now):
            self.notifier.dispatch(notification)

        if self.refresh_timer.due(now) and not self.fetching:
            self.refresh()

    def _handle_event(self, event) -> None:
        if isinstance(event, ProfilesChanged):
            logger.info(f"Profile file changed: {event.path}")
            self.session.request_reload()
            return
        if not isinstance(event, Completion):
            logger.warning(f"Unknown event: {event!r}")
            return
        if self.session.handle(event):
            return
        if event.key.kind is Kind.REFRESH:
            self._on_refresh(event)
        elif event.key.kind in RESOURCE_KINDS:
            self._on_resource_action(event)

    def _on_failure(self, completion: Completion, what: str) -> None:
        if self.session.handle_error(completion.error, completion.context):
            return
        if isinstance(completion.error, Unauthorized) and completion.context != self.session.active_profile:
            logger.info(f"{what} for inactive profile {completion.context}: {completion.error}")
            return
        self.notifier.error(f"{what}: {completion.error}")

    # ---- refresh ----

    def refresh(self, user_requested: bool = False) -> Optional[Operation]:
        profile = self.session.active_profile
        if profile is None:
            if user_requested:
                self.notifier.warning("No active session. Select a profile first")
            return None
        self.refresh_timer.mark(self.clock())
        return self.scheduler.submit(REFRESH, self._refresh_work(profile), context=profile)

    def _refresh_work(self, profile: str):
        credentials = self.credentials
        resources = self.resources

        def work(token):
            if credentials.is_expired(profile):
                raise Unauthorized(f"Session for profile {profile} has expired")
            if token.cancelled:
                return None
            return resources.snapshot(profile)
        return work

    def _on_refresh(self, completion: Completion) -> None:
        if not completion.ok:
            # Previous snapshot stays on screen
            self._on_failure(completion, "Refresh failed")
            return

        snapshot = completion.result
        if snapshot is None or snapshot.profile != self.session.active_profile:
            logger.debug(f"Dropping snapshot for {completion.context}")
            return

        self.snapshot = snapshot
        self._prune_auto_stops()
        if self.refresh_timer.boosted and snapshot.all_stable and not self._actions_running():
            self.refresh_timer.settle()
        logger.info(f"Refreshed: {len(snapshot.instances)} instances, "
                    f"{len(snapshot.functions)} functions ({snapshot.profile})")

    def _prune_auto_stops(self) -> None:
        schedule = self.scheduler.auto_stop_schedule
        for entry in schedule:
            instance = self.snapshot.instance(entry.resource_id)
            if instance is not None and instance.state in ("stopped", "terminated"):
                schedule.cancel(entry.resource_id)
                logger.info(f"Removed auto-stop for {instance.name}: instance is {instance.state}")

    def _actions_running(self) -> bool:
        return any(key.kind in RESOURCE_KINDS for key in self.scheduler.running())

    # ---- resource actions ----

    def _action_work(self, kind: Kind, profile: str, instance_id: str):
        action = {
            Kind.START: self.resources.start,
            Kind.STOP: self.resources.stop,
            Kind.TERMINATE: self.resources.terminate,
            Kind.AUTO_STOP: self.resources.stop,
        }[kind]
        return lambda token: action(profile, instance_id)

    def _resource_action(self, kind: Kind, instance_id: str) -> Optional[Operation]:
        profile = self.session.active_profile
        if profile is None:
            self.notifier.warning("No active session. Select a profile first")
            return None
        self.notifier.info(f"{_VERBS[kind][0]} {self.snapshot.display_name(instance_id)}...")
        return self.scheduler.submit(
            resource_action(kind, instance_id),
            self._action_work(kind, profile, instance_id),
            context=profile,
        )

    def start_instance(self, instance_id: str) -> Optional[Operation]:
        return self._resource_action(Kind.START, instance_id)

    def stop_instance(self, instance_id: str) -> Optional[Operation]:
        return self._resource_action(Kind.STOP, instance_id)

    def terminate_instance(self, instance_id: str) -> Optional[Operation]:
        return self._resource_action(Kind.TERMINATE, instance_id)

    def _on_resource_action(self, completion: Completion) -> None:
        kind = completion.key.kind
        instance_id = completion.key.resource_id
        name = self.snapshot.display_name(instance_id)

        if not completion.ok:
            # A failed auto-stop stays disarmed until the user reschedules it
            self._on_failure(completion, f"Failed to {_VERBS[kind][2]} {name}")
            return

        if kind in (Kind.STOP, Kind.TERMINATE, Kind.AUTO_STOP):
            self.scheduler.auto_stop_schedule.cancel(instance_id)
        self.notifier.success(f"{_VERBS[kind][1]}: {name}")
        self.refresh_timer.boost()
        self.refresh()

    # ---- auto-stop ----

    def schedule_auto_stop(self, instance_id: str, duration: timedelta) -> None:
        deadline = self.clock() + duration
        self.scheduler.auto_stop_schedule.schedule(instance_id, deadline)
        self.notifier.success(
            f"Scheduled auto-stop for {self.snapshot.display_name(instance_id)} "
            f"at {deadline:%H:%M:%S}"
        )

    def cancel_auto_stop(self, instance_id: str) -> bool:
        cancelled = self.scheduler.auto_stop_schedule.cancel(instance_id)
        if cancelled:
            self.notifier.info(f"Cancelled auto-stop for {self.snapshot.display_name(instance_id)}")
        return cancelled

    # ---- profiles ----

    def select_profile(self, name: str, login: bool = False) -> bool:
        return self.session.select(name, login=login)

    def cancel_switch(self) -> bool:
        return self.session.cancel()

    def _on_profile_activated(self, profile: str) -> None:
        # Anything still in flight was fetched with the previous credentials
        self.scheduler.cancel(REFRESH)
        if self.snapshot.profile not in (None, profile):
            self.snapshot = ResourceSnapshot()
            schedule = self.scheduler.auto_stop_schedule
            if len(schedule):
                for entry in schedule:
                    schedule.cancel(entry.resource_id)
                self.notifier.warning("Auto-stop schedules of the previous profile were cleared")
            self.long_running.alerted.clear()

        if self.settings.default_profile != profile:
            self.settings.default_profile = profile
            self.save_settings(quiet=True)

        self.refresh_timer.reset()
        self.refresh()

    # ---- settings ----

    def save_settings(self, quiet: bool = False) -> bool:
        try:
            self.settings.save(self.settings_path)
        except OSError as e:
            self.notifier.error(f"Failed to save settings: {e}")
            return False
        if not quiet:
            self.notifier.success("Settings saved")
        return True

    def apply_settings(self, settings: Settings) -> bool:
        self.settings = settings
        self.refresh_timer.set_interval(settings.refresh_interval)
        self.long_running.threshold = settings.alert_threshold
        self.notifier.sound_enabled = settings.sound_enabled
        return self.save_settings()

    def trigger_test_alert(self) -> None:
        self.notifier.ring()
        self.notifier.info("Test Alert: System Sound Working")
