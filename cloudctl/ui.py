"""
curses front end.

The loop polls the keyboard with a fixed timeout (the tick), runs one
`App.tick()` and redraws. It never blocks on AWS or on the login
subprocess; those run in the scheduler's workers.
"""
import curses
import logging
from datetime import timedelta
from enum import Enum
from typing import List, Optional

from cloudctl.config import AUTO_STOP_DURATIONS, format_seconds
from cloudctl.logs import LogBuffer
from cloudctl.notify import Severity
from cloudctl.scheduler import LOGIN
from cloudctl.session import Active, Expired, Switching

logger = logging.getLogger("cloudctl.ui")

SCREENS = ("Home", "EC2", "Lambda", "Logs")
SETTINGS_FIELDS = ("Refresh interval", "Show logs tab", "Log level",
                   "Alert threshold", "Sound alerts", "Test sound")

KEY_ESC = 27
KEY_ENTER = (curses.KEY_ENTER, 10, 13)

PAIR_OK = 1
PAIR_WARN = 2
PAIR_ERROR = 3
PAIR_TITLE = 4

HELP_LINES = [
    "1-4      switch tab (Home, EC2, Lambda, Logs)",
    "j/k      move selection",
    "r        refresh now",
    "s / x    start / stop instance",
    "t        terminate instance",
    "a / A    schedule / cancel auto-stop",
    "c        choose AWS profile",
    "l        SSO login + activate (profile dialog)",
    "Enter    activate profile / confirm",
    ",        settings",
    "Esc      close dialog / cancel profile switch",
    "q        quit",
]


class Dialog(str, Enum):
    NONE = "none"
    HELP = "help"
    PROFILES = "profiles"
    CONFIRM_TERMINATE = "confirm-terminate"
    SCHEDULE = "schedule"
    ALERT = "alert"
    SETTINGS = "settings"


def _safe_add(stdscr, y: int, x: int, text: str, attr: int = 0) -> None:
    """Write clipped text safely within curses screen bounds."""
    height, width = stdscr.getmaxyx()
    if y < 0 or y >= height or x >= width:
        return
    clipped = text[: max(0, width - x - 1)]
    if not clipped:
        return
    try:
        stdscr.addstr(y, x, clipped, attr)
    except curses.error:
        return


class Dashboard:
    def __init__(self, app, log_buffer: Optional[LogBuffer] = None, tick_ms: int = 250):
        self.app = app
        self.log_buffer = log_buffer
        self.tick_ms = tick_ms
        self.screen = 0
        self.selected = {"EC2": 0, "Lambda": 0}
        self.dialog = Dialog.NONE
        self.dialog_target: Optional[str] = None
        self.alert_message = ""
        self.profile_index = 0
        self.schedule_index = 1
        self.settings_draft = None
        self.settings_field = 0
        self._recovery_seen = None
        self._switch_pending = False

    # ---- selection helpers ----

    @property
    def screen_name(self) -> str:
        return SCREENS[self.screen]

    def selected_instance(self):
        instances = self.app.snapshot.instances
        if not instances:
            return None
        return instances[min(self.selected["EC2"], len(instances) - 1)]

    def _move(self, delta: int) -> None:
        if self.screen_name == "EC2":
            count = len(self.app.snapshot.instances)
        elif self.screen_name == "Lambda":
            count = len(self.app.snapshot.functions)
        else:
            return
        if count:
            self.selected[self.screen_name] = max(0, min(count - 1, self.selected[self.screen_name] + delta))

    def open_profiles(self) -> None:
        profiles = self.app.session.profile_list()
        names = [p.name for p in profiles]
        state = self.app.session.state
        current = getattr(state, "profile", None)
        self.profile_index = names.index(current) if current in names else 0
        self.dialog = Dialog.PROFILES

    # ---- input ----

    def handle_key(self, key: int) -> None:
        if key == -1:
            return
        if self.dialog is not Dialog.NONE:
            self._handle_dialog_key(key)
            return

        if key in (ord("q"), 3):
            self.app.should_quit = True
        elif ord("1") <= key <= ord("4"):
            idx = key - ord("1")
            if SCREENS[idx] != "Logs" or self.app.settings.show_logs_panel:
                self.screen = idx
        elif key in (curses.KEY_UP, ord("k")):
            self._move(-1)
        elif key in (curses.KEY_DOWN, ord("j")):
            self._move(1)
        elif key == ord("r"):
            self.app.refresh(user_requested=True)
        elif key == ord("c"):
            self.open_profiles()
        elif key in (ord("?"), ord("h")):
            self.dialog = Dialog.HELP
        elif key == ord(","):
            self.settings_draft = self.app.settings.copy()
            self.settings_field = 0
            self.dialog = Dialog.SETTINGS
        elif key == KEY_ESC and self.app.session.is_switching:
            self.app.cancel_switch()
        elif self.screen_name == "EC2":
            self._handle_instance_key(key)

    def _handle_instance_key(self, key: int) -> None:
        instance = self.selected_instance()
        if instance is None:
            return
        if key == ord("s"):
            self.app.start_instance(instance.id)
        elif key == ord("x"):
            self.app.stop_instance(instance.id)
        elif key == ord("t"):
            self.dialog_target = instance.id
            self.dialog = Dialog.CONFIRM_TERMINATE
        elif key == ord("a"):
            self.dialog_target = instance.id
            self.schedule_index = 1
            self.dialog = Dialog.SCHEDULE
        elif key == ord("A"):
            self.app.cancel_auto_stop(instance.id)

    def _handle_dialog_key(self, key: int) -> None:
        if key in (KEY_ESC, ord("q")):
            if self.dialog is Dialog.PROFILES and self.app.session.is_switching:
                self.app.cancel_switch()
            self.dialog = Dialog.NONE
            self.settings_draft = None
            return

        if self.dialog is Dialog.PROFILES:
            count = len(self.app.session.profiles)
            self._clamp_profile_index()
            if key in (curses.KEY_UP, ord("k")):
                self.profile_index = max(0, self.profile_index - 1)
            elif key in (curses.KEY_DOWN, ord("j")) and count:
                self.profile_index = min(count - 1, self.profile_index + 1)
            elif (key in KEY_ENTER or key == ord("l")) and count:
                name = self.app.session.profiles[self.profile_index].name
                self.app.select_profile(name, login=(key == ord("l")))
            return

        if self.dialog is Dialog.SCHEDULE:
            if key in (curses.KEY_LEFT, ord("-")):
                self.schedule_index = max(0, self.schedule_index - 1)
            elif key in (curses.KEY_RIGHT, ord("+"), ord("=")):
                self.schedule_index = min(len(AUTO_STOP_DURATIONS) - 1, self.schedule_index + 1)
            elif key in KEY_ENTER:
                seconds = AUTO_STOP_DURATIONS[self.schedule_index]
                self.app.schedule_auto_stop(self.dialog_target, timedelta(seconds=seconds))
                self.dialog = Dialog.NONE
            return

        if self.dialog is Dialog.CONFIRM_TERMINATE:
            if key in KEY_ENTER or key == ord("y"):
                self.app.terminate_instance(self.dialog_target)
                self.dialog = Dialog.NONE
            elif key == ord("n"):
                self.dialog = Dialog.NONE
            return

        if self.dialog is Dialog.SETTINGS:
            self._handle_settings_key(key)
            return

        # Help / Alert
        if key in KEY_ENTER:
            self.dialog = Dialog.NONE

    def _handle_settings_key(self, key: int) -> None:
        draft = self.settings_draft
        if key in (curses.KEY_UP, ord("k")):
            self.settings_field = (self.settings_field - 1) % len(SETTINGS_FIELDS)
        elif key in (curses.KEY_DOWN, ord("j")):
            self.settings_field = (self.settings_field + 1) % len(SETTINGS_FIELDS)
        elif key in (curses.KEY_LEFT, curses.KEY_RIGHT, ord("-"), ord("+"), ord("=")):
            forward = key not in (curses.KEY_LEFT, ord("-"))
            field = SETTINGS_FIELDS[self.settings_field]
            if field == "Refresh interval":
                draft.cycle_refresh_interval(forward)
            elif field == "Show logs tab":
                draft.toggle_logs_panel()
            elif field == "Log level":
                draft.cycle_log_level(forward)
            elif field == "Alert threshold":
                draft.cycle_alert_threshold(forward)
            elif field == "Sound alerts":
                draft.toggle_sound()
        elif key in KEY_ENTER:
            if SETTINGS_FIELDS[self.settings_field] == "Test sound":
                self.app.trigger_test_alert()
                return
            self.app.apply_settings(draft)
            if not draft.show_logs_panel and self.screen_name == "Logs":
                self.screen = 0
            self.settings_draft = None
            self.dialog = Dialog.NONE

    # ---- state-driven dialogs ----

    def _clamp_profile_index(self) -> None:
        count = len(self.app.session.profiles)
        self.profile_index = max(0, min(self.profile_index, count - 1))

    def update_dialogs(self) -> None:
        """Open the recovery dialog on expiry and show pending alerts."""
        session = self.app.session
        state = session.state
        if session.needs_recovery:
            if state != self._recovery_seen:
                self._recovery_seen = state
                if self.dialog in (Dialog.NONE, Dialog.HELP):
                    self.open_profiles()
        else:
            self._recovery_seen = None

        # The list can shrink under the cursor when the profile files change
        self._clamp_profile_index()

        if session.is_switching:
            self._switch_pending = True
        elif self._switch_pending:
            self._switch_pending = False
            # A successful switch closes the profile dialog, a failed one leaves it open
            if isinstance(state, Active) and self.dialog is Dialog.PROFILES:
                self.dialog = Dialog.NONE

        if self.dialog is Dialog.NONE:
            alert = self.app.notifier.pop_alert()
            if alert is not None:
                self.alert_message = alert.message
                self.dialog = Dialog.ALERT

    # ---- drawing ----

    def _init_colors(self) -> None:
        if not curses.has_colors():
            return
        curses.start_color()
        curses.use_default_colors()
        curses.init_pair(PAIR_OK, curses.COLOR_GREEN, -1)
        curses.init_pair(PAIR_WARN, curses.COLOR_YELLOW, -1)
        curses.init_pair(PAIR_ERROR, curses.COLOR_RED, -1)
        curses.init_pair(PAIR_TITLE, curses.COLOR_CYAN, -1)

    def _color(self, pair: int) -> int:
        return curses.color_pair(pair) if curses.has_colors() else 0

    def _state_line(self) -> str:
        state = self.app.session.state
        if isinstance(state, Active):
            text = f"Profile: {state.profile}"
        elif isinstance(state, Expired):
            text = f"Profile: {state.profile} (EXPIRED)"
        elif isinstance(state, Switching):
            step = "logging in" if self.app.scheduler.is_running(LOGIN) else "activating"
            text = f"Switching {state.from_profile or '-'} -> {state.to_profile} ({step})"
        else:
            text = "Not authenticated"
        if self.app.fetching:
            text += " | fetching..."
        else:
            remaining = self.app.seconds_until_refresh()
            if remaining is not None:
                text += f" | next refresh {remaining}s"
        if self.app.refresh_timer.boosted:
            text += " | fast refresh"
        return text

    def draw(self, stdscr) -> None:
        stdscr.erase()
        height, width = stdscr.getmaxyx()

        x = 1
        for idx, name in enumerate(SCREENS):
            if name == "Logs" and not self.app.settings.show_logs_panel:
                continue
            label = f" {idx + 1}:{name} "
            attr = curses.A_REVERSE if idx == self.screen else 0
            _safe_add(stdscr, 0, x, label, attr)
            x += len(label) + 1
        _safe_add(stdscr, 1, 1, self._state_line(), self._color(PAIR_TITLE))

        body = {"Home": self._draw_home, "EC2": self._draw_instances,
                "Lambda": self._draw_functions, "Logs": self._draw_logs}[self.screen_name]
        body(stdscr, 3, height - 2)

        self._draw_toasts(stdscr, height, width)
        _safe_add(stdscr, height - 1, 1, "? help  c profiles  r refresh  , settings  q quit", curses.A_DIM)
        if self.dialog is not Dialog.NONE:
            self._draw_dialog(stdscr, height, width)
        stdscr.refresh()

    def _draw_home(self, stdscr, top: int, bottom: int) -> None:
        snap = self.app.snapshot
        running = sum(1 for i in snap.instances if i.state == "running")
        lines = [
            f"EC2 instances: {len(snap.instances)} ({running} running)",
            f"Lambda functions: {len(snap.functions)}",
            f"Auto-stop schedules: {len(self.app.scheduler.auto_stop_schedule)}",
            f"Last refresh: {snap.fetched_at:%H:%M:%S}" if snap.fetched_at else "Last refresh: never",
            "",
            "Background operations: " + (", ".join(str(k) for k in self.app.scheduler.running()) or "idle"),
        ]
        for offset, line in enumerate(lines):
            if top + offset < bottom:
                _safe_add(stdscr, top + offset, 2, line)

    def _draw_instances(self, stdscr, top: int, bottom: int) -> None:
        header = f"{'NAME':<24} {'ID':<20} {'TYPE':<12} {'STATE':<12} {'PUBLIC IP':<16} AUTO-STOP"
        _safe_add(stdscr, top, 2, header, curses.A_BOLD)
        schedule = self.app.scheduler.auto_stop_schedule
        for row, instance in enumerate(self.app.snapshot.instances):
            y = top + 1 + row
            if y >= bottom:
                break
            entry = schedule.get(instance.id)
            auto = f"{entry.deadline:%H:%M:%S}" if entry else "-"
            line = (f"{instance.name[:24]:<24} {instance.id:<20} {instance.instance_type:<12} "
                    f"{instance.state:<12} {(instance.public_ip or '-'):<16} {auto}")
            attr = curses.A_REVERSE if row == self.selected["EC2"] else 0
            if instance.state == "running":
                attr |= self._color(PAIR_OK)
            elif instance.state in ("pending", "stopping", "shutting-down"):
                attr |= self._color(PAIR_WARN)
            _safe_add(stdscr, y, 2, line, attr)

    def _draw_functions(self, stdscr, top: int, bottom: int) -> None:
        _safe_add(stdscr, top, 2, f"{'NAME':<40} {'RUNTIME':<14} {'MEMORY':>8}  LAST MODIFIED", curses.A_BOLD)
        for row, function in enumerate(self.app.snapshot.functions):
            y = top + 1 + row
            if y >= bottom:
                break
            attr = curses.A_REVERSE if row == self.selected["Lambda"] else 0
            _safe_add(stdscr, y, 2, f"{function.name[:40]:<40} {function.runtime:<14} "
                                    f"{function.memory:>6}MB  {function.last_modified}", attr)

    def _draw_logs(self, stdscr, top: int, bottom: int) -> None:
        if self.log_buffer is None:
            return
        records = [r for r in self.log_buffer.records() if self.app.settings.should_show_log(r.levelno)]
        visible = records[-max(0, bottom - top):]
        for offset, record in enumerate(visible):
            attr = self._color(PAIR_ERROR) if record.levelno >= logging.ERROR else 0
            _safe_add(stdscr, top + offset, 2, f"{record.levelname:<8} {record.getMessage()}", attr)

    def _draw_toasts(self, stdscr, height: int, width: int) -> None:
        toasts = self.app.notifier.active_toasts()[-3:]
        for offset, toast in enumerate(reversed(toasts)):
            text = toast.message.splitlines()[0][:60]
            pair = {Severity.ERROR: PAIR_ERROR, Severity.WARNING: PAIR_WARN,
                    Severity.SUCCESS: PAIR_OK}.get(toast.severity, PAIR_TITLE)
            _safe_add(stdscr, height - 2 - offset, max(1, width - len(text) - 3), text, self._color(pair))

    def _dialog_lines(self) -> List[str]:
        if self.dialog is Dialog.HELP:
            return ["Keys", ""] + HELP_LINES
        if self.dialog is Dialog.PROFILES:
            state = self.app.session.state
            title = "Session expired - choose a profile" if isinstance(state, Expired) else "AWS profiles"
            lines = [title, "Enter: activate   l: SSO login + activate   Esc: close", ""]
            for idx, profile in enumerate(self.app.session.profile_list()):
                marker = ">" if idx == self.profile_index else " "
                active = " (active)" if profile.is_active else ""
                lines.append(f"{marker} {profile.name} [{profile.kind.value}]{active}")
            if not self.app.session.profiles:
                lines.append("No profiles found. Run 'aws configure sso'")
            if isinstance(state, Switching):
                lines += ["", f"Switching to {state.to_profile}... (Esc to cancel)"]
            return lines
        if self.dialog is Dialog.CONFIRM_TERMINATE:
            name = self.app.snapshot.display_name(self.dialog_target)
            return ["Terminate instance?", "", f"{name} ({self.dialog_target})", "", "y/Enter: terminate   n/Esc: cancel"]
        if self.dialog is Dialog.SCHEDULE:
            options = "  ".join(
                f"[{format_seconds(s)}]" if idx == self.schedule_index else format_seconds(s)
                for idx, s in enumerate(AUTO_STOP_DURATIONS)
            )
            return ["Schedule auto-stop", "", self.app.snapshot.display_name(self.dialog_target), "",
                    options, "", "Left/Right: choose   Enter: schedule"]
        if self.dialog is Dialog.ALERT:
            return ["Alert", ""] + self.alert_message.splitlines() + ["", "Enter: dismiss"]
        if self.dialog is Dialog.SETTINGS:
            d = self.settings_draft
            values = [format_seconds(d.refresh_interval_secs),
                      "on" if d.show_logs_panel else "off", d.log_level,
                      format_seconds(d.alert_threshold_secs),
                      "on" if d.sound_enabled else "off", "press Enter"]
            lines = ["Settings", "Up/Down: field  Left/Right: change  Enter: save", ""]
            for idx, (label, value) in enumerate(zip(SETTINGS_FIELDS, values)):
                marker = ">" if idx == self.settings_field else " "
                lines.append(f"{marker} {label:<18} {value}")
            return lines
        return []

    def _draw_dialog(self, stdscr, height: int, width: int) -> None:
        lines = self._dialog_lines()
        box_w = min(width - 4, max(40, max((len(l) for l in lines), default=0) + 4))
        box_h = min(height - 2, len(lines) + 2)
        top = max(0, (height - box_h) // 2)
        left = max(0, (width - box_w) // 2)
        try:
            win = stdscr.derwin(box_h, box_w, top, left)
            win.erase()
            win.box()
        except curses.error:
            return
        for offset, line in enumerate(lines[: box_h - 2]):
            attr = curses.A_BOLD if offset == 0 else 0
            _safe_add(win, 1 + offset, 2, line, attr)

    # ---- loop ----

    def run(self, stdscr) -> int:
        self._init_colors()
        try:
            curses.curs_set(0)
        except curses.error:
            pass
        stdscr.keypad(True)
        stdscr.timeout(self.tick_ms)

        while not self.app.should_quit:
            try:
                self.app.tick()
                self.update_dialogs()
                self.draw(stdscr)
                self.handle_key(stdscr.getch())
            except KeyboardInterrupt:
                self.app.should_quit = True
            except curses.error as e:
                logger.debug(f"curses error: {e}")
            except Exception as e:
                logger.exception("Error in dashboard loop")
                self.app.notifier.error(f"Internal error: {e}")
        return 0


def run_dashboard(app, log_buffer: Optional[LogBuffer] = None, tick_ms: int = 250) -> int:
    dashboard = Dashboard(app, log_buffer, tick_ms)
    return curses.wrapper(dashboard.run)
