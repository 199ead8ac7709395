"""
Unit tests for dashboard key handling and dialogs.
"""
import threading
from datetime import timedelta

import pytest

from cloudctl.models import Profile, ProfileKind
from cloudctl.scheduler import ACTIVATE_PROFILE, Kind, resource_action
from cloudctl.session import Active
from cloudctl.ui import KEY_ESC, Dashboard, Dialog

WEB = "i-0123456789abcdef0"


@pytest.fixture
def dashboard(active_app):
    board = Dashboard(active_app)
    board.update_dialogs()
    return board


def press(board, *keys):
    for key in keys:
        board.handle_key(ord(key) if isinstance(key, str) else key)


@pytest.mark.unit
class TestKeys:
    """Tests for the main key bindings."""

    def test_quit(self, dashboard):
        """Test that q quits."""
        press(dashboard, "q")
        assert dashboard.app.should_quit

    def test_tabs(self, dashboard):
        """Test tab switching; the Logs tab only when enabled."""
        press(dashboard, "2")
        assert dashboard.screen_name == "EC2"

        press(dashboard, "4")
        assert dashboard.screen_name == "EC2"

        dashboard.app.settings.show_logs_panel = True
        press(dashboard, "4")
        assert dashboard.screen_name == "Logs"

    def test_stop_selected_instance(self, dashboard):
        """Test that x stops the selected instance."""
        press(dashboard, "2", "x")

        assert dashboard.app.scheduler.get(resource_action(Kind.STOP, WEB)) is not None

    def test_terminate_needs_confirmation(self, dashboard):
        """Test that t opens a confirmation before terminating."""
        press(dashboard, "2", "t")
        assert dashboard.dialog is Dialog.CONFIRM_TERMINATE
        assert dashboard.app.scheduler.get(resource_action(Kind.TERMINATE, WEB)) is None

        press(dashboard, "y")
        assert dashboard.dialog is Dialog.NONE
        assert dashboard.app.scheduler.get(resource_action(Kind.TERMINATE, WEB)) is not None

    def test_schedule_auto_stop(self, dashboard):
        """Test choosing an auto-stop duration."""
        press(dashboard, "2", "a", "+", 10)

        entry = dashboard.app.scheduler.auto_stop_schedule.get(WEB)
        assert entry.deadline - dashboard.app.clock() == timedelta(hours=2)

    def test_settings_dialog_saves_draft(self, dashboard):
        """Test that settings are edited on a copy and applied on Enter."""
        press(dashboard, ",", "+")
        assert dashboard.app.settings.refresh_interval_secs == 60

        press(dashboard, 10)
        assert dashboard.app.settings.refresh_interval_secs == 120
        assert dashboard.dialog is Dialog.NONE


@pytest.mark.unit
class TestDialogs:
    """Tests for state-driven dialogs."""

    def test_expiry_opens_profile_dialog(self, dashboard):
        """Test that the recovery dialog opens when the session expires."""
        dashboard.app.session.mark_expired()

        dashboard.update_dialogs()

        assert dashboard.dialog is Dialog.PROFILES
        assert dashboard._dialog_lines()[0] == "Session expired - choose a profile"

    def test_escape_cancels_switch(self, dashboard):
        """Test that Esc in the profile dialog cancels an in-flight switch."""
        gate = threading.Event()
        dashboard.app.credentials.activate.side_effect = lambda name: gate.wait(5) and {}
        press(dashboard, "c", "j", 10)
        assert dashboard.app.session.is_switching

        press(dashboard, KEY_ESC)
        gate.set()

        assert dashboard.app.session.state == Active("work")
        assert dashboard.dialog is Dialog.NONE

    def test_successful_switch_closes_dialog(self, dashboard, finish):
        """Test that the profile dialog closes once the new profile is active."""
        press(dashboard, "c", "j", 10)
        dashboard.update_dialogs()

        finish(dashboard.app, ACTIVATE_PROFILE)
        dashboard.update_dialogs()

        assert dashboard.app.session.state == Active("personal")
        assert dashboard.dialog is Dialog.NONE

    def test_profile_list_shrinks_under_cursor(self, dashboard):
        """Test that the cursor follows a profile list that got shorter."""
        press(dashboard, "c", "j")
        assert dashboard.profile_index == 1

        dashboard.app.session.profiles = [Profile("work", ProfileKind.SSO)]
        press(dashboard, 10)

        assert dashboard.profile_index == 0
        assert dashboard.app.session.state.to_profile == "work"

    def test_empty_profile_list(self, dashboard):
        """Test that Enter does nothing once every profile is gone."""
        press(dashboard, "c", "j")
        dashboard.app.session.profiles = []

        dashboard.update_dialogs()
        press(dashboard, 10, "l")

        assert dashboard.profile_index == 0
        assert dashboard.app.session.state == Active("work")

    def test_alert_dialog(self, dashboard):
        """Test that pending alerts are shown one at a time."""
        dashboard.app.notifier.warning("Instance web-server running for 3h 0m", alert=True)

        dashboard.update_dialogs()
        assert dashboard.dialog is Dialog.ALERT

        press(dashboard, 10)
        assert dashboard.dialog is Dialog.NONE
