"""
Session/profile state machine.

SessionState is a tagged variant:

    Unauthenticated
    Active(profile)
    Expired(profile)
    Switching(from_profile, to_profile)

The profile used for every resource call is read from the current state at
the point of use (`SessionMachine.active_profile`). There is deliberately no
other place that remembers "the current profile".

Switching runs up to two background operations: an SSO login (when asked for,
or when the target's cached token is expired) followed by activation. A
failure or a cancel puts the machine back in the state the switch started
from, so it never lingers in Switching after the completion event.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from cloudctl.credentials import MISSING_SSO_CONFIG_MARKER
from cloudctl.errors import (
    ActivationFailed,
    InvalidTransition,
    LoginFailed,
    ProfileNotFound,
    Unauthorized,
)
from cloudctl.models import Profile, ProfileKind
from cloudctl.scheduler import ACTIVATE_PROFILE, LOGIN, RELOAD_PROFILES, Completion

logger = logging.getLogger("cloudctl.session")


@dataclass(frozen=True)
class Unauthenticated:
    def __str__(self):
        return "Unauthenticated"


@dataclass(frozen=True)
class Active:
    profile: str

    def __str__(self):
        return f"Active({self.profile})"


@dataclass(frozen=True)
class Expired:
    profile: str

    def __str__(self):
        return f"Expired({self.profile})"


@dataclass(frozen=True)
class Switching:
    from_profile: Optional[str]
    to_profile: str
    previous: "SessionState" = Unauthenticated()
    login: bool = False

    def __str__(self):
        return f"Switching({self.from_profile}, {self.to_profile})"


SessionState = Union[Unauthenticated, Active, Expired, Switching]

ALLOWED_TRANSITIONS = {
    (Unauthenticated, Switching),
    (Active, Expired),
    (Active, Switching),
    (Expired, Switching),
    (Switching, Active),
    (Switching, Expired),
    (Switching, Unauthenticated),
}


class SessionMachine:
    def __init__(self, credentials, scheduler, notifier,
                 on_activated: Optional[Callable[[str], None]] = None):
        self.credentials = credentials
        self.scheduler = scheduler
        self.notifier = notifier
        self.on_activated = on_activated
        self.state: SessionState = Unauthenticated()
        self.profiles: List[Profile] = []

    # ---- queries ----

    @property
    def active_profile(self) -> Optional[str]:
        """The profile resource calls must use right now, or None."""
        if isinstance(self.state, Active):
            return self.state.profile
        return None

    @property
    def is_switching(self) -> bool:
        return isinstance(self.state, Switching)

    @property
    def needs_recovery(self) -> bool:
        return isinstance(self.state, (Unauthenticated, Expired))

    def profile_list(self) -> List[Profile]:
        active = self.active_profile
        return [p.with_active(p.name == active) for p in self.profiles]

    def reload_profiles(self) -> List[Profile]:
        """Read the profile files synchronously. Only used before the main loop starts."""
        self.profiles = self.credentials.list_profiles()
        logger.info(f"Loaded {len(self.profiles)} AWS profiles")
        return self.profiles

    def request_reload(self) -> None:
        """Re-read the profile files on a worker; the list is swapped on completion."""
        credentials = self.credentials
        self.scheduler.submit(RELOAD_PROFILES, lambda token: credentials.list_profiles())

    def _lookup(self, name: str) -> Profile:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        raise ProfileNotFound(name)

    # ---- transitions ----

    def _transition(self, target: SessionState) -> None:
        if (type(self.state), type(target)) not in ALLOWED_TRANSITIONS:
            raise InvalidTransition(self.state, target)
        logger.info(f"Session: {self.state} -> {target}")
        self.state = target

    def start(self, preferred: Optional[str] = None) -> bool:
        """Activate the preferred profile (or the credential chain's default) at startup."""
        names = [p.name for p in self.reload_profiles()]
        name = preferred if preferred in names else self.credentials.current_profile()
        if preferred and preferred not in names:
            logger.warning(f"Default profile '{preferred}' not found in available profiles")
        if name is None:
            self.notifier.warning("No AWS profiles configured. Run 'aws configure' or 'aws configure sso'")
            return False
        return self.select(name, auto_login=False)

    def select(self, name: str, login: bool = False, auto_login: bool = True) -> bool:
        """
        Begin switching to `name`.

        Args:
            name: profile to switch to (may be the current/expired one)
            login: run `aws sso login` before activating
            auto_login: also log in when the target's SSO token is expired

        Returns:
            True if a switch was started.
        """
        if self.is_switching:
            self.notifier.warning(f"Already switching to {self.state.to_profile}")
            return False

        try:
            profile = self._lookup(name)
        except ProfileNotFound as e:
            self.notifier.error(str(e))
            return False

        # Without an explicit request the login step only runs if the cached token is expired
        login_step = profile.kind is ProfileKind.SSO and (login or auto_login)
        if login and profile.kind is not ProfileKind.SSO:
            logger.info(f"Profile {name} is not an SSO profile, skipping login")

        from_profile = getattr(self.state, "profile", None)
        self._transition(Switching(from_profile, name, previous=self.state, login=login_step))

        if login_step:
            self._submit_login(name, only_if_expired=not login)
        else:
            self._submit_activate(name)
        return True

    def cancel(self) -> bool:
        """Abandon an in-flight switch. A running login process is left to finish."""
        if not self.is_switching:
            return False
        state = self.state
        self.scheduler.cancel(LOGIN)
        self.scheduler.cancel(ACTIVATE_PROFILE)
        self._transition(state.previous)
        self.notifier.info(f"Cancelled switch to {state.to_profile}")
        return True

    def mark_expired(self, profile: Optional[str] = None) -> bool:
        """
        Active(p) -> Expired(p).

        `profile` is the profile the failing call was made with; a late
        failure for some other profile does not expire the current session.
        """
        state = self.state
        if not isinstance(state, Active):
            return False
        if profile is not None and profile != state.profile:
            logger.debug(f"Ignoring expiry signal for {profile}, active is {state.profile}")
            return False
        self._transition(Expired(state.profile))
        self.notifier.warning(f"AWS session expired for profile {state.profile}", alert=True)
        return True

    def handle_error(self, error: BaseException, profile: Optional[str] = None) -> bool:
        """Translate an Unauthorized API error into an expiry. Returns True if consumed."""
        if isinstance(error, Unauthorized):
            return self.mark_expired(profile)
        return False

    # ---- background operations ----

    def _submit_login(self, name: str, only_if_expired: bool = False) -> None:
        credentials = self.credentials
        if only_if_expired:
            self.notifier.info(f"Checking SSO session for {name}...")
        else:
            self.notifier.info(f"Starting AWS SSO login for {name}... check browser")

        def work(token):
            if only_if_expired and not credentials.is_expired(name):
                return None
            if token.cancelled:
                return None
            return credentials.launch_login(name)
        self.scheduler.submit(LOGIN, work, context=name)

    def _submit_activate(self, name: str) -> None:
        self.notifier.info(f"Switching to profile '{name}'...")
        credentials = self.credentials
        self.scheduler.submit(ACTIVATE_PROFILE, lambda token: credentials.activate(name), context=name)

    def handle(self, completion: Completion) -> bool:
        """Consume LOGIN, ACTIVATE_PROFILE and RELOAD_PROFILES completions. Returns False for anything else."""
        if completion.key == LOGIN:
            self._on_login(completion)
            return True
        if completion.key == ACTIVATE_PROFILE:
            self._on_activate(completion)
            return True
        if completion.key == RELOAD_PROFILES:
            self._on_reload(completion)
            return True
        return False

    def _on_reload(self, completion: Completion) -> None:
        if not completion.ok:
            self.notifier.error(f"Failed to reload AWS profiles: {completion.error}")
            return
        self.profiles = completion.result
        logger.info(f"Loaded {len(self.profiles)} AWS profiles")
        self.notifier.info("AWS profiles reloaded")

    def _current_target(self, completion: Completion) -> Optional[Switching]:
        state = self.state
        if not isinstance(state, Switching) or completion.context != state.to_profile:
            logger.debug(f"Ignoring {completion.key} result for {completion.context} in state {state}")
            return None
        return state

    def _on_login(self, completion: Completion) -> None:
        state = self._current_target(completion)
        if state is None:
            return
        if not completion.ok:
            self._fail(state, completion.error)
            return
        if completion.result is None:
            logger.info(f"SSO token for {state.to_profile} still valid, skipping login")
        else:
            self.notifier.success(f"Login successful for {state.to_profile}! Activating profile...")
        self._submit_activate(state.to_profile)

    def _on_activate(self, completion: Completion) -> None:
        state = self._current_target(completion)
        if state is None:
            return
        if not completion.ok:
            self._fail(state, completion.error)
            return

        self._transition(Active(state.to_profile))
        identity = completion.result or {}
        account = identity.get("Account") if isinstance(identity, dict) else None
        suffix = f" (account {account})" if account else ""
        self.notifier.success(f"Active profile: {state.to_profile}{suffix}")
        if self.on_activated is not None:
            self.on_activated(state.to_profile)

    def _fail(self, state: Switching, error: BaseException) -> None:
        self._transition(state.previous)

        if isinstance(error, LoginFailed):
            self.notifier.error(
                f"Login failed for {error.profile} (exit {error.exit_code}):\n{error.output}"
            )
            if MISSING_SSO_CONFIG_MARKER in error.output:
                self.notifier.warning("SSO configuration missing. Run 'aws configure sso'")
        elif isinstance(error, (ActivationFailed, ProfileNotFound)):
            self.notifier.error(str(error))
        else:
            self.notifier.error(f"Failed to switch to {state.to_profile}: {error}")
