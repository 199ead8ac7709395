"""
Credential provider gateway.

Reads AWS profiles from ~/.aws/config and ~/.aws/credentials, checks SSO token
expiry from the SSO cache, verifies a profile with sts.get_caller_identity()
and runs `aws sso login` as an external process.

Every method takes the profile name explicitly. This module never touches
AWS_PROFILE in the process environment; the session state machine decides
which profile is active.
"""
import configparser
import json
import logging
import os
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cloudctl.errors import ActivationFailed, LoginFailed, ProfileNotFound
from cloudctl.models import LoginOutput, Profile, ProfileKind

logger = logging.getLogger("cloudctl.credentials")

# ---- AWS config/cache paths ----
AWS_CONFIG_FILE = Path(os.environ.get(
    "AWS_CONFIG_FILE",
    str(Path.home() / ".aws" / "config")
))
AWS_CREDENTIALS_FILE = Path(os.environ.get(
    "AWS_SHARED_CREDENTIALS_FILE",
    str(Path.home() / ".aws" / "credentials")
))
SSO_CACHE_DIR = Path(os.environ.get(
    "SSO_CACHE_DIR",
    str(Path.home() / ".aws" / "sso" / "cache")
))
SSO_LOGIN_TIMEOUT = int(os.environ.get("SSO_LOGIN_TIMEOUT", "120"))  # seconds

MISSING_SSO_CONFIG_MARKER = "Missing the following required SSO configuration"


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00").replace("UTC", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CredentialGateway:
    """Profile discovery, expiry checks, activation and login."""

    def __init__(self, config_file=None, credentials_file=None, cache_dir=None,
                 session_factory=None, login_timeout: Optional[int] = None):
        self.config_file = Path(config_file or AWS_CONFIG_FILE)
        self.credentials_file = Path(credentials_file or AWS_CREDENTIALS_FILE)
        self.cache_dir = Path(cache_dir or SSO_CACHE_DIR)
        self.session_factory = session_factory or boto3.Session
        self.login_timeout = login_timeout or SSO_LOGIN_TIMEOUT

    # ---- config parsing ----

    def _read_config(self, path: Path) -> configparser.ConfigParser:
        config = configparser.ConfigParser(interpolation=None)
        try:
            config.read(str(path))
        except configparser.Error as e:
            logger.warning(f"Could not parse {path}: {e}")
        return config

    def _config_sections(self) -> Dict[str, configparser.SectionProxy]:
        """Map profile name -> its section in ~/.aws/config."""
        config = self._read_config(self.config_file)
        sections = {}
        for section in config.sections():
            if section == "default":
                sections["default"] = config[section]
            elif section.startswith("profile "):
                sections[section[len("profile "):].strip()] = config[section]
        return sections

    def _credential_sections(self) -> List[str]:
        return self._read_config(self.credentials_file).sections()

    def _sso_start_url(self, profile: str) -> Optional[str]:
        """
        Resolve the SSO start URL for a profile.

        Supports both the sso-session format and the legacy format with
        sso_start_url directly on the profile.
        """
        config = self._read_config(self.config_file)
        profile_section = f"profile {profile}" if profile != "default" else "default"
        if not config.has_section(profile_section):
            return None

        legacy_url = config.get(profile_section, "sso_start_url", fallback=None)
        if legacy_url:
            return legacy_url

        session_name = config.get(profile_section, "sso_session", fallback=None)
        if not session_name:
            return None
        session_section = f"sso-session {session_name}"
        if not config.has_section(session_section):
            return None
        return config.get(session_section, "sso_start_url", fallback=None)

    def _find_sso_token(self, start_url: str) -> Optional[dict]:
        """Find the cached SSO access token matching a start URL."""
        if not self.cache_dir.is_dir():
            return None
        for path in sorted(self.cache_dir.glob("*.json")):
            try:
                with path.open() as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError):
                continue
            if data.get("startUrl") == start_url and "accessToken" in data:
                return data
        return None

    # ---- gateway interface ----

    def list_profiles(self) -> List[Profile]:
        """List configured profiles, config file order first, then credentials-only ones."""
        config_sections = self._config_sections()
        names = list(config_sections)
        for name in self._credential_sections():
            if name not in names:
                names.append(name)

        profiles = []
        for name in names:
            section = config_sections.get(name)
            is_sso = section is not None and (
                "sso_session" in section or "sso_start_url" in section
            )
            if is_sso:
                profiles.append(Profile(name, ProfileKind.SSO, self.token_expiry(name)))
            else:
                profiles.append(Profile(name, ProfileKind.STATIC))
        return profiles

    def profile_names(self) -> List[str]:
        return [p.name for p in self.list_profiles()]

    def current_profile(self) -> Optional[str]:
        """Profile to start with: AWS_PROFILE if known, else default, else the first one."""
        names = self.profile_names()
        env_profile = os.environ.get("AWS_PROFILE")
        if env_profile and env_profile in names:
            return env_profile
        if "default" in names:
            return "default"
        return names[0] if names else None

    def token_expiry(self, name: str) -> Optional[datetime]:
        start_url = self._sso_start_url(name)
        if not start_url:
            return None
        token = self._find_sso_token(start_url)
        if not token:
            return None
        return _parse_timestamp(token.get("expiresAt", ""))

    def is_expired(self, name: str, now: Optional[datetime] = None) -> bool:
        """
        Check whether a profile's credentials are expired.

        Static profiles are never considered expired here; the API tells us
        when they stop working. SSO profiles are expired when no cached token
        exists or its expiresAt has passed.
        """
        if not self._sso_start_url(name):
            return False
        expiry = self.token_expiry(name)
        if expiry is None:
            return True
        now = now or datetime.now(timezone.utc)
        return expiry <= now

    def activate(self, name: str) -> dict:
        """
        Verify a profile can reach AWS.

        Returns:
            The caller identity (Account, Arn, UserId).

        Raises:
            ProfileNotFound: the profile is not configured
            ActivationFailed: credentials could not be resolved or were rejected
        """
        if name not in self.profile_names():
            raise ProfileNotFound(name)

        logger.info(f"Activating profile {name}")
        try:
            session = self.session_factory(profile_name=name)
            identity = session.client("sts").get_caller_identity()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            raise ActivationFailed(name, code or str(e)) from e
        except BotoCoreError as e:
            raise ActivationFailed(name, str(e)) from e

        return {k: identity.get(k) for k in ("Account", "Arn", "UserId")}

    def launch_login(self, name: str) -> LoginOutput:
        """
        Run `aws sso login` for a profile and capture its output.

        stdout and stderr are combined so failures can be reported verbatim.

        Raises:
            ProfileNotFound: the profile is not configured
            LoginFailed: non-zero exit, timeout (-1) or missing aws CLI (127)
        """
        if name not in self.profile_names():
            raise ProfileNotFound(name)

        cmd = ["aws", "sso", "login", "--profile", name]
        logger.info(f"Running: {' '.join(cmd)} (timeout={self.login_timeout}s)")
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                encoding="utf-8",
                errors="replace",
                timeout=self.login_timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = e.output or ""
            if isinstance(output, bytes):
                output = output.decode(errors="replace")
            raise LoginFailed(name, -1, f"{output}\naws sso login timed out after {self.login_timeout}s".strip()) from e
        except FileNotFoundError as e:
            raise LoginFailed(name, 127, f"aws CLI not found: {e}") from e

        result = LoginOutput(name, proc.returncode, proc.stdout or "")
        if not result.ok:
            raise LoginFailed(name, result.exit_code, result.output)
        logger.info(f"aws sso login succeeded for {name}")
        return result
