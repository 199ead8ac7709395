"""
Configuration for the cloud controller.

Process-level knobs come from environment variables (read once at import),
user-editable settings live in a small JSON file that the settings dialog
rewrites. A missing settings file is created with defaults on first load.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

logger = logging.getLogger("cloudctl.config")

# ---- Configuration (override via environment) ----
CONFIG_DIR = Path(os.environ.get(
    "CLOUDCTL_CONFIG_DIR",
    str(Path.home() / ".config" / "aws-cloud-controller")
))
SETTINGS_FILE = CONFIG_DIR / "settings.json"
LOG_FILE = CONFIG_DIR / "cloudctl.log"
AWS_REGION = os.environ.get("AWS_REGION") or None
TICK_MS = int(os.environ.get("CLOUDCTL_TICK_MS", "250"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").upper()

REFRESH_INTERVALS = (15, 30, 60, 120, 300)  # 15s .. 5m
ALERT_THRESHOLDS = (1800, 3600, 7200, 14400, 28800)  # 30m .. 8h
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
AUTO_STOP_DURATIONS = (1800, 3600, 7200, 14400)


def _cycle(options, current, forward: bool, fallback_index: int):
    try:
        idx = options.index(current)
    except ValueError:
        idx = fallback_index
    step = 1 if forward else -1
    return options[(idx + step) % len(options)]


def format_seconds(seconds: int) -> str:
    """Format a duration the way the settings dialog shows it (15s, 2m, 4h)."""
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"


@dataclass
class Settings:
    refresh_interval_secs: int = 60
    alert_threshold_secs: int = 3600
    sound_enabled: bool = True
    show_logs_panel: bool = False
    log_level: str = "INFO"
    default_profile: Optional[str] = None

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(seconds=self.refresh_interval_secs)

    @property
    def alert_threshold(self) -> timedelta:
        return timedelta(seconds=self.alert_threshold_secs)

    def cycle_refresh_interval(self, forward: bool = True) -> None:
        self.refresh_interval_secs = _cycle(REFRESH_INTERVALS, self.refresh_interval_secs, forward, 2)

    def cycle_alert_threshold(self, forward: bool = True) -> None:
        self.alert_threshold_secs = _cycle(ALERT_THRESHOLDS, self.alert_threshold_secs, forward, 1)

    def cycle_log_level(self, forward: bool = True) -> None:
        self.log_level = _cycle(LOG_LEVELS, self.log_level, forward, 1)

    def toggle_sound(self) -> None:
        self.sound_enabled = not self.sound_enabled

    def toggle_logs_panel(self) -> None:
        self.show_logs_panel = not self.show_logs_panel

    def should_show_log(self, levelno: int) -> bool:
        return levelno >= getattr(logging, str(self.log_level).upper(), logging.INFO)

    def copy(self) -> "Settings":
        return Settings(**asdict(self))

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from disk.

        Returns defaults (and writes them) when the file does not exist.
        Unknown keys are ignored so older/newer files still load.

        Raises:
            ValueError: the file exists but is not a JSON object
        """
        path = Path(path or SETTINGS_FILE)
        if not path.exists():
            settings = cls()
            settings.save(path)
            return settings

        with path.open("r") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid settings file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Invalid settings file {path}: expected an object, got {type(data).__name__}")

        values = {}
        for name, value in data.items():
            if name not in _FIELD_CHECKS:
                continue
            if not _FIELD_CHECKS[name](value):
                logger.warning(f"Ignoring invalid setting {name}={value!r}, using default")
                continue
            values[name] = value.upper() if name == "log_level" else value
        return cls(**values)

    def save(self, path: Optional[Path] = None) -> None:
        path = Path(path or SETTINGS_FILE)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w") as f:
            json.dump(asdict(self), f, indent=2)
        logger.debug(f"Settings saved to {path}")


def _positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


# Values of the wrong type fall back to the field default
_FIELD_CHECKS = {
    "refresh_interval_secs": _positive_int,
    "alert_threshold_secs": _positive_int,
    "sound_enabled": lambda v: isinstance(v, bool),
    "show_logs_panel": lambda v: isinstance(v, bool),
    "log_level": lambda v: isinstance(v, str) and v.upper() in LOG_LEVELS,
    "default_profile": lambda v: v is None or (isinstance(v, str) and v != ""),
}


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings, falling back to defaults when the file is unreadable."""
    try:
        return Settings.load(path)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load settings, using defaults: {e}")
        return Settings()
