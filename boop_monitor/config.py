"""Settings for the boop session monitor.

Settings are owned by the menu-bar/settings front end and persisted at
~/.boop/config.json using the camelCase keys below. The monitor only reads
that file (at startup and on SIGHUP); pause toggles made through the daemon
live in memory until the front end writes the file again.

Example config.json:
    {
      "version": 1,
      "ntfy": {"server": "https://ntfy.sh", "topic": "boop-k3v9..."},
      "notifications": {
        "approval": {"enabled": true, "priority": "urgent"},
        "completed": {"enabled": true, "priority": "default"},
        "error": {"enabled": true, "priority": "high"}
      },
      "tools": {"claude": true, "codex": true},
      "quietHours": {"enabled": false, "start": "22:00", "end": "08:00"},
      "respectDND": true,
      "isPaused": false
    }
"""

import json
import logging
import os
import secrets
from datetime import datetime, time
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_NTFY_SERVER = "https://ntfy.sh"

TOPIC_PREFIX = "boop-"
TOPIC_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
TOPIC_LENGTH = 24


def generate_topic() -> str:
    """Generate a hard-to-guess ntfy topic name."""
    suffix = "".join(secrets.choice(TOPIC_ALPHABET) for _ in range(TOPIC_LENGTH))
    return TOPIC_PREFIX + suffix


def is_valid_topic(topic: str) -> bool:
    """Check that a topic looks like one produced by generate_topic()."""
    if not topic.startswith(TOPIC_PREFIX):
        return False
    suffix = topic[len(TOPIC_PREFIX):]
    return len(suffix) == TOPIC_LENGTH and all(c in TOPIC_ALPHABET for c in suffix)


# =============================================================================
# Default paths
# =============================================================================


def get_boop_dir() -> Path:
    """Per-user application directory (env: BOOP_DIR)."""
    return Path(os.environ.get("BOOP_DIR", Path.home() / ".boop"))


def get_default_socket_path() -> Path:
    """Socket the shell hooks write to (env: BOOP_SOCKET)."""
    override = os.environ.get("BOOP_SOCKET")
    return Path(override) if override else get_boop_dir() / "sock"


def get_default_config_path() -> Path:
    """Settings file written by the front end (env: BOOP_CONFIG)."""
    override = os.environ.get("BOOP_CONFIG")
    return Path(override) if override else get_boop_dir() / "config.json"


def get_default_status_path() -> Path:
    """Status snapshot for panel widgets (env: BOOP_STATUS_FILE)."""
    override = os.environ.get("BOOP_STATUS_FILE")
    if override:
        return Path(override)
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR", "/tmp")
    return Path(runtime_dir) / "boop-status.json"


# =============================================================================
# Settings models
# =============================================================================


class NotificationPriority(str, Enum):
    """ntfy message priority."""

    MIN = "min"
    LOW = "low"
    DEFAULT = "default"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def level(self) -> int:
        """Numeric value sent in the Priority header (1-5)."""
        return {
            NotificationPriority.MIN: 1,
            NotificationPriority.LOW: 2,
            NotificationPriority.DEFAULT: 3,
            NotificationPriority.HIGH: 4,
            NotificationPriority.URGENT: 5,
        }[self]


class NotificationCategory(str, Enum):
    """Kinds of notification a user can enable separately."""

    APPROVAL = "approval"
    COMPLETED = "completed"
    ERROR = "error"


class _SettingsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)


class NotificationSettings(_SettingsModel):
    enabled: bool = True
    priority: NotificationPriority = NotificationPriority.DEFAULT


class NotificationPreferences(_SettingsModel):
    approval: NotificationSettings = Field(
        default_factory=lambda: NotificationSettings(priority=NotificationPriority.URGENT)
    )
    completed: NotificationSettings = Field(
        default_factory=lambda: NotificationSettings(priority=NotificationPriority.DEFAULT)
    )
    error: NotificationSettings = Field(
        default_factory=lambda: NotificationSettings(priority=NotificationPriority.HIGH)
    )

    def for_category(self, category: NotificationCategory) -> NotificationSettings:
        return getattr(self, category.value)


class NtfySettings(_SettingsModel):
    server: str = DEFAULT_NTFY_SERVER
    topic: str = Field(default_factory=generate_topic)

    @property
    def subscribe_url(self) -> str:
        return f"{self.server.rstrip('/')}/{self.topic}"


class QuietHours(_SettingsModel):
    """Daily window during which notifications are suppressed.

    start/end use "HH:MM". A window whose start is later than its end wraps
    midnight (22:00-08:00 covers the night). Unparseable times disable the
    window.
    """

    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"

    def is_active_at(self, moment: time) -> bool:
        if not self.enabled:
            return False

        try:
            start = datetime.strptime(self.start, "%H:%M").time()
            end = datetime.strptime(self.end, "%H:%M").time()
        except ValueError:
            logger.warning(f"Ignoring quiet hours with invalid times: {self.start}-{self.end}")
            return False

        current = moment.hour * 60 + moment.minute
        start_minutes = start.hour * 60 + start.minute
        end_minutes = end.hour * 60 + end.minute

        if start_minutes < end_minutes:
            return start_minutes <= current < end_minutes
        # Overnight range; start == end covers the whole day
        return current >= start_minutes or current < end_minutes

    def is_currently_active(self, now: Optional[datetime] = None) -> bool:
        """Evaluate the window against local wall-clock time."""
        now = now.astimezone() if now else datetime.now()
        return self.is_active_at(now.time())


class ToolSettings(_SettingsModel):
    claude: bool = True
    codex: bool = True

    def is_enabled(self, tool: str) -> bool:
        """Whether sessions from this tool are tracked. Unlisted tools always are."""
        name = tool.lower()
        if name not in type(self).model_fields:
            return True
        return getattr(self, name)


class AppSettings(_SettingsModel):
    """Settings consumed by the monitor."""

    version: int = 1
    ntfy: NtfySettings = Field(default_factory=NtfySettings)
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    quiet_hours: QuietHours = Field(default_factory=QuietHours, alias="quietHours")
    respect_dnd: bool = Field(default=True, alias="respectDND")
    is_paused: bool = Field(default=False, alias="isPaused")


def load_settings(path: Path, strict: bool = False) -> AppSettings:
    """Load settings from the front end's JSON file.

    Args:
        path: Path to config.json
        strict: Raise ConfigError instead of falling back to defaults

    Returns:
        Parsed settings, or defaults when the file is missing or invalid
    """
    if not path.exists():
        logger.info(f"No settings file at {path}, using defaults")
        return AppSettings()

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        settings = AppSettings.model_validate(data)
    except (OSError, ValueError, RecursionError, ValidationError) as e:
        # ValueError covers JSONDecodeError and UnicodeDecodeError
        if strict:
            raise ConfigError(path, str(e)) from e
        logger.error(f"Failed to load settings from {path}: {e}")
        logger.warning("Using default settings")
        return AppSettings()

    logger.info(f"Loaded settings from {path}")
    return settings


class SettingsStore:
    """Holds the live settings shared by the registry and the dispatcher."""

    def __init__(self, path: Optional[Path] = None, settings: Optional[AppSettings] = None) -> None:
        self.path = path
        if settings is not None:
            self._settings = settings
        elif path is not None:
            self._settings = load_settings(path)
        else:
            self._settings = AppSettings()

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def reload(self) -> bool:
        """Re-read the settings file, keeping the current settings on failure.

        Returns:
            True if the file was read and applied
        """
        if self.path is None:
            return False
        try:
            self._settings = load_settings(self.path, strict=True)
        except ConfigError as e:
            logger.error(f"Reload failed, keeping previous settings: {e}")
            return False
        logger.info("Settings reloaded")
        return True

    def set_paused(self, paused: bool) -> None:
        self._settings.is_paused = paused
        logger.info(f"Notifications {'paused' if paused else 'resumed'}")

    def toggle_paused(self) -> bool:
        self.set_paused(not self._settings.is_paused)
        return self._settings.is_paused
