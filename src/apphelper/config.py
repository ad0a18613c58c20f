"""Settings and persisted state, both stored as property lists."""
from __future__ import annotations

import logging
import os
import plistlib
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .maintenance import DEFAULT_BREW_PATH
from .schedule import DISTANT_PAST, Frequency, ScheduleConfig
from .utils.commands import DEFAULT_TIMEOUT
from .utils.parsers import load_plist, parse_bool, parse_time_of_day

logger = logging.getLogger(__name__)

APP_SUPPORT_DIR = Path.home() / "Library" / "Application Support" / "apphelper"
LOG_DIR = Path.home() / "Library" / "Logs" / "apphelper"
SETTINGS_FILE = "settings.plist"
STATE_FILE = "state.plist"
EVENT_LOG_FILE = "events.sqlite3"
PID_FILE = "apphelper.pid"

RULE_KEYS = (
    "restartMonitorControl",
    "forceQuitSourceKitService",
    "forceQuitOpenAndSavePanelService",
    "cleanUpWebContentRemains",
    "cleanUpSafariRemainsAggressively",
    "startSwitchHosts",
    "startNightOwl",
    "monitorXcodeHighCPUUsage",
)


@dataclass(frozen=True)
class Settings:
    """User settings. Every rule is off until enabled."""

    rules: Mapping[str, bool] = field(default_factory=lambda: {key: False for key in RULE_KEYS})
    notify_user: bool = True
    brew_auto_update: bool = True
    brew_frequency: Frequency = Frequency.HOURLY
    brew_time: Tuple[int, int] = (9, 0)
    brew_weekday: int = 2
    brew_path: str = DEFAULT_BREW_PATH
    command_timeout: float = DEFAULT_TIMEOUT
    notifications_allowed: Optional[bool] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Settings":
        """Build settings from plist data; bad values fall back to defaults."""
        defaults = cls()

        def flag(key: str, default: bool) -> bool:
            value = parse_bool(data.get(key))
            if value is None:
                if key in data:
                    logger.warning("Ignoring invalid value for %s: %r", key, data[key])
                return default
            return value

        rules = {key: flag(key, False) for key in RULE_KEYS}

        frequency = defaults.brew_frequency
        if "brewUpdateFrequency" in data:
            try:
                frequency = Frequency(str(data["brewUpdateFrequency"]).lower())
            except ValueError:
                logger.warning("Unknown brewUpdateFrequency %r", data["brewUpdateFrequency"])

        brew_time = parse_time_of_day(data.get("brewUpdateTime")) or defaults.brew_time

        weekday = defaults.brew_weekday
        if "brewUpdateWeekday" in data:
            try:
                weekday = int(data["brewUpdateWeekday"])
            except (TypeError, ValueError):
                weekday = 0
            if not 1 <= weekday <= 7:
                logger.warning("brewUpdateWeekday must be 1..7 (1 = Sunday): %r", data["brewUpdateWeekday"])
                weekday = defaults.brew_weekday

        timeout = defaults.command_timeout
        if "commandTimeout" in data:
            try:
                timeout = float(data["commandTimeout"])
            except (TypeError, ValueError):
                timeout = 0
            if timeout <= 0:
                logger.warning("Ignoring invalid commandTimeout %r", data["commandTimeout"])
                timeout = defaults.command_timeout

        return cls(
            rules=rules,
            notify_user=flag("notifyUser", defaults.notify_user),
            brew_auto_update=flag("enableBrewAutoUpdate", defaults.brew_auto_update),
            brew_frequency=frequency,
            brew_time=brew_time,
            brew_weekday=weekday,
            brew_path=str(data.get("brewPath") or defaults.brew_path),
            command_timeout=timeout,
            notifications_allowed=parse_bool(data.get("notificationsAllowed")),
        )

    @classmethod
    def load(cls, path: Path) -> "Settings":
        data = load_plist(path)
        if data is None:
            if path.exists():
                logger.warning("Could not read settings from %s, using defaults", path)
            else:
                logger.info("No settings at %s, using defaults", path)
            return cls()
        logger.debug("Loaded settings from %s", path)
        return cls.from_mapping(data)

    def schedule_config(self) -> ScheduleConfig:
        return ScheduleConfig(
            enabled=self.brew_auto_update,
            frequency=self.brew_frequency,
            time_of_day=self.brew_time,
            weekday=self.brew_weekday,
        )

    def enabled_rule_keys(self) -> Tuple[str, ...]:
        return tuple(key for key in RULE_KEYS if self.rules.get(key))


class StateStore:
    """Small persisted key/value state (``state.plist``).

    Holds ``lastBrewUpdateCheck`` and the user's notification decision.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        return load_plist(self.path) or {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("wb") as handle:
            plistlib.dump(data, handle)
        os.replace(tmp, self.path)

    def _update(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            try:
                self._write(data)
            except OSError as exc:
                logger.error("Could not save %s to %s: %s", key, self.path, exc)

    @property
    def last_brew_update_check(self) -> datetime:
        with self._lock:
            value = self._read().get("lastBrewUpdateCheck")
        return value if isinstance(value, datetime) else DISTANT_PAST

    def save_last_brew_update_check(self, when: datetime) -> None:
        self._update("lastBrewUpdateCheck", when.replace(microsecond=0))

    @property
    def notifications_allowed(self) -> Optional[bool]:
        with self._lock:
            return parse_bool(self._read().get("notificationsAllowed"))

    def save_notifications_allowed(self, allowed: bool) -> None:
        self._update("notificationsAllowed", bool(allowed))
