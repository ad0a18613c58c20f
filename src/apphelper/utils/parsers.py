"""Parsers and helpers for interpreting macOS command outputs."""
from __future__ import annotations

import plistlib
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

BOOLEAN_TRUE = {"1", "true", "yes", "on", "enabled"}
BOOLEAN_FALSE = {"0", "false", "no", "off", "disabled"}

_MDLS_NULL = "(null)"
_TIME_OF_DAY = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")
_LSAPPINFO_APP = re.compile(r'^\s*\d+\) "(?P<name>.*)" ASN:')
_LSAPPINFO_PID = re.compile(r"^\s*pid = (?P<pid>\d+)\b")


def parse_bool(value: Any) -> bool | None:
    """Interpret a plist or defaults boolean-style value."""

    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    normalized = str(value).strip().lower()
    if normalized in BOOLEAN_TRUE:
        return True
    if normalized in BOOLEAN_FALSE:
        return False
    return None


def parse_mdls_value(output: str) -> str | None:
    """Parse ``mdls -raw`` output; ``(null)`` and empty mean unknown."""

    value = output.strip().strip('"')
    if not value or value == _MDLS_NULL:
        return None
    return value


def parse_outdated_packages(output: str) -> List[str]:
    """Parse ``brew outdated`` output into one entry per package.

    Blank lines and Homebrew's own status lines (``==>``, ``Warning:``)
    are dropped.
    """

    packages: List[str] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("==>"):
            continue
        if line.lower().startswith(("warning:", "error:")):
            continue
        packages.append(line)
    return packages


def parse_lsappinfo_names(output: str) -> Dict[int, str]:
    """Map pid to LaunchServices display name from ``lsappinfo list``.

    Each application block starts with ``N) "Display Name" ASN:...`` and
    carries a ``pid = N`` line further down.
    """

    names: Dict[int, str] = {}
    current: Optional[str] = None
    for line in output.splitlines():
        header = _LSAPPINFO_APP.match(line)
        if header:
            current = header.group("name")
            continue
        pid = _LSAPPINFO_PID.match(line)
        if pid and current:
            names[int(pid.group("pid"))] = current
            current = None
    return names


def parse_cpu_percent(output: str) -> float | None:
    """Parse ``ps -o %cpu -p <pid>``; the header line is skipped."""

    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return None
    try:
        return float(lines[-1])
    except ValueError:
        return None


def parse_pids(output: str) -> List[int]:
    """Parse ``pgrep`` output."""

    pids: List[int] = []
    for token in output.split():
        if token.isdigit():
            pids.append(int(token))
    return pids


def parse_time_of_day(value: Any) -> tuple[int, int] | None:
    """Parse ``"HH:MM"`` (or a datetime) into ``(hour, minute)``."""

    if value is None:
        return None
    hour = getattr(value, "hour", None)
    minute = getattr(value, "minute", None)
    if hour is not None and minute is not None:
        return int(hour), int(minute)
    match = _TIME_OF_DAY.match(str(value))
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour, minute


def load_plist(path: Path) -> dict[str, Any] | None:
    """Load plist file if accessible."""

    try:
        if not path.exists():
            return None
        with path.open("rb") as handle:
            data = plistlib.load(handle)
    except (plistlib.InvalidFileException, OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def read_bundle_identifier(bundle_path: Path) -> Optional[str]:
    """Read ``CFBundleIdentifier`` from an app or extension bundle."""

    info = load_plist(bundle_path / "Contents" / "Info.plist")
    if not info:
        return None
    value = info.get("CFBundleIdentifier")
    return str(value) if value else None

