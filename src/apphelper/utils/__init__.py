"""Utility helpers for apphelper."""
from __future__ import annotations

from .commands import (
    DEFAULT_TIMEOUT,
    CommandCancelledError,
    CommandExecutionError,
    CommandResult,
    CommandTimedOut,
    CommandTimeoutError,
    ShellCommandRunner,
    get_suggested_timeout,
    run_command,
    which,
)
from .parsers import (
    load_plist,
    parse_bool,
    parse_cpu_percent,
    parse_lsappinfo_names,
    parse_mdls_value,
    parse_outdated_packages,
    parse_pids,
    parse_time_of_day,
    read_bundle_identifier,
)

__all__ = [
    # Commands
    "DEFAULT_TIMEOUT",
    "CommandCancelledError",
    "CommandExecutionError",
    "CommandResult",
    "CommandTimedOut",
    "CommandTimeoutError",
    "ShellCommandRunner",
    "get_suggested_timeout",
    "run_command",
    "which",
    # Parsers
    "load_plist",
    "parse_bool",
    "parse_cpu_percent",
    "parse_lsappinfo_names",
    "parse_mdls_value",
    "parse_outdated_packages",
    "parse_pids",
    "parse_time_of_day",
    "read_bundle_identifier",
]
