"""Shell command execution with hard timeouts for the reactor and scheduler."""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Optional

from ..errors import AppHelperError, Cancelled

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600
DEFAULT_SHELL = "/bin/zsh"

# How often a running command checks its cancel token.
_CANCEL_POLL_INTERVAL = 0.2

# Per-command deadlines; anything else gets the runner default
SLOW_COMMANDS = {
    "mdls": 10,
    "pgrep": 5,
    "pkill": 5,
    "ps": 5,
    "kill": 5,
    "open": 30,
    "osascript": 10,
    "lsappinfo": 5,
}


class CommandExecutionError(AppHelperError):
    """Raised when a command cannot be executed or exits with error."""

    def __init__(
        self,
        command: str,
        stdout: str,
        stderr: str,
        returncode: int,
    ) -> None:
        super().__init__(
            f"Command '{command}' failed with code {returncode}: {stderr.strip()}"
        )
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode


class CommandTimeoutError(AppHelperError):
    """Raised when a command exceeds its deadline and was killed."""

    def __init__(
        self,
        command: str,
        timeout: float,
        output: str = "",
        suggestion: str = "",
    ) -> None:
        message = f"Command timed out after {timeout:g}s: {command}"
        if suggestion:
            message += f"\nSuggestion: {suggestion}"
        super().__init__(message)
        self.command = command
        self.timeout = timeout
        self.output = output
        self.suggestion = suggestion

    def __str__(self) -> str:
        return f"Command '{self.command.split(' ', 1)[0]}' timed out after {self.timeout:g}s"

    def detailed_message(self) -> str:
        """Get detailed error message with suggestions."""
        lines = [
            f"Command timed out: {self.command}",
            f"Timeout: {self.timeout:g} seconds",
        ]
        if self.output:
            lines.append(f"Partial output: {self.output[:200]}")
        if self.suggestion:
            lines.append(f"Suggestion: {self.suggestion}")
        return "\n".join(lines)


# Name used by the error taxonomy
CommandTimedOut = CommandTimeoutError


class CommandCancelledError(Cancelled):
    """Raised when a running command was killed because its cancel token fired."""

    def __init__(self, command: str) -> None:
        super().__init__(f"command '{command}'")
        self.command = command


@dataclass(slots=True)
class CommandResult:
    """Container for command outputs."""

    stdout: str
    stderr: str
    returncode: int
    elapsed_time: float = 0.0  # Execution time in seconds
    command: str = ""

    @property
    def output(self) -> str:
        """Combined output, stdout first."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


def _command_name(cmdline: str) -> str:
    try:
        first = shlex.split(cmdline)[0]
    except (ValueError, IndexError):
        return ""
    return os.path.basename(first)


def get_suggested_timeout(cmdline: str, default: float = DEFAULT_TIMEOUT) -> float:
    """Get suggested timeout for a command line based on known slow commands."""
    return SLOW_COMMANDS.get(_command_name(cmdline), default)


def get_timeout_suggestion(cmdline: str) -> str:
    """Get a helpful suggestion for timeout errors based on the command."""
    suggestions = {
        "brew": (
            "Homebrew could not reach its servers in time. "
            "Check network connectivity or run 'brew update' manually."
        ),
        "mdls": "Spotlight metadata may still be indexing this volume.",
    }
    return suggestions.get(_command_name(cmdline), "")


def _kill_process_group(proc: subprocess.Popen) -> None:
    """Kill the shell and everything it spawned."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError as exc:
        logger.debug("killpg failed for pid %d: %s", proc.pid, exc)
        proc.kill()


def run_command(
    cmdline: str,
    *,
    timeout: float | None = None,
    check: bool = False,
    cancel: Optional[threading.Event] = None,
    shell: str = DEFAULT_SHELL,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Execute a command line through the login shell.

    The command runs in its own process group; when the deadline passes
    or ``cancel`` is set, the whole group is killed.

    Args:
        cmdline: Shell command line, passed to ``shell -c``.
        timeout: Timeout in seconds. If None, auto-selects based on command.
        check: Raise CommandExecutionError on non-zero exit.
        cancel: Optional cancel token checked while the command runs.
        shell: Shell used to interpret the command line.
        env: Replacement environment.

    Returns:
        CommandResult with stdout, stderr, return code, and timing.

    Raises:
        CommandTimeoutError: If the command exceeds timeout.
        CommandCancelledError: If ``cancel`` fired while running.
        CommandExecutionError: When the shell cannot be started, or
            check=True and the command fails.
    """
    if not cmdline or not cmdline.strip():
        raise ValueError("Command cannot be empty")

    if timeout is None:
        timeout = get_suggested_timeout(cmdline)

    start_time = time.monotonic()
    deadline = start_time + timeout
    logger.debug("Running command (timeout=%ss): %s", timeout, cmdline)

    try:
        proc = subprocess.Popen(
            [shell, "-c", cmdline],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
            start_new_session=True,
        )
    except OSError as exc:
        logger.error("Cannot start shell %s: %s", shell, exc)
        raise CommandExecutionError(cmdline, "", str(exc), -1) from exc

    while True:
        if cancel is not None and cancel.is_set():
            _kill_process_group(proc)
            proc.communicate()
            logger.debug("Command cancelled: %s", cmdline)
            raise CommandCancelledError(cmdline)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            _kill_process_group(proc)
            out, err = proc.communicate()
            elapsed = time.monotonic() - start_time
            logger.error(
                "Command timed out after %.1fs (limit: %ss): %s",
                elapsed, timeout, cmdline
            )
            raise CommandTimeoutError(
                cmdline, timeout, (out or "").strip(), get_timeout_suggestion(cmdline)
            )

        wait_for = remaining if cancel is None else min(remaining, _CANCEL_POLL_INTERVAL)
        try:
            out, err = proc.communicate(timeout=wait_for)
        except subprocess.TimeoutExpired:
            # Popen keeps what was read so far; the next call returns all of it.
            continue
        break

    result = CommandResult(
        stdout=(out or "").strip(),
        stderr=(err or "").strip(),
        returncode=proc.returncode,
        elapsed_time=time.monotonic() - start_time,
        command=cmdline,
    )

    if result.elapsed_time > 30:
        logger.info("Slow command (%.1fs): %s", result.elapsed_time, _command_name(cmdline))

    if check and result.returncode != 0:
        logger.warning(
            "Command exited with non-zero code %s: %s", result.returncode, cmdline
        )
        raise CommandExecutionError(cmdline, result.stdout, result.stderr, result.returncode)

    return result


def which(executable: str) -> str | None:
    """Return full path for executable if available."""

    if not executable:
        raise ValueError("Executable name cannot be empty")
    path = shutil.which(executable)
    if path:
        logger.debug("Found executable %s at %s", executable, path)
    else:
        logger.debug("Executable %s not found", executable)
    return path


class ShellCommandRunner:
    """CommandRunner backed by :func:`run_command`."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT, shell: str = DEFAULT_SHELL) -> None:
        self.default_timeout = default_timeout
        self.shell = shell

    def run(
        self,
        cmdline: str,
        timeout: float | None = None,
        cancel: Optional[threading.Event] = None,
        check: bool = False,
    ) -> CommandResult:
        if timeout is None:
            timeout = get_suggested_timeout(cmdline, self.default_timeout)
        return run_command(
            cmdline,
            timeout=timeout,
            check=check,
            cancel=cancel,
            shell=self.shell,
        )
