"""Homebrew update check, the task driven by the ScheduleEngine."""
from __future__ import annotations

import logging
import os
import shlex
import threading
from typing import List, Optional

from .actions import Reporter
from .core.interfaces import CommandRunner
from .errors import Cancelled
from .utils.commands import (
    DEFAULT_TIMEOUT,
    CommandExecutionError,
    CommandResult,
    CommandTimeoutError,
    which,
)
from .utils.parsers import parse_outdated_packages

logger = logging.getLogger(__name__)

DEFAULT_BREW_PATH = "/opt/homebrew/bin/brew"
UPDATE_AVAILABLE_TITLE = "Homebrew Update Available"
UPDATE_FAILED_TITLE = "Homebrew Update Failed"
UPGRADE_FAILED_TITLE = "Homebrew Upgrade Failed"


class BrewService:
    """Thin wrapper over the ``brew`` executable."""

    def __init__(
        self,
        runner: CommandRunner,
        brew_path: str = DEFAULT_BREW_PATH,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.runner = runner
        self.brew_path = brew_path
        self.timeout = timeout

    @property
    def executable(self) -> str:
        """Configured brew, or the one on PATH when that is missing."""
        if os.path.exists(self.brew_path):
            return self.brew_path
        return which("brew") or self.brew_path

    def _brew(self, subcommand: str, cancel: Optional[threading.Event]) -> CommandResult:
        cmdline = f"{shlex.quote(self.executable)} {subcommand}"
        return self.runner.run(cmdline, timeout=self.timeout, cancel=cancel)

    def update(self, cancel: Optional[threading.Event] = None) -> CommandResult:
        result = self._brew("update", cancel)
        if result.returncode != 0:
            logger.warning("brew update exited with %d: %s", result.returncode, result.stderr)
        return result

    def outdated(self, cancel: Optional[threading.Event] = None) -> List[str]:
        result = self._brew("outdated", cancel)
        return parse_outdated_packages(result.stdout)

    def check(self, cancel: Optional[threading.Event] = None) -> List[str]:
        """``brew update`` followed by ``brew outdated``."""
        self.update(cancel)
        if cancel is not None and cancel.is_set():
            raise Cancelled("brew check")
        return self.outdated(cancel)

    def upgrade(self, cancel: Optional[threading.Event] = None) -> str:
        result = self._brew("upgrade", cancel)
        return result.output


class BrewUpdateCheck:
    """Scheduled task: refresh Homebrew and tell the user what is outdated.

    Timeouts and command failures are reported and swallowed so the run
    still counts as completed; cancellation propagates untouched.
    """

    def __init__(self, service: BrewService, reporter: Reporter) -> None:
        self.service = service
        self.reporter = reporter
        self.last_packages: List[str] = []
        # None until a run finishes without being cancelled
        self.last_ok: Optional[bool] = None

    def __call__(self, cancel: threading.Event) -> Optional[List[str]]:
        """Returns the outdated packages, or None when the check failed."""
        self.last_ok = None
        try:
            packages = self.service.check(cancel)
        except CommandTimeoutError as exc:
            self.reporter.log(f"Homebrew update timed out after {exc.timeout:g}s")
            self.reporter.notify(UPDATE_FAILED_TITLE, str(exc))
            logger.debug("%s", exc.detailed_message())
            self.last_ok = False
            return None
        except CommandExecutionError as exc:
            self.reporter.log(f"Homebrew update failed: {exc}")
            self.last_ok = False
            return None

        if cancel.is_set():
            raise Cancelled("brew check")

        self.last_packages = packages
        self.last_ok = True
        if not packages:
            logger.info("Homebrew is up to date")
            return packages

        body = f"Found {len(packages)} packages to update: {', '.join(packages)}"
        self.reporter.log(body)
        self.reporter.notify(UPDATE_AVAILABLE_TITLE, body)
        return packages

    def upgrade(self) -> Optional[str]:
        """``brew upgrade``; returns its output, or None when it failed."""
        try:
            output = self.service.upgrade()
        except CommandTimeoutError as exc:
            self.reporter.log(f"Homebrew upgrade timed out after {exc.timeout:g}s")
            self.reporter.notify(UPGRADE_FAILED_TITLE, str(exc))
            return None
        except CommandExecutionError as exc:
            self.reporter.log(f"Homebrew upgrade failed: {exc}")
            return None
        self.last_packages = []
        self.reporter.log("Homebrew upgrade finished")
        return output
