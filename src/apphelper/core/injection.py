"""Dependency container for OS interactions.

Every side effect the reactor and the scheduler perform goes through
one of four collaborators (CommandRunner, ProcessDirectory,
NotificationBackend, EventLog). The container holds one of each so the
composition root can wire the real ones and tests can wire the mocks.

Usage:
    # Production code
    container = DependencyContainer.production(event_log_path=path)
    container.runner.run("brew update")

    # Test code
    container = DependencyContainer.for_testing()
    container.processes.add("Safari", bundle_id="com.apple.Safari")
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from ..eventlog import MemoryEventLog, SqliteEventLog
from ..notifications import OsascriptNotificationBackend
from ..process import AppCatalog, PsutilProcessDirectory
from ..utils.commands import (
    DEFAULT_TIMEOUT,
    CommandExecutionError,
    CommandResult,
    ShellCommandRunner,
)
from .interfaces import (
    AppDescriptor,
    AuthorizationStatus,
    CommandRunner,
    EventLog,
    NotificationBackend,
    ProcessDirectory,
    ProcessHandle,
    ProcessPredicate,
)

logger = logging.getLogger(__name__)

MockResponse = Union[CommandResult, Exception, Callable[[str], CommandResult]]


class MockCommandRunner:
    """CommandRunner that answers from canned responses.

    Responses are matched by command-line prefix, longest prefix first.
    A response can be a CommandResult, an exception instance to raise,
    or a callable receiving the command line.

    Example:
        runner = MockCommandRunner()
        runner.mock_response("brew outdated", CommandResult("git\\n", "", 0))
        runner.mock_response("brew update", CommandTimeoutError("brew update", 600))
    """

    def __init__(self) -> None:
        self._responses: Dict[str, MockResponse] = {}
        self._default = CommandResult(stdout="", stderr="Command not mocked", returncode=1)
        self.calls: List[str] = []
        self.timeouts: List[Optional[float]] = []
        self._lock = threading.Lock()

    def mock_response(self, prefix: str, response: MockResponse) -> None:
        self._responses[prefix] = response

    def mock_default(self, response: CommandResult) -> None:
        self._default = response

    def calls_starting_with(self, prefix: str) -> List[str]:
        with self._lock:
            return [call for call in self.calls if call.startswith(prefix)]

    def run(
        self,
        cmdline: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        check: bool = False,
    ) -> CommandResult:
        with self._lock:
            self.calls.append(cmdline)
            self.timeouts.append(timeout)
            matches = [prefix for prefix in self._responses if cmdline.startswith(prefix)]
            response = self._responses[max(matches, key=len)] if matches else self._default

        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(cmdline)
        result = CommandResult(
            stdout=response.stdout,
            stderr=response.stderr,
            returncode=response.returncode,
            command=cmdline,
        )
        if check and result.returncode != 0:
            raise CommandExecutionError(cmdline, result.stdout, result.stderr, result.returncode)
        return result


class MockProcessDirectory:
    """In-memory process table.

    Terminate results can be scripted per pid as a sequence of booleans
    (one per terminate call). A pid listed in ``linger`` stays visible
    for that many lookups after it has quit.
    """

    def __init__(self) -> None:
        self.running: List[ProcessHandle] = []
        self.calls: List[Tuple] = []
        self.terminate_results: Dict[int, List[bool]] = {}
        self.launch_results: Dict[str, bool] = {}
        self.linger: Dict[int, int] = {}
        self._quitting: Dict[int, int] = {}
        self._next_pid = 1000
        self._lock = threading.RLock()

    def add(
        self,
        name: str,
        pid: Optional[int] = None,
        bundle_id: Optional[str] = None,
        bundle_path: Optional[Path] = None,
        localized_name: Optional[str] = None,
    ) -> ProcessHandle:
        with self._lock:
            if pid is None:
                self._next_pid += 1
                pid = self._next_pid
            handle = ProcessHandle(
                pid=pid,
                name=name,
                bundle_id=bundle_id,
                bundle_path=bundle_path,
                localized_name=localized_name,
            )
            self.running.append(handle)
            return handle

    def remove(self, pid: int) -> None:
        with self._lock:
            self.running = [handle for handle in self.running if handle.pid != pid]

    def snapshot(self) -> List[ProcessHandle]:
        with self._lock:
            for pid in list(self._quitting):
                self._quitting[pid] -= 1
                if self._quitting[pid] < 0:
                    del self._quitting[pid]
                    self.remove(pid)
            return list(self.running)

    def find(self, predicate: ProcessPredicate) -> List[ProcessHandle]:
        return [handle for handle in self.snapshot() if predicate(handle)]

    def is_running(self, target: Union[str, ProcessPredicate]) -> bool:
        if isinstance(target, str):
            return any(handle.bundle_id == target for handle in self.snapshot())
        return any(target(handle) for handle in self.snapshot())

    def is_alive(self, handle: ProcessHandle) -> bool:
        with self._lock:
            return any(running.pid == handle.pid for running in self.running)

    def terminate(self, handle: ProcessHandle, force: bool = False) -> bool:
        with self._lock:
            self.calls.append(("terminate", handle.pid, force))
            scripted = self.terminate_results.get(handle.pid)
            quit_ok = scripted.pop(0) if scripted else True
            if quit_ok:
                if handle.pid in self.linger:
                    self._quitting[handle.pid] = self.linger.pop(handle.pid)
                else:
                    self.remove(handle.pid)
            return quit_ok

    def launch(self, app: AppDescriptor) -> bool:
        with self._lock:
            self.calls.append(("launch", app.display_name))
            ok = self.launch_results.get(app.display_name, True)
            if ok:
                self.add(app.display_name, bundle_id=app.bundle_id or None)
            return ok

    def launches(self) -> List[str]:
        with self._lock:
            return [call[1] for call in self.calls if call[0] == "launch"]

    def terminations(self, pid: Optional[int] = None) -> List[Tuple]:
        with self._lock:
            return [
                call for call in self.calls
                if call[0] == "terminate" and (pid is None or call[1] == pid)
            ]


class MockNotificationBackend:
    """NotificationBackend with a scripted permission state."""

    def __init__(
        self,
        status: AuthorizationStatus = AuthorizationStatus.AUTHORIZED,
        grant_on_request: Optional[bool] = True,
    ) -> None:
        self.status = status
        self.grant_on_request = grant_on_request
        self.requests = 0
        self.posted: List[Tuple[str, str]] = []
        self.request_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def authorization_status(self) -> AuthorizationStatus:
        return self.status

    def request_authorization(self) -> bool:
        with self._lock:
            self.requests += 1
        if self.request_error is not None:
            raise self.request_error
        if self.grant_on_request is None:
            return False
        self.status = (
            AuthorizationStatus.AUTHORIZED if self.grant_on_request else AuthorizationStatus.DENIED
        )
        return self.grant_on_request

    def post(self, title: str, body: str) -> None:
        with self._lock:
            self.posted.append((title, body))


@dataclass
class DependencyContainer:
    """Container for all injectable collaborators.

    Attributes:
        runner: shell command execution
        processes: running-process queries and termination
        notifications: user notification backend
        event_log: persistent outcome log
        catalog: resolved AppDescriptors for well-known apps
    """

    runner: CommandRunner
    processes: ProcessDirectory
    notifications: NotificationBackend
    event_log: EventLog
    catalog: AppCatalog = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.catalog is None:
            self.catalog = AppCatalog(self.runner)

    @classmethod
    def production(
        cls,
        event_log_path: Optional[Path] = None,
        notifications_allowed: Optional[bool] = None,
        on_notification_decision: Optional[Callable[[bool], None]] = None,
        command_timeout: float = DEFAULT_TIMEOUT,
    ) -> "DependencyContainer":
        """Wire the real collaborators."""
        runner = ShellCommandRunner(default_timeout=command_timeout)
        event_log: EventLog
        if event_log_path is not None:
            event_log = SqliteEventLog(event_log_path)
        else:
            event_log = MemoryEventLog()
        logger.debug("Event log: %s", event_log_path or "in memory")
        return cls(
            runner=runner,
            processes=PsutilProcessDirectory(runner),
            notifications=OsascriptNotificationBackend(
                runner,
                allowed=notifications_allowed,
                on_decision=on_notification_decision,
            ),
            event_log=event_log,
        )

    @classmethod
    def for_testing(cls, known_apps: Optional[Dict[str, Tuple[str, Optional[str]]]] = None) -> "DependencyContainer":
        """Wire the mocks. ``known_apps`` replaces the well-known app table."""
        runner = MockCommandRunner()
        return cls(
            runner=runner,
            processes=MockProcessDirectory(),
            notifications=MockNotificationBackend(),
            event_log=MemoryEventLog(),
            catalog=AppCatalog(runner, known=known_apps),
        )
