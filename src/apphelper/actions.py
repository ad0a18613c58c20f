"""Remediation primitives applied by rules.

Two idempotent primitives do the real work:

- ``restart_with_poll``: wait (200 ms steps) until the target is gone, then
  launch it once
- ``escalating_quit``: terminate, force terminate, then ``kill -9`` each
  matching process

Every public operation reports exactly one outcome per invocation
through the Reporter, never one per internal step.
"""
from __future__ import annotations

import logging
import shlex
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .core.interfaces import (
    AppDescriptor,
    CommandRunner,
    EventLog,
    ProcessDirectory,
    ProcessHandle,
    ProcessPredicate,
)
from .errors import LaunchFailed, PermissionDenied, QuitEscalationExhausted
from .notifications import NotificationGateway
from .utils.commands import CommandExecutionError, CommandTimeoutError
from .utils.parsers import parse_cpu_percent, parse_pids

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2
DEFAULT_POLL_TIMEOUT = 600.0
HIGH_CPU_PERCENT = 100.0
HIGH_CPU_SUSTAIN = 30.0
RULE_APPLIED_TITLE = "Rule Applied"


class ActionKind(str, Enum):
    """Remediation a rule can apply."""

    RESTART_COMPANION = "restart_companion"
    FORCE_QUIT_NAMED_SERVICE = "force_quit_named_service"
    CLEANUP_ORPHANED_HELPERS = "cleanup_orphaned_helpers"
    LAUNCH_IF_ABSENT = "launch_if_absent"
    WARN_HIGH_CPU = "warn_high_cpu"


class ActionVerb(str, Enum):
    STARTED = "started"
    RESTARTED = "restarted"
    QUIT = "quit"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionOutcome:
    """The single result of one primitive invocation."""

    status: OutcomeStatus
    subject: str
    verb: ActionVerb
    message: str = ""
    error: Optional[Exception] = None

    @classmethod
    def skipped(cls, subject: str, reason: str) -> "ActionOutcome":
        return cls(OutcomeStatus.SKIPPED, subject, ActionVerb.FAILED, reason)

    @property
    def user_visible(self) -> bool:
        """Applied actions, launch failures and timeouts reach the user."""
        if self.status is OutcomeStatus.APPLIED:
            return True
        return isinstance(self.error, (LaunchFailed, CommandTimeoutError))

    @property
    def log_text(self) -> str:
        if self.message:
            return self.message
        if self.status is OutcomeStatus.FAILED:
            return f"{self.subject} {self.verb.value} failed"
        return f"{self.subject} {self.verb.value}"

    @property
    def notification_body(self) -> str:
        if self.status is OutcomeStatus.FAILED:
            if isinstance(self.error, CommandTimeoutError):
                return f"{self.subject}: {self.error}"
            return f"{self.subject} {ActionVerb.FAILED.value}"
        return f"{self.subject} {self.verb.value}"


class Reporter:
    """Fans one outcome out to the event log and, optionally, the user."""

    def __init__(
        self,
        gateway: NotificationGateway,
        event_log: EventLog,
        notify_user: bool = True,
    ) -> None:
        self.gateway = gateway
        self.event_log = event_log
        self.notify_user = notify_user

    def report(self, outcome: ActionOutcome, title: str = RULE_APPLIED_TITLE) -> None:
        if outcome.status is OutcomeStatus.SKIPPED:
            logger.debug("Skipped %s: %s", outcome.subject, outcome.message)
            return
        self.log(outcome.log_text)
        if self.notify_user and outcome.user_visible:
            self.notify(title, outcome.notification_body)

    def log(self, text: str) -> None:
        logger.info("%s", text)
        try:
            self.event_log.append(text)
        except Exception as exc:  # noqa: BLE001 - event log is fire-and-forget
            logger.error("Event log append failed: %s", exc)

    def notify(self, title: str, body: str) -> None:
        try:
            self.gateway.deliver(title, body)
        except PermissionDenied as exc:
            logger.info("Notification not delivered: %s", exc)
        except Exception as exc:  # noqa: BLE001 - delivery is best effort
            logger.warning("Notification delivery failed: %s", exc)


class ActionExecutor:
    """Implements every ActionKind on top of ProcessDirectory and CommandRunner."""

    def __init__(
        self,
        processes: ProcessDirectory,
        runner: CommandRunner,
        reporter: Reporter,
        stop: Optional[threading.Event] = None,
        poll_interval: float = POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        verify_kill: bool = False,
        tick_interval: float = 5.0,
    ) -> None:
        self.processes = processes
        self.runner = runner
        self.reporter = reporter
        self.stop = stop or threading.Event()
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.verify_kill = verify_kill
        self.tick_interval = tick_interval
        self._high_cpu_seconds: Dict[str, float] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def perform(self, rule, subject: Optional[AppDescriptor] = None) -> ActionOutcome:
        """Apply ``rule`` for one event whose subject is ``subject``."""
        handlers: Dict[ActionKind, Callable[..., ActionOutcome]] = {
            ActionKind.RESTART_COMPANION: self._restart_companion,
            ActionKind.FORCE_QUIT_NAMED_SERVICE: self._force_quit_named_service,
            ActionKind.CLEANUP_ORPHANED_HELPERS: self._cleanup_orphaned_helpers,
            ActionKind.LAUNCH_IF_ABSENT: self._launch_if_absent,
            ActionKind.WARN_HIGH_CPU: self._warn_high_cpu,
        }
        return handlers[rule.action](rule, subject)

    def _restart_companion(self, rule, subject: Optional[AppDescriptor]) -> ActionOutcome:
        companion = rule.target
        running = self.processes.find(_matches_app(companion))
        if not running:
            return ActionOutcome.skipped(companion.display_name, "companion is not running")
        for handle in running:
            self.processes.terminate(handle, force=False)
        return self.restart_with_poll(companion)

    def _force_quit_named_service(self, rule, subject: Optional[AppDescriptor]) -> ActionOutcome:
        check_name = rule.services[0]
        return self.quit_named_service(check_name, rule.kill_name or check_name)

    def _cleanup_orphaned_helpers(self, rule, subject: Optional[AppDescriptor]) -> ActionOutcome:
        if subject is None:
            return ActionOutcome.skipped(rule.name, "no terminated app")
        name = dict(rule.aliases).get(subject.display_name, subject.display_name)
        services = tuple(rule.services)

        def predicate(handle: ProcessHandle) -> bool:
            if not handle.name_contains(name):
                return False
            return not services or handle.name_contains(services)

        return self.escalating_quit(predicate, exclude=rule.exclude)

    def _launch_if_absent(self, rule, subject: Optional[AppDescriptor]) -> ActionOutcome:
        return self.launch_if_absent(rule.target)

    def _warn_high_cpu(self, rule, subject: Optional[AppDescriptor]) -> ActionOutcome:
        return self.watch_high_cpu(rule.target, key=rule.name)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def restart_with_poll(self, target: AppDescriptor) -> ActionOutcome:
        """Launch ``target`` once it is confirmed not running.

        Polls every ``poll_interval`` while the old instance is still
        tearing down. A launch failure is reported and never retried.
        """
        is_running = _matches_app(target)
        deadline = time.monotonic() + self.poll_timeout
        while self.processes.find(is_running):
            if self.stop.wait(self.poll_interval):
                return ActionOutcome.skipped(target.display_name, "shutting down")
            if time.monotonic() >= deadline:
                outcome = ActionOutcome(
                    OutcomeStatus.FAILED,
                    target.display_name,
                    ActionVerb.RESTARTED,
                    f"{target.display_name} did not quit within {self.poll_timeout:g}s",
                )
                self.reporter.report(outcome)
                return outcome

        outcome = self._launch(target, ActionVerb.RESTARTED)
        self.reporter.report(outcome)
        return outcome

    def launch_if_absent(self, target: AppDescriptor) -> ActionOutcome:
        if self.processes.find(_matches_app(target)):
            return ActionOutcome.skipped(target.display_name, "already running")
        outcome = self._launch(target, ActionVerb.STARTED)
        self.reporter.report(outcome)
        return outcome

    def _launch(self, target: AppDescriptor, verb: ActionVerb) -> ActionOutcome:
        if self.processes.launch(target):
            return ActionOutcome(OutcomeStatus.APPLIED, target.display_name, verb)
        error = LaunchFailed(target.display_name)
        logger.error("%s", error)
        return ActionOutcome(OutcomeStatus.FAILED, target.display_name, verb, error=error)

    def escalating_quit(
        self,
        predicate: ProcessPredicate,
        exclude: Sequence[str] = (),
        label: Optional[str] = None,
    ) -> ActionOutcome:
        """Quit every running process matching ``predicate``.

        Processes whose name contains an ``exclude`` entry are never
        touched. Each process climbs terminate -> force terminate ->
        ``kill -9`` until one step is effective.
        """
        targets = [
            handle
            for handle in self.processes.find(predicate)
            if not (exclude and handle.name_contains(tuple(exclude)))
        ]
        if not targets:
            return ActionOutcome.skipped(label or "helpers", "no matching process")

        subject = label or targets[0].display_name
        failures: List[str] = []
        error: Optional[Exception] = None
        for handle in targets:
            try:
                if not self._quit_one(handle):
                    failures.append(handle.display_name)
            except (CommandTimeoutError, QuitEscalationExhausted) as exc:
                failures.append(handle.display_name)
                error = exc

        if failures:
            outcome = ActionOutcome(
                OutcomeStatus.FAILED,
                subject,
                ActionVerb.QUIT,
                f"Can not quit {', '.join(failures)}.",
                error=error,
            )
        else:
            outcome = ActionOutcome(OutcomeStatus.APPLIED, subject, ActionVerb.QUIT, f"Quit {subject}")
        self.reporter.report(outcome)
        return outcome

    def _quit_one(self, handle: ProcessHandle) -> bool:
        if self.processes.terminate(handle, force=False):
            return True
        if self.processes.terminate(handle, force=True):
            return True

        try:
            result = self.runner.run(f"kill -9 {handle.pid}")
        except CommandExecutionError as exc:
            logger.error("kill -9 %d failed: %s", handle.pid, exc)
            return False
        logger.info("Killed %s (pid %d): %s", handle.name, handle.pid, result.output or "ok")

        if self.verify_kill:
            self.stop.wait(self.poll_interval)
            if self.processes.is_alive(handle):
                raise QuitEscalationExhausted(handle.name, handle.pid)
        # The signal is assumed effective without verification.
        return True

    def quit_named_service(self, check_name: str, kill_name: str) -> ActionOutcome:
        """Kill ``kill_name`` outright when ``check_name`` is found running."""
        try:
            found = self.runner.run(f"pgrep {shlex.quote(check_name)}")
        except (CommandTimeoutError, CommandExecutionError) as exc:
            logger.debug("pgrep %s failed: %s", check_name, exc)
            return ActionOutcome.skipped(check_name, "pgrep failed")
        if not parse_pids(found.stdout):
            return ActionOutcome.skipped(check_name, "service is not running")

        try:
            self.runner.run(f"pkill -9 {shlex.quote(kill_name)}")
        except (CommandTimeoutError, CommandExecutionError) as exc:
            outcome = ActionOutcome(
                OutcomeStatus.FAILED,
                check_name,
                ActionVerb.QUIT,
                f"Can not quit {check_name}.",
                error=exc,
            )
        else:
            outcome = ActionOutcome(OutcomeStatus.APPLIED, check_name, ActionVerb.QUIT, f"Quit {check_name}")
        self.reporter.report(outcome)
        return outcome

    def watch_high_cpu(self, target: AppDescriptor, key: Optional[str] = None) -> ActionOutcome:
        """Warn once when ``target`` stays above 100% CPU for 30 seconds."""
        key = key or target.display_name
        handles = self.processes.find(lambda h: target.display_name in (h.name, h.localized_name))
        usage = self._cpu_percent(handles[0]) if handles else None

        with self._lock:
            if usage is None or usage <= HIGH_CPU_PERCENT:
                self._high_cpu_seconds[key] = 0.0
                return ActionOutcome.skipped(target.display_name, "CPU usage normal")
            seconds = self._high_cpu_seconds.get(key, 0.0) + self.tick_interval
            if seconds < HIGH_CPU_SUSTAIN:
                self._high_cpu_seconds[key] = seconds
                return ActionOutcome.skipped(target.display_name, f"high CPU for {seconds:g}s")
            self._high_cpu_seconds[key] = 0.0

        message = f"{target.display_name} uses high CPU!"
        outcome = ActionOutcome(OutcomeStatus.APPLIED, message, ActionVerb.QUIT, message)
        self.reporter.log(outcome.log_text)
        if self.reporter.notify_user:
            self.reporter.notify(RULE_APPLIED_TITLE, message)
        return outcome

    def _cpu_percent(self, handle: ProcessHandle) -> Optional[float]:
        try:
            result = self.runner.run(f"ps -o %cpu -p {handle.pid}")
        except (CommandTimeoutError, CommandExecutionError) as exc:
            logger.debug("ps failed for %s: %s", handle.name, exc)
            return None
        return parse_cpu_percent(result.stdout)


def _matches_app(app: AppDescriptor) -> ProcessPredicate:
    def predicate(handle: ProcessHandle) -> bool:
        if app.bundle_id and handle.bundle_id:
            return handle.bundle_id == app.bundle_id
        names = {handle.display_name, handle.name}
        if handle.bundle_path is not None:
            names.add(handle.bundle_path.stem)
        return app.display_name in names

    return predicate


def running_instances(processes: ProcessDirectory, app: AppDescriptor) -> List[ProcessHandle]:
    return processes.find(_matches_app(app))

