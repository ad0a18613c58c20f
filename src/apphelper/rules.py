"""Rule model, the built-in rule catalogue and the rule engine."""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .actions import ActionExecutor, ActionKind, ActionOutcome, running_instances
from .core.interfaces import AppDescriptor, Event, EventKind, ProcessDirectory
from .core.resilience import ActionDispatcher
from .process import AppCatalog

logger = logging.getLogger(__name__)

SETTLE_DELAY = 2.0

# Event ids remembered for at-most-once application.
_SEEN_LIMIT = 4096

_SETTLING_ACTIONS = {
    ActionKind.RESTART_COMPANION,
    ActionKind.FORCE_QUIT_NAMED_SERVICE,
    ActionKind.CLEANUP_ORPHANED_HELPERS,
}
_SIBLING_CHECKED_ACTIONS = {
    ActionKind.FORCE_QUIT_NAMED_SERVICE,
    ActionKind.CLEANUP_ORPHANED_HELPERS,
}

SAFARI_KEEP_ALIVE = (
    "com.apple.Safari.History",
    "SafariBookmarksSyncAgent",
    "SafariLaunchAgent",
    "SafariNotificationAgent",
    "com.apple.Safari.SafeBrowsing.Service",
)


@dataclass(frozen=True)
class Rule:
    """A user-toggled remediation.

    A rule without subjects matches every terminated app. ``target`` is
    the app acted upon (companion, launch target, CPU-watched app) and
    ``guard`` must be running for a companion restart to happen.
    """

    name: str
    trigger: EventKind
    action: ActionKind
    subjects: Tuple[AppDescriptor, ...] = ()
    enabled: bool = True
    target: Optional[AppDescriptor] = None
    guard: Optional[AppDescriptor] = None
    services: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    kill_name: Optional[str] = None
    aliases: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        needs_target = {ActionKind.RESTART_COMPANION, ActionKind.LAUNCH_IF_ABSENT, ActionKind.WARN_HIGH_CPU}
        if self.action in needs_target and self.target is None:
            raise ValueError(f"Rule {self.name} needs a target app")
        if self.action is ActionKind.FORCE_QUIT_NAMED_SERVICE and not self.services:
            raise ValueError(f"Rule {self.name} needs a service name")

    def matches(self, subject: Optional[AppDescriptor]) -> bool:
        if not self.subjects:
            return True
        if subject is None:
            return False
        return any(candidate.matches(subject) for candidate in self.subjects)

    @property
    def settles(self) -> bool:
        return self.action in _SETTLING_ACTIONS

    @property
    def checks_siblings(self) -> bool:
        return self.action in _SIBLING_CHECKED_ACTIONS


def build_rules(toggles: Mapping[str, bool], catalog: AppCatalog) -> List[Rule]:
    """The built-in catalogue, in evaluation order, enabled per ``toggles``."""

    def enabled(key: str) -> bool:
        return bool(toggles.get(key, False))

    return [
        Rule(
            name="restartMonitorControl",
            trigger=EventKind.PROCESS_TERMINATED,
            action=ActionKind.RESTART_COMPANION,
            subjects=(catalog.get("System Settings"),),
            enabled=enabled("restartMonitorControl"),
            target=catalog.get("MonitorControl"),
            guard=catalog.get("AppleIDSettings"),
        ),
        Rule(
            name="forceQuitSourceKitService",
            trigger=EventKind.PROCESS_TERMINATED,
            action=ActionKind.FORCE_QUIT_NAMED_SERVICE,
            subjects=(catalog.get("Xcode"), catalog.get("Xcode-beta")),
            enabled=enabled("forceQuitSourceKitService"),
            services=("SourceKitService",),
            kill_name="com.apple.dt.SKAgent",
        ),
        Rule(
            name="forceQuitOpenAndSavePanelService",
            trigger=EventKind.PROCESS_TERMINATED,
            action=ActionKind.CLEANUP_ORPHANED_HELPERS,
            enabled=enabled("forceQuitOpenAndSavePanelService"),
            services=("Open and Save Panel Service", "QuickLookUIService"),
        ),
        Rule(
            name="cleanUpWebContentRemains",
            trigger=EventKind.PROCESS_TERMINATED,
            action=ActionKind.CLEANUP_ORPHANED_HELPERS,
            enabled=enabled("cleanUpWebContentRemains"),
            services=("网页内容", "Web Content"),
            aliases=(("QQ音乐", "QQMusic"),),
        ),
        Rule(
            name="cleanUpSafariRemainsAggressively",
            trigger=EventKind.PROCESS_TERMINATED,
            action=ActionKind.CLEANUP_ORPHANED_HELPERS,
            subjects=(catalog.get("Safari"),),
            enabled=enabled("cleanUpSafariRemainsAggressively"),
            exclude=SAFARI_KEEP_ALIVE,
        ),
        Rule(
            name="startSwitchHosts",
            trigger=EventKind.TIMER_TICK,
            action=ActionKind.LAUNCH_IF_ABSENT,
            enabled=enabled("startSwitchHosts"),
            target=catalog.get("SwitchHosts"),
        ),
        Rule(
            name="startNightOwl",
            trigger=EventKind.TIMER_TICK,
            action=ActionKind.LAUNCH_IF_ABSENT,
            enabled=enabled("startNightOwl"),
            target=catalog.get("NightOwl"),
        ),
        Rule(
            name="monitorXcodeHighCPUUsage",
            trigger=EventKind.TIMER_TICK,
            action=ActionKind.WARN_HIGH_CPU,
            enabled=enabled("monitorXcodeHighCPUUsage"),
            target=catalog.get("Xcode"),
        ),
    ]


class RuleEngine:
    """Matches events against rules and dispatches their actions.

    The rule list is immutable for the engine's lifetime. Every matched
    rule runs on its own dispatcher worker; nothing raised by an action
    ever reaches the event source.
    """

    def __init__(
        self,
        rules: Sequence[Rule],
        executor: ActionExecutor,
        processes: ProcessDirectory,
        dispatcher: ActionDispatcher,
        settle_delay: float = SETTLE_DELAY,
        stop: Optional[threading.Event] = None,
    ) -> None:
        self.rules: Tuple[Rule, ...] = tuple(rules)
        self.executor = executor
        self.processes = processes
        self.dispatcher = dispatcher
        self.settle_delay = settle_delay
        self.stop = stop or executor.stop
        self._seen: "OrderedDict[Tuple[int, str], None]" = OrderedDict()
        self._inflight: set[str] = set()
        self._lock = threading.Lock()

    @property
    def enabled_rules(self) -> List[Rule]:
        return [rule for rule in self.rules if rule.enabled]

    def on_event(self, kind: EventKind, subject: Optional[AppDescriptor] = None) -> List[Future]:
        return self.handle(Event(kind=kind, subject=subject))

    def handle(self, event: Event) -> List[Future]:
        """Dispatch every enabled rule matching ``event``, in declared order."""
        futures: List[Future] = []
        for rule in self._matching(event):
            if not self._claim(event, rule):
                continue
            future = self.dispatcher.submit(
                f"{rule.name}#{event.event_id}", self._apply, rule, event
            )
            if future is None:
                self._release(event, rule)
                continue
            futures.append(future)
        return futures

    def _matching(self, event: Event) -> Iterable[Rule]:
        for rule in self.rules:
            if not rule.enabled or rule.trigger is not event.kind:
                continue
            if event.kind is EventKind.PROCESS_TERMINATED and not rule.matches(event.subject):
                continue
            yield rule

    def _claim(self, event: Event, rule: Rule) -> bool:
        key = (event.event_id, rule.name)
        with self._lock:
            if key in self._seen:
                logger.debug("Rule %s already applied for event %d", rule.name, event.event_id)
                return False
            if event.subject is None and rule.name in self._inflight:
                # Timer rules: the previous tick's action is still running.
                return False
            self._seen[key] = None
            while len(self._seen) > _SEEN_LIMIT:
                self._seen.popitem(last=False)
            if event.subject is None:
                self._inflight.add(rule.name)
            return True

    def _release(self, event: Event, rule: Rule) -> None:
        if event.subject is None:
            with self._lock:
                self._inflight.discard(rule.name)

    def _apply(self, rule: Rule, event: Event) -> ActionOutcome:
        try:
            return self._apply_rule(rule, event)
        finally:
            self._release(event, rule)

    def _apply_rule(self, rule: Rule, event: Event) -> ActionOutcome:
        label = event.subject.display_name if event.subject else rule.name
        if rule.settles and self.stop.wait(self.settle_delay):
            return ActionOutcome.skipped(label, "shutting down")

        if rule.guard is not None and not running_instances(self.processes, rule.guard):
            logger.debug("Rule %s: %s is not running", rule.name, rule.guard.display_name)
            return ActionOutcome.skipped(label, f"{rule.guard.display_name} is not running")

        if rule.checks_siblings and event.subject is not None:
            if running_instances(self.processes, event.subject):
                logger.debug("Rule %s: another %s is still running", rule.name, label)
                return ActionOutcome.skipped(label, "another instance is still running")

        logger.info("Applying rule %s for %s", rule.name, label)
        return self.executor.perform(rule, event.subject)
