"""Collaborator interfaces and the data types that cross them.

Architecture:
┌─────────────────────────────────────────────────────────────────┐
│                     OS EVENT SOURCE                              │
│  - Process terminated, will sleep, did wake, timer tick          │
│  - Delivers typed Event values, never raw notifications          │
└─────────────────────────────────────────────────────────────────┘
                              │
                              ▼
┌─────────────────────────────────────────────────────────────────┐
│              RULE ENGINE  /  SCHEDULE ENGINE                     │
│  - Decide whether to act (rule match, guard, due-ness)           │
│  - Own all mutable state; collaborators are stateless            │
└─────────────────────────────────────────────────────────────────┘
                              │
                              ▼
┌─────────────────────────────────────────────────────────────────┐
│                     COLLABORATORS                                │
│  - ProcessDirectory, CommandRunner (side effects)                │
│  - NotificationBackend, EventLog (reporting)                     │
└─────────────────────────────────────────────────────────────────┘
"""
from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Union

from ..utils.commands import CommandResult

_event_ids = itertools.count(1)


# =============================================================================
# PROCESS MODEL
# =============================================================================


@dataclass(frozen=True, eq=False)
class AppDescriptor:
    """A well-known application, resolved once and cached.

    Identity is ``bundle_id``; two descriptors with the same bundle id
    compare equal regardless of where they were resolved from.
    """

    display_name: str
    location: Path
    bundle_id: str = ""

    def __post_init__(self) -> None:
        if not self.bundle_id and not self.display_name:
            raise ValueError("AppDescriptor needs a bundle id or a display name")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AppDescriptor):
            return NotImplemented
        if self.bundle_id and other.bundle_id:
            return self.bundle_id == other.bundle_id
        return self.display_name == other.display_name

    def __hash__(self) -> int:
        return hash(self.bundle_id or self.display_name)

    def matches(self, other: "AppDescriptor") -> bool:
        """Bundle id equality, or display-name containment (case-sensitive)."""
        if self.bundle_id and other.bundle_id and self.bundle_id == other.bundle_id:
            return True
        return bool(self.display_name) and self.display_name in other.display_name


@dataclass(frozen=True)
class ProcessHandle:
    """A live process as reported by the ProcessDirectory.

    ``name`` is the executable name; ``localized_name`` is the name the
    user sees (Activity Monitor, Force Quit), when LaunchServices knows it.
    """

    pid: int
    name: str
    bundle_id: Optional[str] = None
    bundle_path: Optional[Path] = None
    localized_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.localized_name or self.name

    def describe(self) -> AppDescriptor:
        """Descriptor for the application this process belongs to."""
        location = self.bundle_path or Path(self.name)
        display = self.localized_name or (self.bundle_path.stem if self.bundle_path else self.name)
        return AppDescriptor(display_name=display, location=location, bundle_id=self.bundle_id or "")

    def name_contains(self, fragments: Union[str, List[str], tuple]) -> bool:
        if isinstance(fragments, str):
            fragments = [fragments]
        names = [self.name] if self.localized_name is None else [self.localized_name, self.name]
        return any(fragment in name for fragment in fragments for name in names)


ProcessPredicate = Callable[[ProcessHandle], bool]


# =============================================================================
# EVENTS
# =============================================================================


class EventKind(str, Enum):
    """Kinds of OS lifecycle events the core reacts to."""

    PROCESS_TERMINATED = "process_terminated"
    SYSTEM_WILL_SLEEP = "system_will_sleep"
    SYSTEM_DID_WAKE = "system_did_wake"
    TIMER_TICK = "timer_tick"


@dataclass(frozen=True)
class Event:
    """One observed event instance.

    ``event_id`` is unique per instance, so a rule can be applied at most
    once per event even if the same value is delivered twice.
    """

    kind: EventKind
    subject: Optional[AppDescriptor] = None
    event_id: int = field(default_factory=lambda: next(_event_ids))
    occurred_at: datetime = field(default_factory=datetime.now, compare=False)


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class AuthorizationStatus(str, Enum):
    """Notification permission state reported by the backend."""

    UNDETERMINED = "undetermined"
    DENIED = "denied"
    AUTHORIZED = "authorized"
    PROVISIONAL = "provisional"


# =============================================================================
# COLLABORATOR PROTOCOLS
# =============================================================================


class CommandRunner(Protocol):
    """Runs a shell command line with a hard timeout."""

    def run(
        self,
        cmdline: str,
        timeout: float | None = None,
        cancel: Optional[threading.Event] = None,
        check: bool = False,
    ) -> CommandResult:
        """Execute ``cmdline`` and return its captured output.

        Raises:
            CommandTimeoutError: deadline exceeded, process killed
            CommandExecutionError: command could not be executed
            CommandCancelledError: ``cancel`` fired while running
        """
        ...


class ProcessDirectory(Protocol):
    """Answers "is X running" and "terminate X" for the core."""

    def snapshot(self) -> List[ProcessHandle]:
        """All application processes currently running."""
        ...

    def find(self, predicate: ProcessPredicate) -> List[ProcessHandle]:
        """Running processes matching ``predicate``."""
        ...

    def is_running(self, target: Union[str, ProcessPredicate]) -> bool:
        """True if a process with this bundle id (or matching predicate) runs."""
        ...

    def is_alive(self, handle: ProcessHandle) -> bool:
        """True if this exact process is still alive."""
        ...

    def terminate(self, handle: ProcessHandle, force: bool = False) -> bool:
        """Ask a process to quit; True once it is gone."""
        ...

    def launch(self, app: AppDescriptor) -> bool:
        """Open an application; True if the OS accepted the request."""
        ...


class NotificationBackend(Protocol):
    """The OS user-notification service."""

    def authorization_status(self) -> AuthorizationStatus:
        ...

    def request_authorization(self) -> bool:
        """Ask the user for permission; returns whether it was granted."""
        ...

    def post(self, title: str, body: str) -> None:
        ...


class EventLog(Protocol):
    """Append-only sink for user-visible outcome records."""

    def append(self, text: str) -> None:
        ...
