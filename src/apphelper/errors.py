"""Error taxonomy for the lifecycle reactor and the maintenance scheduler."""
from __future__ import annotations

from typing import Optional


class AppHelperError(RuntimeError):
    """Base class for all errors raised inside apphelper."""


class LaunchFailed(AppHelperError):
    """Raised when a target application could not be opened.

    Reported to the user, never retried.
    """

    def __init__(self, app_name: str, reason: str = "") -> None:
        message = f"Could not launch {app_name}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.app_name = app_name
        self.reason = reason


class QuitEscalationExhausted(AppHelperError):
    """All three quit steps were attempted on a process.

    The final ``kill -9`` is assumed effective unless kill verification
    is enabled, in which case this is raised when the process survives.
    """

    def __init__(self, process_name: str, pid: int) -> None:
        super().__init__(f"{process_name} (pid {pid}) survived the quit escalation ladder")
        self.process_name = process_name
        self.pid = pid


class PermissionDenied(AppHelperError):
    """User notifications are disabled for this application."""

    def __init__(self, message: str = "Notification is not allowed by user") -> None:
        super().__init__(message)


class Cancelled(AppHelperError):
    """A scheduled task was interrupted through its cancel token.

    Not a failure: it is never logged to the event log and never updates
    the run state.
    """

    def __init__(self, what: str = "task", generation: Optional[int] = None) -> None:
        suffix = f" (run {generation})" if generation is not None else ""
        super().__init__(f"{what} cancelled{suffix}")
        self.what = what
        self.generation = generation
