"""Core architectural components for apphelper.

This module provides:
- Collaborator protocols and the event/process data model
- Isolated, concurrent dispatch of remediation actions
- Graceful degradation patterns

The dependency container lives in ``apphelper.core.injection``.
"""

from .interfaces import (
    AppDescriptor,
    AuthorizationStatus,
    CommandRunner,
    Event,
    EventKind,
    EventLog,
    NotificationBackend,
    ProcessDirectory,
    ProcessHandle,
)
from .resilience import ActionDispatcher, ExecutionResult, with_graceful_degradation

__all__ = [
    # Interfaces
    "AppDescriptor",
    "AuthorizationStatus",
    "CommandRunner",
    "Event",
    "EventKind",
    "EventLog",
    "NotificationBackend",
    "ProcessDirectory",
    "ProcessHandle",
    # Resilience
    "ActionDispatcher",
    "ExecutionResult",
    "with_graceful_degradation",
]
