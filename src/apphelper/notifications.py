"""User notification delivery with a three-state permission lifecycle.

One ``NotificationGateway`` is shared by the rule engine and the
scheduler so permission handling cannot diverge between them:

- UNDETERMINED: request permission, then retry delivery exactly once
- DENIED: raise ``PermissionDenied`` and tell observers, do not deliver
- AUTHORIZED / PROVISIONAL: deliver immediately
"""
from __future__ import annotations

import logging
import shlex
import threading
from typing import Callable, List, Optional

from .core.interfaces import AuthorizationStatus, CommandRunner, NotificationBackend
from .errors import PermissionDenied
from .utils.commands import CommandExecutionError, CommandTimeoutError

logger = logging.getLogger(__name__)

_DELIVERABLE = {AuthorizationStatus.AUTHORIZED, AuthorizationStatus.PROVISIONAL}

DeniedObserver = Callable[[PermissionDenied], None]
ErrorObserver = Callable[[Exception], None]


class NotificationGateway:
    """Delivers user-facing messages through a NotificationBackend."""

    def __init__(self, backend: NotificationBackend) -> None:
        self.backend = backend
        self._denied_observers: List[DeniedObserver] = []
        self._error_observers: List[ErrorObserver] = []
        self._lock = threading.Lock()

    def on_permission_denied(self, observer: DeniedObserver) -> None:
        with self._lock:
            self._denied_observers.append(observer)

    def on_error(self, observer: ErrorObserver) -> None:
        with self._lock:
            self._error_observers.append(observer)

    def deliver(self, title: str, body: str) -> None:
        """Deliver one notification.

        Raises:
            PermissionDenied: notifications are disabled, or permission is
                still undetermined after one request.
        """
        self._deliver(title, body, requested=False)

    def _deliver(self, title: str, body: str, requested: bool) -> None:
        status = self.backend.authorization_status()

        if status is AuthorizationStatus.UNDETERMINED:
            if requested:
                self._denied(PermissionDenied("Notification permission is still undetermined"))
            try:
                self.backend.request_authorization()
            except Exception as exc:  # noqa: BLE001 - backend errors go to observers
                logger.warning("Notification permission request failed: %s", exc)
                self._report_error(exc)
            self._deliver(title, body, requested=True)
            return

        if status is AuthorizationStatus.DENIED:
            self._denied(PermissionDenied())

        if status in _DELIVERABLE:
            self.backend.post(title, body)
            logger.debug("Delivered notification: %s - %s", title, body)

    def _denied(self, error: PermissionDenied) -> None:
        with self._lock:
            observers = list(self._denied_observers)
        for observer in observers:
            observer(error)
        raise error

    def _report_error(self, error: Exception) -> None:
        with self._lock:
            observers = list(self._error_observers)
        for observer in observers:
            observer(error)


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


class OsascriptNotificationBackend:
    """NotificationBackend that posts through ``osascript``.

    macOS offers no permission query for scripted notifications, so the
    user's answer is kept by the caller (``allowed``) and persisted via
    ``on_decision``. ``None`` means undetermined.
    """

    def __init__(
        self,
        runner: CommandRunner,
        allowed: Optional[bool] = None,
        on_decision: Optional[Callable[[bool], None]] = None,
        app_name: str = "App Helper",
    ) -> None:
        self.runner = runner
        self.allowed = allowed
        self.on_decision = on_decision
        self.app_name = app_name

    def authorization_status(self) -> AuthorizationStatus:
        if self.allowed is None:
            return AuthorizationStatus.UNDETERMINED
        return AuthorizationStatus.AUTHORIZED if self.allowed else AuthorizationStatus.DENIED

    def request_authorization(self) -> bool:
        script = (
            f'display dialog "{_escape(self.app_name)} would like to send you notifications." '
            'buttons {"Don\'t Allow", "Allow"} default button "Allow" giving up after 60'
        )
        result = self.runner.run(f"osascript -e {shlex.quote(script)}", timeout=90)
        if result.returncode != 0 or "gave up:true" in result.stdout:
            # Dismissed without an answer; stays undetermined.
            return False
        granted = "button returned:Allow" in result.stdout
        self.allowed = granted
        if self.on_decision is not None:
            self.on_decision(granted)
        return granted

    def post(self, title: str, body: str) -> None:
        script = f'display notification "{_escape(body)}" with title "{_escape(title)}"'
        try:
            self.runner.run(f"osascript -e {shlex.quote(script)}")
        except (CommandTimeoutError, CommandExecutionError) as exc:
            logger.warning("Failed to send notification: %s", exc)
