"""Tests for the notification permission lifecycle."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from apphelper.core.injection import MockCommandRunner, MockNotificationBackend
from apphelper.core.interfaces import AuthorizationStatus
from apphelper.errors import PermissionDenied
from apphelper.notifications import NotificationGateway, OsascriptNotificationBackend
from apphelper.utils.commands import CommandResult, CommandTimeoutError


class TestNotificationGateway:
    def test_authorized_delivers_immediately(self) -> None:
        backend = MockNotificationBackend()
        NotificationGateway(backend).deliver("Rule Applied", "Safari quit")

        assert backend.posted == [("Rule Applied", "Safari quit")]
        assert backend.requests == 0

    def test_provisional_delivers(self) -> None:
        backend = MockNotificationBackend(status=AuthorizationStatus.PROVISIONAL)
        NotificationGateway(backend).deliver("t", "b")

        assert backend.posted == [("t", "b")]

    def test_undetermined_requests_then_delivers(self) -> None:
        backend = MockNotificationBackend(status=AuthorizationStatus.UNDETERMINED)
        NotificationGateway(backend).deliver("t", "b")

        assert backend.requests == 1
        assert backend.posted == [("t", "b")]

    def test_undetermined_refused_raises(self) -> None:
        backend = MockNotificationBackend(status=AuthorizationStatus.UNDETERMINED, grant_on_request=False)
        gateway = NotificationGateway(backend)

        with pytest.raises(PermissionDenied):
            gateway.deliver("t", "b")
        assert backend.requests == 1
        assert backend.posted == []

    def test_still_undetermined_requests_only_once(self) -> None:
        backend = MockNotificationBackend(status=AuthorizationStatus.UNDETERMINED, grant_on_request=None)
        gateway = NotificationGateway(backend)

        with pytest.raises(PermissionDenied, match="undetermined"):
            gateway.deliver("t", "b")
        assert backend.requests == 1

    def test_denied_tells_observers(self) -> None:
        backend = MockNotificationBackend(status=AuthorizationStatus.DENIED)
        gateway = NotificationGateway(backend)
        observer = MagicMock()
        gateway.on_permission_denied(observer)

        with pytest.raises(PermissionDenied):
            gateway.deliver("t", "b")

        observer.assert_called_once()
        assert isinstance(observer.call_args[0][0], PermissionDenied)
        assert backend.requests == 0

    def test_request_error_goes_to_error_observers(self) -> None:
        backend = MockNotificationBackend(status=AuthorizationStatus.UNDETERMINED)
        backend.request_error = RuntimeError("center unavailable")
        gateway = NotificationGateway(backend)
        errors = MagicMock()
        gateway.on_error(errors)

        with pytest.raises(PermissionDenied):
            gateway.deliver("t", "b")

        errors.assert_called_once_with(backend.request_error)
        assert backend.requests == 1


class TestOsascriptBackend:
    def test_status_from_stored_decision(self) -> None:
        runner = MockCommandRunner()
        assert OsascriptNotificationBackend(runner).authorization_status() is AuthorizationStatus.UNDETERMINED
        assert OsascriptNotificationBackend(runner, allowed=True).authorization_status() is AuthorizationStatus.AUTHORIZED
        assert OsascriptNotificationBackend(runner, allowed=False).authorization_status() is AuthorizationStatus.DENIED

    def test_allow_is_persisted(self) -> None:
        runner = MockCommandRunner()
        runner.mock_response("osascript", CommandResult("button returned:Allow, gave up:false", "", 0))
        decided = MagicMock()
        backend = OsascriptNotificationBackend(runner, on_decision=decided)

        assert backend.request_authorization() is True
        assert backend.authorization_status() is AuthorizationStatus.AUTHORIZED
        decided.assert_called_once_with(True)

    def test_dismissed_dialog_stays_undetermined(self) -> None:
        runner = MockCommandRunner()
        runner.mock_response("osascript", CommandResult("button returned:, gave up:true", "", 0))
        decided = MagicMock()
        backend = OsascriptNotificationBackend(runner, on_decision=decided)

        assert backend.request_authorization() is False
        assert backend.authorization_status() is AuthorizationStatus.UNDETERMINED
        decided.assert_not_called()

    def test_post_escapes_quotes(self) -> None:
        runner = MockCommandRunner()
        runner.mock_response("osascript", CommandResult("", "", 0))
        OsascriptNotificationBackend(runner, allowed=True).post("Rule Applied", 'Quit "Safari"')

        assert runner.calls[0].startswith("osascript -e ")
        assert '\\"Safari\\"' in runner.calls[0]

    def test_post_failure_is_logged_not_raised(self) -> None:
        runner = MockCommandRunner()
        runner.mock_response("osascript", CommandTimeoutError("osascript", 10))

        OsascriptNotificationBackend(runner, allowed=True).post("t", "b")

        assert len(runner.calls) == 1
