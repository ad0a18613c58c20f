"""Pytest configuration and shared fixtures for apphelper tests."""
from __future__ import annotations

import plistlib
import sys
import threading
from pathlib import Path
from typing import Any, Dict

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from apphelper.actions import ActionExecutor, Reporter  # noqa: E402
from apphelper.core.injection import DependencyContainer  # noqa: E402
from apphelper.core.interfaces import AppDescriptor  # noqa: E402
from apphelper.core.resilience import ActionDispatcher  # noqa: E402
from apphelper.notifications import NotificationGateway  # noqa: E402


# Well-known apps with fixed bundle ids so nothing is read from disk.
TEST_APPS = {
    "System Settings": ("/System/Applications/System Settings.app", "com.apple.systempreferences"),
    "AppleIDSettings": ("/System/Library/ExtensionKit/Extensions/AppleIDSettings.appex", "com.apple.systempreferences.AppleIDSettings"),
    "Xcode": ("/Applications/Xcode.app", "com.apple.dt.Xcode"),
    "Xcode-beta": ("/Applications/Xcode-beta.app", "com.apple.dt.Xcode"),
    "Safari": ("/Applications/Safari.app", "com.apple.Safari"),
    "MonitorControl": ("/Applications/MonitorControl.app", "me.guillaumeb.MonitorControl"),
    "SwitchHosts": ("/Applications/SwitchHosts.app", "SwitchHosts"),
    "NightOwl": ("/Applications/NightOwl.app", "com.fuekiin.NightOwl"),
}


def make_app(name: str, bundle_id: str = "") -> AppDescriptor:
    """Build an AppDescriptor for a bundle under /Applications."""
    return AppDescriptor(display_name=name, location=Path(f"/Applications/{name}.app"), bundle_id=bundle_id)


@pytest.fixture
def container() -> DependencyContainer:
    """Container wired entirely with mocks."""
    return DependencyContainer.for_testing(known_apps=TEST_APPS)


@pytest.fixture
def runner(container):
    return container.runner


@pytest.fixture
def processes(container):
    return container.processes


@pytest.fixture
def backend(container):
    return container.notifications


@pytest.fixture
def event_log(container):
    return container.event_log


@pytest.fixture
def gateway(backend) -> NotificationGateway:
    return NotificationGateway(backend)


@pytest.fixture
def reporter(gateway, event_log) -> Reporter:
    return Reporter(gateway, event_log, notify_user=True)


@pytest.fixture
def stop_event():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def executor(processes, runner, reporter, stop_event) -> ActionExecutor:
    """Executor with a fast poll loop."""
    return ActionExecutor(
        processes,
        runner,
        reporter,
        stop=stop_event,
        poll_interval=0.01,
        poll_timeout=2.0,
    )


@pytest.fixture
def dispatcher():
    pool = ActionDispatcher(max_workers=4)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def temp_plist_file(tmp_path):
    """Factory fixture for creating temporary plist files."""

    def _create(data: Dict[str, Any], filename: str = "test.plist") -> Path:
        plist_path = tmp_path / filename
        with plist_path.open("wb") as f:
            plistlib.dump(data, f)
        return plist_path

    return _create
