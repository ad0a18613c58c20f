"""Process directory backed by psutil, and the catalogue of well-known apps."""
from __future__ import annotations

import logging
import shlex
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

import psutil

from .core.interfaces import (
    AppDescriptor,
    CommandRunner,
    ProcessHandle,
    ProcessPredicate,
)
from .utils.commands import CommandExecutionError, CommandTimeoutError
from .utils.parsers import parse_lsappinfo_names, parse_mdls_value, read_bundle_identifier

logger = logging.getLogger(__name__)

# Seconds to wait for a process to exit after a terminate request
DEFAULT_QUIT_WAIT = 1.0

# name -> (bundle location, bundle id if it cannot be read from disk)
WELL_KNOWN_APPS: Dict[str, tuple[str, Optional[str]]] = {
    "System Settings": ("/System/Applications/System Settings.app", None),
    "AppleIDSettings": ("/System/Library/ExtensionKit/Extensions/AppleIDSettings.appex", None),
    "Xcode": ("/Applications/Xcode.app", None),
    "Xcode-beta": ("/Applications/Xcode-beta.app", None),
    "Safari": ("/Applications/Safari.app", None),
    "MonitorControl": ("/Applications/MonitorControl.app", "me.guillaumeb.MonitorControl"),
    "SwitchHosts": ("/Applications/SwitchHosts.app", None),
    "NightOwl": ("/Applications/NightOwl.app", None),
}

_BUNDLE_SUFFIXES = (".app", ".appex")


def bundle_path_for(exe: Optional[str]) -> Optional[Path]:
    """Innermost ``.app``/``.appex`` directory containing an executable."""
    if not exe:
        return None
    path = Path(exe)
    for parent in path.parents:
        if parent.suffix in _BUNDLE_SUFFIXES:
            return parent
    return None


class PsutilProcessDirectory:
    """ProcessDirectory over the live process table.

    Launching goes through ``open`` so the OS handles LaunchServices
    registration; everything else is psutil. Display names come from
    ``lsappinfo``, since psutil only knows executable names
    (``com.apple.WebKit.WebContent`` rather than "Safari Web Content").
    """

    def __init__(self, runner: CommandRunner, quit_wait: float = DEFAULT_QUIT_WAIT) -> None:
        self.runner = runner
        self.quit_wait = quit_wait
        self._bundle_ids: Dict[Path, Optional[str]] = {}
        self._lock = threading.Lock()

    def _bundle_id(self, bundle: Optional[Path]) -> Optional[str]:
        if bundle is None:
            return None
        with self._lock:
            if bundle not in self._bundle_ids:
                self._bundle_ids[bundle] = read_bundle_identifier(bundle)
            return self._bundle_ids[bundle]

    def _localized_names(self) -> Dict[int, str]:
        try:
            result = self.runner.run("lsappinfo list")
        except (CommandTimeoutError, CommandExecutionError) as exc:
            logger.debug("lsappinfo failed: %s", exc)
            return {}
        if result.returncode != 0:
            logger.debug("lsappinfo exited with %d: %s", result.returncode, result.stderr)
            return {}
        return parse_lsappinfo_names(result.stdout)

    def snapshot(self) -> List[ProcessHandle]:
        localized = self._localized_names()
        handles: List[ProcessHandle] = []
        for proc in psutil.process_iter(["pid", "name", "exe"]):
            info = proc.info
            name = info.get("name")
            if not name:
                continue
            bundle = bundle_path_for(info.get("exe"))
            handles.append(
                ProcessHandle(
                    pid=info["pid"],
                    name=name,
                    bundle_id=self._bundle_id(bundle),
                    bundle_path=bundle,
                    localized_name=localized.get(info["pid"]),
                )
            )
        return handles

    def find(self, predicate: ProcessPredicate) -> List[ProcessHandle]:
        return [handle for handle in self.snapshot() if predicate(handle)]

    def is_running(self, target: Union[str, ProcessPredicate]) -> bool:
        if isinstance(target, str):
            bundle_id = target
            return any(handle.bundle_id == bundle_id for handle in self.snapshot())
        return any(target(handle) for handle in self.snapshot())

    def is_alive(self, handle: ProcessHandle) -> bool:
        try:
            proc = psutil.Process(handle.pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def terminate(self, handle: ProcessHandle, force: bool = False) -> bool:
        try:
            proc = psutil.Process(handle.pid)
            if force:
                proc.kill()
            else:
                proc.terminate()
            proc.wait(timeout=self.quit_wait)
            return True
        except psutil.NoSuchProcess:
            return True
        except psutil.TimeoutExpired:
            logger.debug("%s (pid %d) still alive after %s", handle.name, handle.pid,
                         "force terminate" if force else "terminate")
            return False
        except psutil.AccessDenied:
            logger.warning("Not allowed to terminate %s (pid %d)", handle.name, handle.pid)
            return False

    def launch(self, app: AppDescriptor) -> bool:
        if app.location.exists():
            cmdline = f"open {shlex.quote(str(app.location))}"
        elif app.bundle_id:
            cmdline = f"open -b {shlex.quote(app.bundle_id)}"
        else:
            logger.warning("Cannot launch %s: no bundle at %s", app.display_name, app.location)
            return False
        try:
            result = self.runner.run(cmdline)
        except (CommandTimeoutError, CommandExecutionError) as exc:
            logger.error("Launching %s failed: %s", app.display_name, exc)
            return False
        if result.returncode != 0:
            logger.error("Launching %s failed: %s", app.display_name, result.stderr)
        return result.returncode == 0


class AppCatalog:
    """Lazily resolved, process-lifetime cache of AppDescriptors."""

    def __init__(self, runner: CommandRunner, known: Optional[Dict[str, tuple[str, Optional[str]]]] = None) -> None:
        self.runner = runner
        self.known = dict(WELL_KNOWN_APPS if known is None else known)
        self._cache: Dict[str, AppDescriptor] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> AppDescriptor:
        """Descriptor for a well-known app, resolved on first use."""
        with self._lock:
            cached = self._cache.get(name)
        if cached is not None:
            return cached

        if name not in self.known:
            raise KeyError(f"Unknown application: {name}")
        location, bundle_id = self.known[name]
        descriptor = self.resolve(Path(location), bundle_id)

        with self._lock:
            # Another thread may have resolved it meanwhile; keep the first.
            return self._cache.setdefault(name, descriptor)

    def resolve(self, location: Path, bundle_id: Optional[str] = None) -> AppDescriptor:
        name = location.stem
        if not bundle_id:
            bundle_id = read_bundle_identifier(location) or self._mdls_bundle_id(location)
        if not bundle_id:
            logger.info("No bundle identifier for %s, matching by name only", location)
        return AppDescriptor(display_name=name, location=location, bundle_id=bundle_id or "")

    def _mdls_bundle_id(self, location: Path) -> Optional[str]:
        cmdline = f"mdls -name kMDItemCFBundleIdentifier -r {shlex.quote(str(location))}"
        try:
            result = self.runner.run(cmdline)
        except (CommandTimeoutError, CommandExecutionError) as exc:
            logger.debug("mdls lookup failed for %s: %s", location, exc)
            return None
        if result.returncode != 0:
            return None
        return parse_mdls_value(result.stdout)
