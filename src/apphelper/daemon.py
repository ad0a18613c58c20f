"""Command line entry point and the composed root of the daemon."""
from __future__ import annotations

import argparse
import atexit
import logging
import logging.handlers
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import psutil

from . import __version__
from .actions import ActionExecutor, Reporter
from .config import (
    APP_SUPPORT_DIR,
    EVENT_LOG_FILE,
    LOG_DIR,
    PID_FILE,
    SETTINGS_FILE,
    STATE_FILE,
    Settings,
    StateStore,
)
from .core.injection import DependencyContainer
from .core.interfaces import Event, EventKind
from .core.resilience import ActionDispatcher
from .errors import PermissionDenied
from .eventlog import SqliteEventLog
from .maintenance import BrewService, BrewUpdateCheck
from .notifications import NotificationGateway
from .rules import RuleEngine, build_rules
from .schedule import DISTANT_PAST, ScheduleEngine, next_run_at
from .watcher import TICK_INTERVAL, SystemWatcher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def configure_logging(
    level: int = logging.INFO,
    console_level: int = logging.WARNING,
    log_dir: Path = LOG_DIR,
) -> None:
    """Configure logging for the daemon.

    Logs are written to ~/Library/Logs/apphelper/apphelper.log
    with automatic rotation at 5MB and 3 backup files retained.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "apphelper.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Rotating file handler: 5MB max, keep 3 backups
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)

    logging.basicConfig(level=min(level, console_level), handlers=[file_handler, console_handler])


class Reactor:
    """Owns every long-lived component and their threads.

    One Reactor per daemon process; ``stop_watch`` tears everything down
    and may be called any number of times from any thread.
    """

    def __init__(
        self,
        settings: Settings,
        state: StateStore,
        container: DependencyContainer,
        watcher: Optional[SystemWatcher] = None,
        schedule_tick: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self.state = state
        self.container = container
        self.stop_event = threading.Event()
        self._stopped = False
        self._lock = threading.Lock()

        self.gateway = NotificationGateway(container.notifications)
        self.gateway.on_permission_denied(self._on_permission_denied)
        self.gateway.on_error(lambda exc: logger.warning("Notification error: %s", exc))
        self.reporter = Reporter(self.gateway, container.event_log, settings.notify_user)

        self.dispatcher = ActionDispatcher(max_workers=4)
        self.executor = ActionExecutor(
            container.processes,
            container.runner,
            self.reporter,
            stop=self.stop_event,
            poll_timeout=settings.command_timeout,
            tick_interval=TICK_INTERVAL,
        )
        self.rules = self._build_rule_engine(settings)

        self.brew = BrewService(container.runner, settings.brew_path, settings.command_timeout)
        self.maintenance = BrewUpdateCheck(self.brew, self.reporter)
        scheduler_options = {} if schedule_tick is None else {"tick_interval": schedule_tick}
        self.scheduler = ScheduleEngine(
            self.maintenance,
            settings.schedule_config(),
            last_completed_at=state.last_brew_update_check,
            on_completed=state.save_last_brew_update_check,
            load_last_completed=lambda: state.last_brew_update_check,
            **scheduler_options,
        )

        self.watcher = watcher or SystemWatcher(container.processes)
        self.watcher.subscribe(self.on_event)

    def _build_rule_engine(self, settings: Settings) -> RuleEngine:
        rules = build_rules(settings.rules, self.container.catalog)
        return RuleEngine(rules, self.executor, self.container.processes, self.dispatcher, stop=self.stop_event)

    def _on_permission_denied(self, error: PermissionDenied) -> None:
        logger.info("Notifications are not authorized: %s", error)

    def on_event(self, event: Event) -> None:
        """Entry point for every OS event."""
        self.rules.handle(event)
        if event.kind is EventKind.SYSTEM_DID_WAKE:
            self.scheduler.notify_wake()

    def reload(self, settings: Settings) -> None:
        """Apply new settings without restarting any thread."""
        self.settings = settings
        self.reporter.notify_user = settings.notify_user
        self.rules = self._build_rule_engine(settings)
        self.brew.brew_path = settings.brew_path
        self.brew.timeout = settings.command_timeout
        self.scheduler.update_config(settings.schedule_config())
        logger.info("Settings reloaded: %d rules enabled", len(self.rules.enabled_rules))

    def start_watch(self) -> None:
        self.scheduler.start()
        self.watcher.start_watch()
        logger.info(
            "apphelper %s running with %d rules enabled",
            __version__,
            len(self.rules.enabled_rules),
        )

    def stop_watch(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self.stop_event.set()
        self.watcher.stop_watch()
        self.scheduler.stop()
        if not self.dispatcher.wait_idle(timeout=2.0):
            logger.warning("Some actions were still running at shutdown")
        self.dispatcher.shutdown(wait=False)
        logger.info("apphelper stopped")

    def run_forever(self) -> None:
        self.start_watch()
        try:
            while not self.stop_event.wait(1.0):
                pass
        finally:
            self.stop_watch()


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="apphelper",
        description="apphelper - application lifecycle helper and Homebrew update scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          Run the daemon in the foreground
  %(prog)s check-now                Check for Homebrew updates once
  %(prog)s upgrade                  Upgrade outdated Homebrew packages
  %(prog)s status                   Show schedule and enabled rules
  %(prog)s logs --limit 20          Show the 20 most recent events
""",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=["run", "check-now", "upgrade", "status", "logs"],
        default="run",
        help="What to do (default: run)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=APP_SUPPORT_DIR / SETTINGS_FILE,
        help="Settings plist",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=APP_SUPPORT_DIR,
        help="Directory for state.plist and the event log",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Number of entries shown by 'logs'",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show informational messages on the console",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "disabled"
    if value == DISTANT_PAST:
        return "never"
    return value.strftime("%Y-%m-%d %H:%M")


def _print_status(settings: Settings, state: StateStore) -> int:
    config = settings.schedule_config()
    last = state.last_brew_update_check
    upcoming = next_run_at(datetime.now(), last, config) if config.enabled else None
    print(f"apphelper {__version__}")
    print(f"Homebrew updates: {'on' if config.enabled else 'off'} ({config.frequency.value})")
    print(f"Last check:       {_format_time(last)}")
    print(f"Next check:       {_format_time(upcoming)}")
    rules = settings.enabled_rule_keys()
    print(f"Rules enabled:    {', '.join(rules) if rules else 'none'}")
    return EXIT_OK


def _print_logs(event_log_path: Path, limit: int) -> int:
    entries = SqliteEventLog(event_log_path).recent(limit)
    if not entries:
        print("No events recorded")
    for entry in entries:
        print(f"{entry.created_at:%Y-%m-%d %H:%M:%S}  {entry.text}")
    return EXIT_OK


def _write_pid_file(pid_path: Path) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(os.getpid()))
    logger.debug("PID file written: %s", pid_path)


def _remove_pid_file(pid_path: Path) -> None:
    pid_path.unlink(missing_ok=True)


def _running_daemon_pid(pid_path: Path) -> Optional[int]:
    """PID of a live apphelper daemon, clearing a stale PID file."""
    try:
        pid = int(pid_path.read_text().strip())
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        logger.warning("Invalid PID file %s, removing it", pid_path)
        _remove_pid_file(pid_path)
        return None

    if pid == os.getpid():
        return None
    try:
        cmdline = " ".join(psutil.Process(pid).cmdline())
    except psutil.NoSuchProcess:
        logger.info("Stale PID file for pid %d, removing it", pid)
        _remove_pid_file(pid_path)
        return None
    except psutil.AccessDenied:
        return pid
    if "apphelper" not in cmdline:
        logger.info("PID %d is not apphelper (%s), removing PID file", pid, cmdline[:80])
        _remove_pid_file(pid_path)
        return None
    return pid


def _signal_running_daemon(pid_path: Path) -> Optional[int]:
    """Ask a running daemon to check now; returns its PID when it was told."""
    pid = _running_daemon_pid(pid_path)
    if pid is None:
        return None
    try:
        os.kill(pid, signal.SIGUSR1)
    except (ProcessLookupError, PermissionError) as exc:
        logger.warning("Could not signal daemon %d: %s", pid, exc)
        return None
    return pid


def _check_now(reactor: Reactor) -> int:
    """One manual run through the scheduler, without the tick thread."""
    scheduler = reactor.scheduler
    scheduler.start(ticking=False)
    try:
        scheduler.check_now()
        scheduler.sync()
        scheduler.wait_for_run()
    finally:
        scheduler.stop()

    outcome = reactor.maintenance.last_ok
    if outcome is None:
        return EXIT_INTERRUPTED
    if not outcome:
        print("Homebrew check failed, see the log for details")
        return EXIT_ERROR
    packages = reactor.maintenance.last_packages
    if packages:
        print(f"{len(packages)} outdated: {', '.join(packages)}")
    else:
        print("Homebrew is up to date")
    return EXIT_OK


def _upgrade(reactor: Reactor) -> int:
    output = reactor.maintenance.upgrade()
    if output is None:
        print("Homebrew upgrade failed, see the log for details")
        return EXIT_ERROR
    print(output or "Nothing to upgrade")
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    if args.debug:
        configure_logging(level=logging.DEBUG, console_level=logging.DEBUG)
    else:
        configure_logging(console_level=logging.INFO if args.verbose else logging.WARNING)

    settings = Settings.load(args.config)
    state = StateStore(args.state_dir / STATE_FILE)
    event_log_path = args.state_dir / EVENT_LOG_FILE

    if args.command == "status":
        return _print_status(settings, state)
    if args.command == "logs":
        return _print_logs(event_log_path, args.limit)

    allowed = settings.notifications_allowed
    if allowed is None:
        allowed = state.notifications_allowed
    container = DependencyContainer.production(
        event_log_path=event_log_path,
        notifications_allowed=allowed,
        on_notification_decision=state.save_notifications_allowed,
        command_timeout=settings.command_timeout,
    )

    pid_path = args.state_dir / PID_FILE
    if args.command == "check-now":
        pid = _signal_running_daemon(pid_path)
        if pid is not None:
            print(f"Asked the running daemon (pid {pid}) to check for updates")
            return EXIT_OK

    try:
        reactor = Reactor(settings, state, container)
        if args.command == "check-now":
            return _check_now(reactor)
        if args.command == "upgrade":
            return _upgrade(reactor)

        if sys.platform != "darwin":
            logger.warning("apphelper targets macOS; running on %s", sys.platform)

        def _shutdown(signum, _frame) -> None:
            logger.info("Received signal %d, shutting down", signum)
            reactor.stop_event.set()

        def _reload(signum, _frame) -> None:
            reactor.reload(Settings.load(args.config))

        def _check(signum, _frame) -> None:
            logger.info("Update check requested")
            reactor.scheduler.check_now()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGHUP, _reload)
        signal.signal(signal.SIGUSR1, _check)
        atexit.register(reactor.stop_watch)
        _write_pid_file(pid_path)
        try:
            reactor.run_forever()
        finally:
            _remove_pid_file(pid_path)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_INTERRUPTED
    except Exception:  # noqa: BLE001 - report and exit non-zero
        logger.exception("apphelper failed")
        return EXIT_ERROR
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
