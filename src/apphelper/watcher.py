"""OS event source built on polling.

- Terminations: diff of consecutive application-process snapshots
- Wake: wall clock advanced further than the monotonic clock, which
  stands still while the machine sleeps
- Timer ticks: every ``tick_interval`` seconds of monotonic time

Will-sleep is not observed. Polling cannot see it and the daemon installs
no power hook, so ``SYSTEM_WILL_SLEEP`` is only emitted when an embedding
host calls ``notify_will_sleep``. No built-in rule triggers on it.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from .core.interfaces import Event, EventKind, ProcessDirectory, ProcessHandle

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
TICK_INTERVAL = 5.0
# Clock divergence above this many seconds counts as a sleep.
WAKE_THRESHOLD = 10.0

Listener = Callable[[Event], object]


class SystemWatcher:
    """Polls the process table and clocks on one thread and emits Events."""

    def __init__(
        self,
        processes: ProcessDirectory,
        poll_interval: float = POLL_INTERVAL,
        tick_interval: float = TICK_INTERVAL,
        wake_threshold: float = WAKE_THRESHOLD,
        wall_clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.processes = processes
        self.poll_interval = poll_interval
        self.tick_interval = tick_interval
        self.wake_threshold = wake_threshold
        self.wall_clock = wall_clock
        self.monotonic = monotonic
        self._listeners: List[Listener] = []
        self._known: Optional[Dict[int, ProcessHandle]] = None
        self._last_wall: Optional[float] = None
        self._last_mono: Optional[float] = None
        self._last_tick: Optional[float] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_watch(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._watch_loop, name="system-watcher", daemon=True)
        self._thread.start()
        logger.info("Watching applications (poll %.1fs, tick %.1fs)", self.poll_interval, self.tick_interval)

    def stop_watch(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            logger.info("Stopped watching applications")

    @property
    def watching(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _watch_loop(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.poll_interval)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_once(self) -> List[Event]:
        """Run one observation cycle and emit what it found."""
        events: List[Event] = []
        if self._woke_up():
            events.append(Event(kind=EventKind.SYSTEM_DID_WAKE))
        events.extend(self._terminations())
        if self._tick_due():
            events.append(Event(kind=EventKind.TIMER_TICK))
        for event in events:
            self.emit(event)
        return events

    def notify_will_sleep(self) -> None:
        self.emit(Event(kind=EventKind.SYSTEM_WILL_SLEEP))

    def emit(self, event: Event) -> None:
        if event.kind is not EventKind.TIMER_TICK:
            logger.debug("Event %s (%s)", event.kind.value,
                         event.subject.display_name if event.subject else "-")
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001 - one listener must not starve the others
                logger.exception("Listener failed handling %s", event.kind.value)

    def _woke_up(self) -> bool:
        wall, mono = self.wall_clock(), self.monotonic()
        last_wall, last_mono = self._last_wall, self._last_mono
        self._last_wall, self._last_mono = wall, mono
        if last_wall is None or last_mono is None:
            return False
        slept = (wall - last_wall) - (mono - last_mono)
        if slept > self.wake_threshold:
            logger.info("System woke after about %.0fs asleep", slept)
            # Restart the tick period after wake.
            self._last_tick = mono
            return True
        return False

    def _terminations(self) -> List[Event]:
        try:
            current = {
                handle.pid: handle
                for handle in self.processes.snapshot()
                if handle.bundle_path is not None
            }
        except Exception as exc:  # noqa: BLE001 - keep watching on a bad snapshot
            logger.warning("Process snapshot failed: %s", exc)
            return []

        previous, self._known = self._known, current
        if previous is None:
            return []
        gone = [handle for pid, handle in previous.items() if pid not in current]
        return [Event(kind=EventKind.PROCESS_TERMINATED, subject=handle.describe()) for handle in gone]

    def _tick_due(self) -> bool:
        now = self.monotonic()
        if self._last_tick is None:
            self._last_tick = now
            return False
        if now - self._last_tick >= self.tick_interval:
            self._last_tick = now
            return True
        return False
