"""Single-flight scheduling of the periodic maintenance task.

Architecture:
┌──────────────┐   try_start(automatic)   ┌────────────────────────┐
│ tick thread  │ ───────────────────────▶ │                        │
│ (60 s, wake) │                          │   coordinator thread   │
└──────────────┘                          │   owns TaskRunState    │
┌──────────────┐   try_start(manual)      │                        │
│ check_now()  │ ───────────────────────▶ │                        │
└──────────────┘                          └────────────────────────┘
                                              │ start(generation, token)
                                              ▼   ▲ completed(generation, ok)
                                          ┌────────────────────────┐
                                          │  maintenance worker    │
                                          └────────────────────────┘

Only the coordinator reads or writes TaskRunState, so the "is a run in
flight" decision and the start of a run are one atomic step. A run's
completion is accepted only if its generation is still current and its
cancel token was never fired. A cancelled run stays in flight until its
worker reports back, so no second run can overlap it.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, replace
from datetime import date, datetime, time as dtime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .errors import Cancelled

logger = logging.getLogger(__name__)

DISTANT_PAST = datetime.min
TICK_INTERVAL = 60.0
HOUR = timedelta(hours=1)


class Frequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class Trigger(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


@dataclass(frozen=True)
class ScheduleConfig:
    """User schedule policy. ``weekday`` counts from 1 = Sunday."""

    enabled: bool = True
    frequency: Frequency = Frequency.HOURLY
    time_of_day: Tuple[int, int] = (9, 0)
    weekday: int = 2

    def __post_init__(self) -> None:
        hour, minute = self.time_of_day
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValueError(f"Invalid time of day: {hour:02d}:{minute:02d}")
        if not 1 <= self.weekday <= 7:
            raise ValueError(f"Weekday must be 1..7 (1 = Sunday), got {self.weekday}")
        if not isinstance(self.frequency, Frequency):
            object.__setattr__(self, "frequency", Frequency(self.frequency))

    @property
    def at(self) -> dtime:
        return dtime(hour=self.time_of_day[0], minute=self.time_of_day[1])


def start_of_week(day: date) -> date:
    """Sunday of the calendar week containing ``day``."""
    return day - timedelta(days=day.isoweekday() % 7)


def _this_week_slot(now: datetime, config: ScheduleConfig) -> datetime:
    day = start_of_week(now.date()) + timedelta(days=config.weekday - 1)
    return datetime.combine(day, config.at)


def is_due(now: datetime, last_completed_at: datetime, config: ScheduleConfig) -> bool:
    """Whether an automatic run should start at ``now``."""
    if last_completed_at == DISTANT_PAST:
        return True

    if config.frequency is Frequency.HOURLY:
        return now - last_completed_at >= HOUR

    if config.frequency is Frequency.DAILY:
        if last_completed_at.date() == now.date():
            return False
        return now >= datetime.combine(now.date(), config.at)

    # WEEKLY
    if start_of_week(last_completed_at.date()) == start_of_week(now.date()):
        return False
    return now >= _this_week_slot(now, config)


def next_run_at(now: datetime, last_completed_at: datetime, config: ScheduleConfig) -> datetime:
    """Earliest instant at which ``is_due`` becomes true."""
    if is_due(now, last_completed_at, config):
        return now

    if config.frequency is Frequency.HOURLY:
        return last_completed_at + HOUR

    if config.frequency is Frequency.DAILY:
        today = datetime.combine(now.date(), config.at)
        if last_completed_at.date() == now.date():
            return today + timedelta(days=1)
        return today

    slot = _this_week_slot(now, config)
    if start_of_week(last_completed_at.date()) == start_of_week(now.date()):
        return slot + timedelta(weeks=1)
    return slot


@dataclass
class TaskRunState:
    last_completed_at: datetime = DISTANT_PAST
    is_running: bool = False
    cancel_token: Optional[threading.Event] = None
    generation: int = 0


MaintenanceTask = Callable[[threading.Event], object]


class ScheduleEngine:
    """Drives a maintenance task at most once per scheduling period.

    Args:
        task: called on a worker thread with the run's cancel token.
            Raising ``Cancelled`` marks the run as abandoned.
        config: initial schedule policy
        last_completed_at: persisted completion time of the last run
        on_completed: called on the coordinator thread with the new
            ``last_completed_at`` after each accepted completion
        tick_interval: seconds between automatic due checks
        clock: source of local wall-clock time
        load_last_completed: re-reads the persisted completion time before
            each due check, so runs made by another process count
    """

    def __init__(
        self,
        task: MaintenanceTask,
        config: ScheduleConfig,
        last_completed_at: datetime = DISTANT_PAST,
        on_completed: Optional[Callable[[datetime], None]] = None,
        tick_interval: float = TICK_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
        load_last_completed: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.task = task
        self.config = config
        self.on_completed = on_completed
        self.tick_interval = tick_interval
        self.clock = clock
        self.load_last_completed = load_last_completed
        self._state = TaskRunState(last_completed_at=last_completed_at)
        self._state_lock = threading.Lock()
        self._inbox: "queue.Queue[tuple]" = queue.Queue()
        self._stop = threading.Event()
        self._rearm = threading.Event()
        self._coordinator: Optional[threading.Thread] = None
        self._ticker: Optional[threading.Thread] = None
        self._workers: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Public API (any thread)
    # ------------------------------------------------------------------

    def start(self, ticking: bool = True) -> None:
        if self._coordinator is not None:
            return
        self._coordinator = threading.Thread(target=self._coordinate, name="schedule-coordinator", daemon=True)
        self._coordinator.start()
        if ticking:
            self._ticker = threading.Thread(target=self._tick_loop, name="schedule-tick", daemon=True)
            self._ticker.start()
        logger.info("Scheduler started (%s)", self.config.frequency.value)

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel any in-flight run and stop all scheduler threads."""
        if self._stop.is_set():
            return
        self._stop.set()
        self._rearm.set()
        self._inbox.put(("stop",))
        for thread in (self._ticker, self._coordinator):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
        logger.info("Scheduler stopped")

    def tick(self) -> None:
        self._post("try_start", Trigger.AUTOMATIC)

    def check_now(self) -> None:
        """Start a run regardless of due-ness (still single-flight)."""
        self._post("try_start", Trigger.MANUAL)

    def notify_wake(self) -> None:
        """Re-evaluate immediately and restart the tick period."""
        self._rearm.set()
        if self._ticker is None:
            self.tick()

    def update_config(self, config: ScheduleConfig) -> None:
        self._post("config", config)

    def snapshot(self) -> TaskRunState:
        with self._state_lock:
            return replace(self._state)

    def next_run_at(self) -> Optional[datetime]:
        if not self.config.enabled:
            return None
        return next_run_at(self.clock(), self.snapshot().last_completed_at, self.config)

    def sync(self, timeout: Optional[float] = None) -> bool:
        """Wait until the coordinator has handled every earlier message."""
        done = threading.Event()
        self._post("barrier", done)
        return done.wait(timeout)

    def wait_for_run(self, timeout: Optional[float] = None) -> bool:
        """Wait for every live worker and its completion message."""
        for worker in list(self._workers):
            worker.join(timeout)
            if worker.is_alive():
                return False
        return self.sync(timeout)

    def _post(self, *message: object) -> None:
        if self._stop.is_set():
            logger.debug("Scheduler stopped, dropping %s", message[0])
            return
        self._inbox.put(message)

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _tick_loop(self) -> None:
        while True:
            self._rearm.wait(self.tick_interval)
            if self._stop.is_set():
                return
            self._rearm.clear()
            self.tick()

    def _coordinate(self) -> None:
        handlers = {
            "try_start": self._on_try_start,
            "completed": self._on_completed,
            "cancelled": self._on_cancelled,
            "config": self._on_config,
            "barrier": lambda done: done.set(),
        }
        while True:
            kind, *args = self._inbox.get()
            if kind == "stop":
                self._cancel_in_flight("shutdown")
                return
            try:
                handlers[kind](*args)
            except Exception:  # noqa: BLE001 - the coordinator must survive
                logger.exception("Scheduler failed handling %s", kind)

    def _on_try_start(self, trigger: Trigger) -> None:
        state = self._state
        if state.is_running:
            logger.debug("Maintenance already running, ignoring %s request", trigger.value)
            return
        if trigger is Trigger.AUTOMATIC:
            if not self.config.enabled:
                return
            self._refresh_last_completed()
            if not is_due(self.clock(), state.last_completed_at, self.config):
                return

        token = threading.Event()
        with self._state_lock:
            state.generation += 1
            state.is_running = True
            state.cancel_token = token
            generation = state.generation
        logger.info("Starting maintenance run %d (%s)", generation, trigger.value)
        worker = threading.Thread(
            target=self._run,
            args=(generation, token),
            name=f"maintenance-{generation}",
            daemon=True,
        )
        self._workers = [w for w in self._workers if w.is_alive()] + [worker]
        worker.start()

    def _refresh_last_completed(self) -> None:
        if self.load_last_completed is None:
            return
        try:
            persisted = self.load_last_completed()
        except Exception as exc:  # noqa: BLE001 - keep the in-memory value
            logger.warning("Could not read last completion time: %s", exc)
            return
        state = self._state
        if persisted > state.last_completed_at:
            with self._state_lock:
                state.last_completed_at = persisted

    def _run(self, generation: int, token: threading.Event) -> None:
        ok = False
        try:
            self.task(token)
            ok = True
        except Cancelled:
            logger.debug("Maintenance run %d cancelled", generation)
            self._inbox.put(("cancelled", generation))
            return
        except Exception:  # noqa: BLE001 - isolation boundary
            logger.exception("Maintenance run %d failed", generation)
        self._inbox.put(("completed", generation, token, ok, self.clock()))

    def _on_completed(self, generation: int, token: threading.Event, ok: bool, finished_at: datetime) -> None:
        state = self._state
        if generation != state.generation:
            logger.debug("Ignoring completion of stale run %d", generation)
            return
        if token.is_set():
            logger.debug("Cancelled maintenance run %d finished", generation)
            self._finish()
            return
        self._refresh_last_completed()
        with self._state_lock:
            state.last_completed_at = max(state.last_completed_at, finished_at)
            state.is_running = False
            state.cancel_token = None
            completed_at = state.last_completed_at
        logger.info("Maintenance run %d finished (%s)", generation, "ok" if ok else "failed")
        if self.on_completed is not None:
            try:
                self.on_completed(completed_at)
            except Exception as exc:  # noqa: BLE001 - persistence is best effort
                logger.error("Could not persist last completion time: %s", exc)

    def _on_cancelled(self, generation: int) -> None:
        if generation == self._state.generation:
            self._finish()

    def _finish(self) -> None:
        with self._state_lock:
            self._state.is_running = False
            self._state.cancel_token = None

    def _on_config(self, config: ScheduleConfig) -> None:
        previous, self.config = self.config, config
        if config == previous:
            return
        logger.info(
            "Schedule changed: %s -> %s%s",
            previous.frequency.value,
            config.frequency.value,
            "" if config.enabled else " (disabled)",
        )
        self._cancel_in_flight("schedule changed")

    def _cancel_in_flight(self, reason: str) -> None:
        state = self._state
        if not state.is_running:
            return
        # The run stays in flight until its worker reports back.
        if state.cancel_token is not None and not state.cancel_token.is_set():
            logger.info("Cancelling maintenance run %d: %s", state.generation, reason)
            state.cancel_token.set()
