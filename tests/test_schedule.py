"""Tests for due-ness rules and the single-flight schedule engine."""
from __future__ import annotations

import threading
import unittest
from datetime import date, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from apphelper.errors import Cancelled
from apphelper.schedule import (
    DISTANT_PAST,
    Frequency,
    ScheduleConfig,
    ScheduleEngine,
    is_due,
    next_run_at,
    start_of_week,
)

# 2024-01-07 is a Sunday
SUNDAY = datetime(2024, 1, 7, 12, 0)
MONDAY = SUNDAY + timedelta(days=1)

HOURLY = ScheduleConfig(frequency=Frequency.HOURLY)
DAILY = ScheduleConfig(frequency=Frequency.DAILY, time_of_day=(9, 0))
WEEKLY = ScheduleConfig(frequency=Frequency.WEEKLY, time_of_day=(9, 0), weekday=2)


class TestIsDue:
    def test_never_run_is_always_due(self) -> None:
        for config in (HOURLY, DAILY, WEEKLY):
            assert is_due(SUNDAY, DISTANT_PAST, config)

    def test_hourly(self) -> None:
        last = datetime(2024, 1, 8, 10, 0)
        assert not is_due(last + timedelta(minutes=59), last, HOURLY)
        assert is_due(last + timedelta(minutes=61), last, HOURLY)

    def test_daily_before_and_after_slot(self) -> None:
        yesterday = datetime(2024, 1, 7, 9, 30)
        assert not is_due(datetime(2024, 1, 8, 8, 59), yesterday, DAILY)
        assert is_due(datetime(2024, 1, 8, 9, 1), yesterday, DAILY)

    def test_daily_already_ran_today(self) -> None:
        early = datetime(2024, 1, 8, 0, 30)
        assert not is_due(datetime(2024, 1, 8, 23, 0), early, DAILY)

    def test_weekly_same_week(self) -> None:
        monday_run = datetime(2024, 1, 8, 9, 5)
        assert not is_due(datetime(2024, 1, 10, 9, 0), monday_run, WEEKLY)

    def test_weekly_new_week(self) -> None:
        last_week = datetime(2024, 1, 1, 9, 5)
        assert not is_due(datetime(2024, 1, 8, 8, 59), last_week, WEEKLY)
        assert is_due(datetime(2024, 1, 8, 9, 1), last_week, WEEKLY)

    def test_weekly_missed_slot_runs_later_in_week(self) -> None:
        last_week = datetime(2024, 1, 1, 9, 5)
        assert is_due(datetime(2024, 1, 12, 18, 0), last_week, WEEKLY)

    def test_week_starts_on_sunday(self) -> None:
        assert start_of_week(date(2024, 1, 7)) == date(2024, 1, 7)
        assert start_of_week(date(2024, 1, 13)) == date(2024, 1, 7)
        assert start_of_week(date(2024, 1, 14)) == date(2024, 1, 14)


class TestNextRunAt:
    def test_due_now(self) -> None:
        assert next_run_at(SUNDAY, DISTANT_PAST, HOURLY) == SUNDAY

    def test_hourly(self) -> None:
        last = datetime(2024, 1, 8, 10, 0)
        assert next_run_at(last + timedelta(minutes=5), last, HOURLY) == datetime(2024, 1, 8, 11, 0)

    def test_daily_tomorrow(self) -> None:
        last = datetime(2024, 1, 8, 9, 1)
        assert next_run_at(datetime(2024, 1, 8, 12, 0), last, DAILY) == datetime(2024, 1, 9, 9, 0)

    def test_weekly_next_week(self) -> None:
        last = datetime(2024, 1, 8, 9, 1)
        assert next_run_at(datetime(2024, 1, 9, 12, 0), last, WEEKLY) == datetime(2024, 1, 15, 9, 0)


class TestScheduleConfig:
    def test_invalid_time(self) -> None:
        with pytest.raises(ValueError, match="time of day"):
            ScheduleConfig(time_of_day=(24, 0))

    def test_invalid_weekday(self) -> None:
        with pytest.raises(ValueError, match="Weekday"):
            ScheduleConfig(weekday=0)

    def test_frequency_coerced(self) -> None:
        assert ScheduleConfig(frequency="weekly").frequency is Frequency.WEEKLY


class ScheduleEngineTestCase(unittest.TestCase):
    """Runs the coordinator thread without the tick thread."""

    def setUp(self) -> None:
        self.now = datetime(2024, 1, 8, 12, 0)
        self.release = threading.Event()
        self.started = threading.Event()
        self.calls = 0
        self.persisted = MagicMock()

    def tearDown(self) -> None:
        self.release.set()
        if getattr(self, "engine", None) is not None:
            self.engine.stop(timeout=2)

    def _engine(self, task=None, config=HOURLY, last=DISTANT_PAST) -> ScheduleEngine:
        self.engine = ScheduleEngine(
            task or self._blocking_task,
            config,
            last_completed_at=last,
            on_completed=self.persisted,
            clock=lambda: self.now,
        )
        self.engine.start(ticking=False)
        return self.engine

    def _blocking_task(self, token: threading.Event) -> None:
        self.calls += 1
        self.started.set()
        self.release.wait(5)

    def _cancellable_task(self, token: threading.Event) -> None:
        self.calls += 1
        self.started.set()
        while not self.release.is_set():
            if token.wait(0.01):
                raise Cancelled("maintenance")


class TestSingleFlight(ScheduleEngineTestCase):
    def test_overlapping_requests_start_one_run(self) -> None:
        engine = self._engine()

        engine.tick()
        engine.check_now()
        engine.tick()
        self.assertTrue(self.started.wait(2))
        engine.check_now()
        engine.sync(2)

        self.assertTrue(engine.snapshot().is_running)
        self.assertEqual(self.calls, 1)

        self.release.set()
        self.assertTrue(engine.wait_for_run(2))
        self.assertFalse(engine.snapshot().is_running)
        self.assertEqual(engine.snapshot().last_completed_at, self.now)
        self.persisted.assert_called_once_with(self.now)

    def test_not_due_tick_does_nothing(self) -> None:
        engine = self._engine(last=self.now - timedelta(minutes=10))

        engine.tick()
        engine.sync(2)

        self.assertEqual(self.calls, 0)
        self.assertEqual(engine.snapshot().generation, 0)

    def test_manual_check_ignores_due_ness(self) -> None:
        self.release.set()
        engine = self._engine(last=self.now - timedelta(minutes=10))

        engine.check_now()
        self.assertTrue(self.started.wait(2))
        self.assertTrue(engine.wait_for_run(2))

        self.assertEqual(self.calls, 1)
        self.assertEqual(engine.snapshot().last_completed_at, self.now)

    def test_disabled_schedule_only_runs_manually(self) -> None:
        self.release.set()
        engine = self._engine(config=ScheduleConfig(enabled=False))

        engine.tick()
        engine.sync(2)
        self.assertEqual(self.calls, 0)
        self.assertIsNone(engine.next_run_at())

        engine.check_now()
        self.assertTrue(self.started.wait(2))
        self.assertTrue(engine.wait_for_run(2))
        self.assertEqual(self.calls, 1)

    def test_failed_run_still_counts_as_completed(self) -> None:
        def failing(token):
            raise RuntimeError("brew exploded")

        engine = self._engine(task=failing)

        engine.tick()
        engine.sync(2)
        self.assertTrue(engine.wait_for_run(2))

        self.assertFalse(engine.snapshot().is_running)
        self.assertEqual(engine.snapshot().last_completed_at, self.now)

    def test_completion_never_moves_backwards(self) -> None:
        self.release.set()
        later = self.now + timedelta(hours=3)
        engine = self._engine(last=later)

        engine.check_now()
        self.assertTrue(self.started.wait(2))
        self.assertTrue(engine.wait_for_run(2))

        self.assertEqual(engine.snapshot().last_completed_at, later)


class TestCancellation(ScheduleEngineTestCase):
    def test_config_change_cancels_without_completing(self) -> None:
        engine = self._engine(task=self._cancellable_task)

        engine.tick()
        self.assertTrue(self.started.wait(2))
        engine.update_config(DAILY)
        self.assertTrue(engine.wait_for_run(2))

        state = engine.snapshot()
        self.assertFalse(state.is_running)
        self.assertEqual(state.last_completed_at, DISTANT_PAST)
        self.persisted.assert_not_called()

    def test_completion_after_cancel_is_ignored(self) -> None:
        engine = self._engine()

        engine.tick()
        self.assertTrue(self.started.wait(2))
        engine.update_config(DAILY)
        engine.sync(2)
        self.release.set()
        self.assertTrue(engine.wait_for_run(2))

        self.assertEqual(engine.snapshot().last_completed_at, DISTANT_PAST)
        self.persisted.assert_not_called()

    def test_new_run_after_cancel_uses_new_generation(self) -> None:
        engine = self._engine(task=self._cancellable_task)

        engine.tick()
        self.assertTrue(self.started.wait(2))
        first = engine.snapshot().generation
        engine.update_config(DAILY)
        self.assertTrue(engine.wait_for_run(2))

        self.release.set()
        engine.check_now()
        engine.sync(2)
        self.assertTrue(engine.wait_for_run(2))

        self.assertEqual(engine.snapshot().generation, first + 1)
        self.assertEqual(engine.snapshot().last_completed_at, self.now)

    def test_same_config_does_not_cancel(self) -> None:
        engine = self._engine(task=self._cancellable_task)

        engine.tick()
        self.assertTrue(self.started.wait(2))
        engine.update_config(HOURLY)
        engine.sync(2)

        self.assertTrue(engine.snapshot().is_running)

    def test_stop_cancels_in_flight_run(self) -> None:
        engine = self._engine(task=self._cancellable_task)

        engine.tick()
        self.assertTrue(self.started.wait(2))
        token = engine.snapshot().cancel_token
        engine.stop(timeout=2)

        self.assertTrue(token.is_set())
        engine.check_now()
        self.assertEqual(self.calls, 1)


class TestWake(ScheduleEngineTestCase):
    def test_wake_without_ticker_evaluates_immediately(self) -> None:
        self.release.set()
        engine = self._engine()

        engine.notify_wake()
        self.assertTrue(self.started.wait(2))
        self.assertTrue(engine.wait_for_run(2))

        self.assertEqual(self.calls, 1)


class TestCancelledRunWindsDown(ScheduleEngineTestCase):
    """A cancelled run keeps the engine busy until its worker has returned."""

    def test_no_overlap_while_cancelled_run_finishes(self) -> None:
        lock = threading.Lock()
        active = [0]
        peak = [0]

        def slow_to_notice(token: threading.Event) -> None:
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
                self.calls += 1
            self.started.set()
            try:
                self.release.wait(5)
                if token.is_set():
                    raise Cancelled("maintenance")
            finally:
                with lock:
                    active[0] -= 1

        engine = self._engine(task=slow_to_notice)

        engine.tick()
        self.assertTrue(self.started.wait(2))
        engine.update_config(DAILY)
        engine.check_now()
        engine.tick()
        engine.sync(2)

        self.assertTrue(engine.snapshot().is_running)
        self.assertEqual(self.calls, 1)

        self.release.set()
        self.assertTrue(engine.wait_for_run(2))
        self.assertFalse(engine.snapshot().is_running)

        engine.check_now()
        engine.sync(2)
        self.assertTrue(engine.wait_for_run(2))

        self.assertEqual(self.calls, 2)
        self.assertEqual(peak[0], 1)
        self.assertEqual(engine.snapshot().last_completed_at, self.now)

    def test_cancel_token_kept_until_worker_reports(self) -> None:
        engine = self._engine()

        engine.tick()
        self.assertTrue(self.started.wait(2))
        token = engine.snapshot().cancel_token
        engine.update_config(DAILY)
        engine.sync(2)

        self.assertTrue(token.is_set())
        self.assertIs(engine.snapshot().cancel_token, token)

        self.release.set()
        self.assertTrue(engine.wait_for_run(2))
        self.assertIsNone(engine.snapshot().cancel_token)


class TestPersistedCompletion(ScheduleEngineTestCase):
    """Completion times written by another process count toward due-ness."""

    def _engine_with_store(self, load) -> ScheduleEngine:
        self.engine = ScheduleEngine(
            self._blocking_task,
            HOURLY,
            on_completed=self.persisted,
            clock=lambda: self.now,
            load_last_completed=load,
        )
        self.engine.start(ticking=False)
        return self.engine

    def test_run_recorded_elsewhere_is_not_repeated(self) -> None:
        stored = [DISTANT_PAST]
        engine = self._engine_with_store(lambda: stored[0])

        stored[0] = self.now - timedelta(minutes=10)
        engine.tick()
        engine.sync(2)

        self.assertEqual(self.calls, 0)
        self.assertEqual(engine.snapshot().last_completed_at, stored[0])

    def test_older_stored_time_never_wins(self) -> None:
        self.release.set()
        later = self.now + timedelta(hours=3)
        engine = ScheduleEngine(
            self._blocking_task,
            HOURLY,
            last_completed_at=later,
            clock=lambda: self.now,
            load_last_completed=lambda: DISTANT_PAST,
        )
        self.engine = engine
        engine.start(ticking=False)

        engine.check_now()
        self.assertTrue(self.started.wait(2))
        self.assertTrue(engine.wait_for_run(2))

        self.assertEqual(engine.snapshot().last_completed_at, later)

    def test_unreadable_store_keeps_memory_value(self) -> None:
        self.release.set()

        def broken():
            raise OSError("disk gone")

        engine = self._engine_with_store(broken)

        engine.tick()
        self.assertTrue(self.started.wait(2))
        self.assertTrue(engine.wait_for_run(2))

        self.assertEqual(self.calls, 1)
        self.assertEqual(engine.snapshot().last_completed_at, self.now)
