"""Tests for batch schedules and the scheduler loop."""

from __future__ import annotations

import sqlite3
import threading
from datetime import UTC, datetime, timedelta

import pytest

from trialrules.errors import QCEngineBusy, SchedulerFailure
from trialrules.qc.schedule import (
    QCScheduler,
    ScheduleError,
    parse_schedule,
    parse_timestamp,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class TestParseSchedule:
    @pytest.mark.parametrize(
        ("text", "interval"),
        [
            ("hourly", timedelta(hours=1)),
            ("daily", timedelta(days=1)),
            ("Nightly", timedelta(days=1)),
            ("weekly", timedelta(weeks=1)),
            ("every 15 minutes", timedelta(minutes=15)),
            ("every 1 hour", timedelta(hours=1)),
            ("every  6   hours", timedelta(hours=6)),
            ("every 3 days", timedelta(days=3)),
        ],
    )
    def test_recognised(self, text: str, interval: timedelta) -> None:
        assert parse_schedule(text).interval == interval

    @pytest.mark.parametrize("text", ["fortnightly", "every hours", "every 2 weeks", ""])
    def test_unrecognised(self, text: str) -> None:
        with pytest.raises(ScheduleError, match="Unrecognised schedule"):
            parse_schedule(text)

    def test_zero_interval(self) -> None:
        with pytest.raises(ScheduleError, match="must be positive"):
            parse_schedule("every 0 hours")


class TestIsDue:
    def test_never_run_is_due(self) -> None:
        assert parse_schedule("daily").is_due(None, NOW)

    def test_interval_elapsed(self) -> None:
        schedule = parse_schedule("every 6 hours")
        assert schedule.is_due(NOW - timedelta(hours=6), NOW)
        assert not schedule.is_due(NOW - timedelta(hours=5, minutes=59), NOW)


class TestParseTimestamp:
    def test_none(self) -> None:
        assert parse_timestamp(None) is None

    def test_naive_read_as_utc(self) -> None:
        assert parse_timestamp("2024-06-01T12:00:00") == NOW

    def test_aware_kept(self) -> None:
        stamp = parse_timestamp("2024-06-01T14:00:00+02:00")
        assert stamp == NOW


class TestQCScheduler:
    def test_run_once_passes_clock(self) -> None:
        seen: list[datetime] = []
        scheduler = QCScheduler(seen.append, clock=lambda: NOW)

        scheduler.run_once()

        assert seen == [NOW]
        assert scheduler.ticks == 1

    def test_busy_engine_does_not_stop_loop(self) -> None:
        def tick(now: datetime) -> None:
            raise QCEngineBusy("busy")

        scheduler = QCScheduler(tick, clock=lambda: NOW)
        scheduler.run_once()
        scheduler.run_once()
        assert scheduler.ticks == 2

    def test_aborted_run_does_not_stop_loop(self) -> None:
        def tick(now: datetime) -> None:
            raise SchedulerFailure("database unreachable")

        scheduler = QCScheduler(tick, clock=lambda: NOW)
        scheduler.run_once()
        assert scheduler.ticks == 1

    def test_background_thread_ticks_until_stopped(self) -> None:
        ticked = threading.Event()

        def tick(now: datetime) -> None:
            ticked.set()

        scheduler = QCScheduler(tick, tick_seconds=0.01)
        scheduler.start()
        try:
            assert ticked.wait(timeout=5)
            assert scheduler.running
        finally:
            scheduler.stop(timeout=5)

        assert not scheduler.running
        assert scheduler.ticks >= 1

    def test_unexpected_error_keeps_background_loop_alive(self) -> None:
        calls: list[datetime] = []
        second_tick = threading.Event()

        def tick(now: datetime) -> None:
            calls.append(now)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            second_tick.set()

        scheduler = QCScheduler(tick, tick_seconds=0.01)
        scheduler.start()
        try:
            assert second_tick.wait(timeout=5)
            assert scheduler.running
        finally:
            scheduler.stop(timeout=5)

        assert scheduler.ticks >= 2
