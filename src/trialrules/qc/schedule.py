"""Batch rule schedules and the background scheduler loop.

A schedule is a fixed cadence. A rule is due when it has never run or
when its cadence has elapsed since its last run.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from loguru import logger
from pydantic import BaseModel, ConfigDict

from trialrules.errors import QCEngineBusy, RuleError

_NAMED: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "nightly": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}

_EVERY = re.compile(r"^every\s+(\d+)\s+(minute|hour|day)s?$")
_UNITS: dict[str, str] = {"minute": "minutes", "hour": "hours", "day": "days"}


class ScheduleError(RuleError):
    """Unrecognised schedule text."""


class Schedule(BaseModel):
    """Parsed cadence of a batch rule."""

    model_config = ConfigDict(frozen=True)

    text: str
    interval: timedelta

    def is_due(self, last_run: datetime | None, now: datetime) -> bool:
        return last_run is None or now - last_run >= self.interval


def parse_schedule(text: str) -> Schedule:
    """Parse ``hourly``, ``daily``, ``nightly``, ``weekly`` or ``every N minutes|hours|days``.

    Raises:
        ScheduleError: If the text is not a recognised cadence.
    """
    normalized = " ".join(text.lower().split())
    if normalized in _NAMED:
        return Schedule(text=normalized, interval=_NAMED[normalized])

    m = _EVERY.match(normalized)
    if m:
        amount = int(m.group(1))
        if amount <= 0:
            msg = f"Schedule interval must be positive: {text!r}"
            raise ScheduleError(msg)
        return Schedule(text=normalized, interval=timedelta(**{_UNITS[m.group(2)]: amount}))

    msg = f"Unrecognised schedule {text!r}; expected hourly, daily, nightly, weekly or 'every N hours'"
    raise ScheduleError(msg)


def parse_timestamp(value: str | None) -> datetime | None:
    """Read a stored ISO timestamp, treating naive values as UTC."""
    if value is None:
        return None
    stamp = datetime.fromisoformat(value)
    return stamp if stamp.tzinfo is not None else stamp.replace(tzinfo=UTC)


class QCScheduler:
    """Calls a QC tick function on a fixed interval in a background thread."""

    def __init__(
        self,
        tick: Callable[[datetime], object],
        *,
        tick_seconds: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tick = tick
        self._tick_seconds = tick_seconds
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="qc-scheduler", daemon=True)
        self._thread.start()
        logger.info("QC scheduler started (tick every {}s)", self._tick_seconds)

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to exit and wait for the current tick to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("QC scheduler stopped after {} tick(s)", self.ticks)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self._tick_seconds)

    def run_once(self) -> None:
        """Run a single tick; no failure of the tick stops the loop."""
        self.ticks += 1
        try:
            self._tick(self._clock())
        except QCEngineBusy:
            logger.warning("QC run still in progress; skipping tick")
        except RuleError as exc:
            logger.error("QC tick failed: {}", exc)
        except Exception:
            logger.exception("QC tick raised unexpectedly; scheduler keeps running")
