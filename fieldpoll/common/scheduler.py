"""
Fixed-rate tick schedule for poll loops

TickSchedule tracks tick deadlines on the monotonic clock so a poll loop
fires at fixed boundaries regardless of how long each cycle takes.

Unlike asyncio.sleep()-based loops, this schedule:
- Fires relative to the original schedule, not to the end of the last cycle
- Never queues missed ticks (they are counted as skipped)
- Reports drift metrics for observability

Usage:
    schedule = TickSchedule(1.0, name="meter-1")
    schedule.reset()
    while running:
        await asyncio.sleep(schedule.seconds_until_next())
        schedule.fire()
        await poll()
"""

import time
from typing import Callable

from .logging_setup import ServiceLoggerAdapter, get_service_logger


class TickSchedule:
    """
    Fixed-rate tick bookkeeping.

    Attributes:
        interval: Seconds between ticks
        name: Name for logging/identification
        skipped_count: Ticks that were not served by a poll
        tick_count: Ticks that started a poll
    """

    # Lateness beyond this is treated as a clock anomaly, not drift
    CLOCK_JUMP_SECONDS = 30.0

    def __init__(
        self,
        interval_seconds: float,
        name: str = "unnamed",
        clock: Callable[[], float] = time.monotonic,
        logger: ServiceLoggerAdapter | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval must be positive, got {interval_seconds}")

        self.interval = interval_seconds
        self.name = name
        self._clock = clock
        self._logger = logger or get_service_logger("scheduler")

        self._next_tick: float = clock()

        self._drift_total: float = 0
        self._last_drift_ms: float = 0
        self._skipped_count: int = 0
        self._tick_count: int = 0

    def reset(self) -> None:
        """Schedule the next tick for right now."""
        self._next_tick = self._clock()

    def seconds_until_next(self) -> float:
        """Time left before the next tick is due (never negative)."""
        return max(0.0, self._next_tick - self._clock())

    def is_due(self) -> bool:
        return self._clock() >= self._next_tick

    def fire(self) -> None:
        """
        Consume the due tick and schedule the following one.

        Ticks that already passed while nothing was waiting on them are
        skipped to catch up, never replayed.
        """
        now = self._clock()
        drift = now - self._next_tick

        if drift > self.CLOCK_JUMP_SECONDS:
            self._logger.info(
                f"Schedule '{self.name}' clock jump detected ({drift:.0f}s), realigning"
            )
            self._last_drift_ms = 0
            self._next_tick = now
        else:
            self._drift_total += max(0.0, drift)
            self._last_drift_ms = drift * 1000

        self._tick_count += 1
        self._next_tick += self.interval

        missed = 0
        while self._next_tick <= now:
            self._next_tick += self.interval
            missed += 1

        if missed:
            self._skipped_count += missed
            self._logger.warning(
                f"Schedule '{self.name}' skipped {missed} ticks (loop lagging)"
            )

    def skip(self) -> None:
        """Drop the due tick without serving it (a poll is still running)."""
        self._skipped_count += 1
        self._next_tick += self.interval

    @property
    def drift_seconds(self) -> float:
        """Total accumulated drift in seconds."""
        return self._drift_total

    @property
    def drift_ms(self) -> float:
        """Most recent drift in milliseconds."""
        return self._last_drift_ms

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def get_stats(self) -> dict:
        """Get schedule statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "tick_count": self._tick_count,
            "skipped_count": self._skipped_count,
            "drift_total_s": round(self._drift_total, 3),
            "drift_last_ms": round(self._last_drift_ms, 1),
        }
