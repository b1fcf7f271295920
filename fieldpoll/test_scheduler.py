"""TickSchedule tests with a controllable clock"""

import pytest

from fieldpoll.common.scheduler import TickSchedule


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def test_ticks_follow_fixed_grid():
    clock = FakeClock()
    schedule = TickSchedule(1.0, name="t", clock=clock)

    assert schedule.is_due()
    schedule.fire()
    clock.now += 0.3
    assert schedule.seconds_until_next() == pytest.approx(0.7)

    # A late fire does not shift the grid
    clock.now = 101.2
    schedule.fire()
    assert schedule.seconds_until_next() == pytest.approx(0.8)
    assert schedule.tick_count == 2
    assert schedule.drift_ms == pytest.approx(200.0)


def test_missed_ticks_are_counted_not_replayed():
    clock = FakeClock()
    schedule = TickSchedule(1.0, clock=clock)
    schedule.fire()

    clock.now = 103.5
    schedule.fire()

    assert schedule.skipped_count == 2
    assert schedule.seconds_until_next() == pytest.approx(0.5)


def test_skip_moves_to_next_tick():
    clock = FakeClock()
    schedule = TickSchedule(0.5, clock=clock)
    schedule.fire()
    clock.now += 0.5
    schedule.skip()

    assert schedule.skipped_count == 1
    assert schedule.seconds_until_next() == pytest.approx(0.5)


def test_clock_jump_realigns():
    clock = FakeClock()
    schedule = TickSchedule(1.0, clock=clock)
    schedule.fire()

    clock.now += 3600
    schedule.fire()

    assert schedule.skipped_count == 0
    assert schedule.seconds_until_next() == pytest.approx(1.0)


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        TickSchedule(0)


def test_stats():
    schedule = TickSchedule(2.0, name="meter", clock=FakeClock())
    schedule.fire()
    stats = schedule.get_stats()
    assert stats["name"] == "meter"
    assert stats["interval_s"] == 2.0
    assert stats["tick_count"] == 1
