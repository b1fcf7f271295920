"""Source poller state machine tests"""

import asyncio

import pytest

from fieldpoll.common.config import DataType
from fieldpoll.conftest import (
    FailingTransport,
    ProtocolErrorTransport,
    StubTransport,
    make_tcp_source,
    make_variable,
)
from fieldpoll.services.acquisition.models import FailureKind, PollerState, Quality
from fieldpoll.services.acquisition.poller import SourcePoller
from fieldpoll.services.acquisition.resolver import VariableResolver


async def wait_until(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def build_poller(transport, source=None, variables=None):
    source = source or make_tcp_source()
    variables = variables or [make_variable("counter", data_type=DataType.UINT32, address=0)]
    outcomes = []

    async def emit(outcome):
        outcomes.append(outcome)

    poller = SourcePoller(source, VariableResolver(source, variables), transport, emit)
    return poller, outcomes


async def stop(poller, task):
    poller.stop()
    await asyncio.wait_for(task, 3.0)
    assert poller.state == PollerState.STOPPED


class TimedTransport(StubTransport):
    """Records when open() was called"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.open_times = []

    async def open(self):
        self.open_times.append(asyncio.get_running_loop().time())
        await super().open()


class SlowFirstReadTransport(StubTransport):
    """First read hangs past any timeout, later reads answer at once"""

    async def read_registers(self, unit_id, function_code, address, count, timeout):
        if not self.reads:
            self.reads.append((unit_id, function_code, address, count))
            await asyncio.sleep(10)
        return await super().read_registers(unit_id, function_code, address, count, timeout)


class ConcurrencyTransport(StubTransport):
    """Tracks how many reads run at once"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.active = 0
        self.max_active = 0

    async def read_registers(self, unit_id, function_code, address, count, timeout):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            return await super().read_registers(unit_id, function_code, address, count, timeout)
        finally:
            self.active -= 1


async def test_decodes_uint32_example():
    """0x0001 0x0002 for a big-endian uint32 publishes 65538"""
    transport = StubTransport(registers={(0x03, 0): 0x0001, (0x03, 1): 0x0002})
    poller, outcomes = build_poller(transport)

    task = asyncio.create_task(poller.run())
    await wait_until(lambda: outcomes)
    await stop(poller, task)

    first = outcomes[0]
    assert first.ok
    assert first.quality == Quality.GOOD
    assert first.values[0].value == 65538
    assert transport.reads[0] == (1, 0x03, 0, 2)


async def test_connect_failures_back_off_exactly_n_times():
    source = make_tcp_source(retry_interval=0.05)
    transport = TimedTransport(connect_failures=3)
    poller, outcomes = build_poller(transport, source=source)

    task = asyncio.create_task(poller.run())
    await wait_until(lambda: poller.state == PollerState.POLLING)
    await stop(poller, task)

    assert poller.stats.backoff_waits == 3
    assert poller.stats.connect_attempts == 4
    gaps = [b - a for a, b in zip(transport.open_times, transport.open_times[1:])]
    assert len(gaps) == 3
    assert all(gap >= 0.045 for gap in gaps)


async def test_timeout_keeps_polling():
    source = make_tcp_source(timeout=0.05, poll_interval=0.1)
    transport = SlowFirstReadTransport(registers={(0x03, 1): 5})
    poller, outcomes = build_poller(transport, source=source)

    task = asyncio.create_task(poller.run())
    await wait_until(lambda: len(outcomes) >= 2)
    await stop(poller, task)

    assert outcomes[0].failure == FailureKind.TIMEOUT
    assert all(v.quality == Quality.BAD for v in outcomes[0].values)
    assert outcomes[1].ok
    assert outcomes[1].values[0].value == 5
    assert poller.stats.connect_attempts == 1
    assert poller.stats.backoff_waits == 0


async def test_repeated_timeouts_trigger_backoff():
    source = make_tcp_source(timeout=0.02, poll_interval=0.04, retry_interval=0.01)
    transport = StubTransport(read_delay=1.0)
    poller, outcomes = build_poller(transport, source=source)

    task = asyncio.create_task(poller.run())
    await wait_until(lambda: poller.stats.connect_attempts >= 2)
    await stop(poller, task)

    timeouts = [o for o in outcomes if o.failure == FailureKind.TIMEOUT]
    assert len(timeouts) >= SourcePoller.MAX_CONSECUTIVE_TIMEOUTS
    assert poller.stats.backoff_waits >= 1


async def test_protocol_error_goes_to_backoff():
    source = make_tcp_source(retry_interval=5.0)
    poller, outcomes = build_poller(ProtocolErrorTransport(0x02), source=source)

    task = asyncio.create_task(poller.run())
    await wait_until(lambda: poller.state == PollerState.BACKOFF)
    await stop(poller, task)

    assert outcomes[0].failure == FailureKind.PROTOCOL
    assert outcomes[0].exception_code == 0x02
    assert outcomes[0].values[0].quality == Quality.BAD


async def test_overlapping_ticks_are_skipped_and_stale():
    source = make_tcp_source(timeout=1.0, poll_interval=0.1)
    transport = ConcurrencyTransport(read_delay=0.25)
    poller, outcomes = build_poller(transport, source=source)

    task = asyncio.create_task(poller.run())
    await wait_until(lambda: any(o.quality == Quality.STALE for o in outcomes))
    await wait_until(lambda: len(outcomes) >= 3)
    await stop(poller, task)

    assert transport.max_active == 1
    assert outcomes[0].ok
    assert outcomes[1].failure == FailureKind.OVERRUN
    assert outcomes[1].values[0].quality == Quality.STALE
    cycles = [o.cycle for o in outcomes]
    assert cycles == sorted(cycles)
    assert len(set(cycles)) == len(cycles)
    assert poller.stats.skipped_ticks >= 1


async def test_stop_during_backoff_is_prompt():
    source = make_tcp_source(retry_interval=30.0)
    poller, _ = build_poller(FailingTransport(), source=source)

    task = asyncio.create_task(poller.run())
    await wait_until(lambda: poller.state == PollerState.BACKOFF)
    await stop(poller, task)


async def test_transport_released_on_stop():
    transport = StubTransport()
    poller, outcomes = build_poller(transport)

    task = asyncio.create_task(poller.run())
    await wait_until(lambda: outcomes)
    await stop(poller, task)

    assert not transport.is_open
    assert transport.close_calls >= 1


async def test_emit_failure_does_not_stop_polling():
    source = make_tcp_source()
    resolver = VariableResolver(source, [make_variable("a")])
    calls = []

    async def emit(outcome):
        calls.append(outcome)
        raise RuntimeError("downstream broken")

    poller = SourcePoller(source, resolver, StubTransport(), emit)
    task = asyncio.create_task(poller.run())
    await wait_until(lambda: len(calls) >= 2)
    await stop(poller, task)


async def test_run_twice_rejected():
    poller, outcomes = build_poller(StubTransport())
    task = asyncio.create_task(poller.run())
    await wait_until(lambda: outcomes)

    with pytest.raises(RuntimeError):
        await poller.run()
    await stop(poller, task)


async def test_status_snapshot():
    poller, outcomes = build_poller(StubTransport())
    task = asyncio.create_task(poller.run())
    await wait_until(lambda: outcomes)

    status = poller.status()
    assert status["state"] == "polling"
    assert status["type"] == "tcp"
    assert status["good_cycles"] >= 1
    await stop(poller, task)
