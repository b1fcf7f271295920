"""
Source Poller

Drives one source through idle -> connecting -> polling <-> backoff ->
stopped. Owns the source's transport exclusively; every per-cycle failure
is turned into a quality-annotated PollOutcome and never raised.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable

from fieldpoll.common.config import SourceConfig
from fieldpoll.common.exceptions import ProtocolError, TransportError
from fieldpoll.common.logging_setup import (
    ServiceLoggerAdapter,
    get_service_logger,
    log_poll_outcome,
)
from fieldpoll.common.scheduler import TickSchedule
from .models import FailureKind, PollerState, PollerStats, PollOutcome, Quality
from .resolver import ReadRequest, VariableResolver
from .transport import Transport

OutcomeCallback = Callable[[PollOutcome], Awaitable[None]]


class SourcePoller:
    """
    Periodic reader for one source.

    Features:
    - Fixed-rate ticks; a tick that arrives while a cycle is still running is
      dropped and reported Stale (cycles never overlap)
    - Whole cycle bounded by the source timeout
    - Fixed retry interval between connection attempts, forever
    - Shutdown observed at the next tick or backoff boundary; an in-flight
      cycle is allowed to finish or time out
    """

    # Timed-out cycles in a row before the link is treated as lost
    MAX_CONSECUTIVE_TIMEOUTS = 3

    def __init__(
        self,
        source: SourceConfig,
        resolver: VariableResolver,
        transport: Transport,
        emit: OutcomeCallback,
        logger: ServiceLoggerAdapter | None = None,
    ):
        self.source = source
        self.resolver = resolver
        self.transport = transport
        self._emit = emit
        self._logger = (logger or get_service_logger("poller")).bind(source=source.name)

        self.schedule = TickSchedule(
            source.poll_interval,
            name=source.name,
            logger=self._logger,
        )
        self.stats = PollerStats()

        self._state = PollerState.IDLE
        self._stop_event = asyncio.Event()
        self._cycle = 0

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request shutdown; run() returns after releasing the transport"""
        self._stop_event.set()

    def _set_state(self, state: PollerState) -> None:
        if state != self._state:
            self._logger.info(
                f"Source {self.name}: {self._state.value} -> {state.value}",
                extra={"state": state.value},
            )
            self._state = state

    async def run(self) -> None:
        """Run the state machine until stop() is called"""
        if self._state != PollerState.IDLE:
            raise RuntimeError(f"poller {self.name} already started")

        self._logger.info(
            f"Starting poller for {self.name} ({self.source.endpoint}, "
            f"{len(self.resolver.variables)} variables, "
            f"{len(self.resolver.plan)} requests every {self.source.poll_interval}s)"
        )

        try:
            self._set_state(PollerState.CONNECTING)
            while not self.stopping:
                if self._state == PollerState.CONNECTING:
                    connected = await self._connect()
                    self._set_state(PollerState.POLLING if connected else PollerState.BACKOFF)

                elif self._state == PollerState.POLLING:
                    await self._poll_loop()

                elif self._state == PollerState.BACKOFF:
                    self.stats.backoff_waits += 1
                    self._logger.debug(
                        f"Source {self.name}: retrying in {self.source.retry_interval}s"
                    )
                    if await self._wait(self.source.retry_interval):
                        break
                    self._set_state(PollerState.CONNECTING)
        finally:
            await self._close_transport()
            self._set_state(PollerState.STOPPED)

    async def _connect(self) -> bool:
        self.stats.connect_attempts += 1
        try:
            await asyncio.wait_for(self.transport.open(), self.source.timeout)
        except asyncio.TimeoutError:
            error = f"connect timed out after {self.source.timeout}s"
        except TransportError as e:
            error = e.message
        except Exception as e:
            self._logger.exception(f"Unexpected error connecting {self.name}")
            error = str(e)
        else:
            self._logger.info(f"Connected to {self.name} ({self.source.endpoint})")
            return True

        self.stats.last_error = error
        self._logger.warning(
            f"Connection to {self.name} failed: {error}",
            extra={"attempt": self.stats.connect_attempts},
        )
        await self._close_transport()
        return False

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            self._logger.warning(f"Error closing transport for {self.name}: {e}")

    async def _wait(self, delay: float) -> bool:
        """Sleep up to delay seconds; True if shutdown was requested"""
        if self.stopping:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _poll_loop(self) -> None:
        """Tick loop; returns on shutdown or when the link is lost"""
        self.schedule.reset()

        while not self.stopping:
            if await self._wait(self.schedule.seconds_until_next()):
                return

            self.schedule.fire()
            self._cycle += 1
            task = asyncio.create_task(self._poll_cycle(self._cycle))

            skipped_at: list[datetime] = []
            while not task.done():
                await asyncio.wait({task}, timeout=self.schedule.seconds_until_next())
                if task.done():
                    break
                if self.stopping:
                    await asyncio.wait({task})
                    break
                self.schedule.skip()
                self.stats.skipped_ticks += 1
                skipped_at.append(datetime.now(timezone.utc))
                self._logger.warning(
                    f"Source {self.name}: cycle {self._cycle} still running, tick skipped"
                )

            await self._handle_outcome(task.result())

            # Skipped ticks are reported after the cycle they overlapped
            for timestamp in skipped_at:
                self._cycle += 1
                await self._emit_outcome(PollOutcome(
                    source=self.name,
                    cycle=self._cycle,
                    timestamp=timestamp,
                    values=tuple(self.resolver.mark(Quality.STALE, timestamp, "poll overrun")),
                    failure=FailureKind.OVERRUN,
                    error="previous poll still in flight",
                ))

            if self._state != PollerState.POLLING:
                return

    async def _poll_cycle(self, cycle: int) -> PollOutcome:
        """One full read of the plan; never raises"""
        loop = asyncio.get_running_loop()
        started = loop.time()
        failure: FailureKind | None = None
        exception_code = None
        error = None
        responses: dict[ReadRequest, bytes] = {}

        try:
            responses = await asyncio.wait_for(
                self._read_plan(started + self.source.timeout),
                self.source.timeout,
            )
        except asyncio.TimeoutError:
            failure = FailureKind.TIMEOUT
            error = f"poll exceeded timeout of {self.source.timeout}s"
        except ProtocolError as e:
            failure = FailureKind.PROTOCOL
            exception_code = e.exception_code
            error = e.message
        except TransportError as e:
            failure = FailureKind.TIMEOUT if e.timed_out else FailureKind.TRANSPORT
            error = e.message
        except Exception as e:
            self._logger.exception(f"Unexpected error polling {self.name}")
            failure = FailureKind.TRANSPORT
            error = str(e)

        timestamp = datetime.now(timezone.utc)
        duration_ms = (loop.time() - started) * 1000

        if failure is None:
            values = self.resolver.resolve(responses, timestamp)
            bad = [v for v in values if v.quality != Quality.GOOD]
            if bad:
                failure = FailureKind.DECODE
                error = "; ".join(f"{v.name}: {v.error}" for v in bad)
        else:
            values = self.resolver.mark(Quality.BAD, timestamp, error)

        return PollOutcome(
            source=self.name,
            cycle=cycle,
            timestamp=timestamp,
            values=tuple(values),
            failure=failure,
            error=error,
            exception_code=exception_code,
            duration_ms=duration_ms,
        )

    async def _read_plan(self, deadline: float) -> dict[ReadRequest, bytes]:
        loop = asyncio.get_running_loop()
        responses = {}
        for request in self.resolver.plan:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransportError(
                    "poll deadline reached",
                    source=self.name,
                    timed_out=True,
                )
            responses[request] = await self.transport.read_registers(
                self.source.unit_id,
                request.function_code,
                request.address,
                request.count,
                remaining,
            )
        return responses

    async def _handle_outcome(self, outcome: PollOutcome) -> None:
        self.stats.cycles += 1

        if outcome.failure in (None, FailureKind.DECODE):
            self.stats.consecutive_timeouts = 0
            self.stats.last_success = outcome.timestamp
            if outcome.ok:
                self.stats.good_cycles += 1
            else:
                self.stats.failed_cycles += 1
                self.stats.last_error = outcome.error
            link_lost = False
        elif outcome.failure == FailureKind.TIMEOUT:
            self.stats.failed_cycles += 1
            self.stats.last_error = outcome.error
            self.stats.consecutive_timeouts += 1
            link_lost = self.stats.consecutive_timeouts >= self.MAX_CONSECUTIVE_TIMEOUTS
        else:
            self.stats.failed_cycles += 1
            self.stats.last_error = outcome.error
            link_lost = True

        log_poll_outcome(
            self._logger,
            self.name,
            outcome.cycle,
            outcome.quality.value,
            outcome.duration_ms,
            outcome.error,
        )
        await self._emit_outcome(outcome)

        if link_lost:
            self.stats.consecutive_timeouts = 0
            await self._close_transport()
            self._set_state(PollerState.BACKOFF)

    async def _emit_outcome(self, outcome: PollOutcome) -> None:
        try:
            await self._emit(outcome)
        except Exception as e:
            self._logger.error(f"Failed to hand off outcome for {self.name}: {e}")

    def status(self) -> dict:
        """Snapshot for health reporting"""
        return {
            "state": self._state.value,
            "type": self.source.type.value,
            "endpoint": self.source.endpoint,
            "variables": len(self.resolver.variables),
            **self.stats.to_dict(),
            "schedule": self.schedule.get_stats(),
        }
