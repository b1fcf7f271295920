"""
Acquisition Engine

Owns one SourcePoller per configured source, runs them as independent
tasks, and funnels their outcomes through one queue into the sink. The
dispatcher task is the only writer to the sink.
"""

import asyncio
from datetime import datetime, timezone

from fieldpoll.common.config import EngineConfig
from fieldpoll.common.exceptions import ConfigError, ResolutionError
from fieldpoll.common.logging_setup import ServiceLoggerAdapter, get_service_logger
from .models import PollOutcome
from .poller import SourcePoller
from .resolver import VariableResolver
from .sinks import Sink
from .transport import TransportBuilder, TransportFactory


class Engine:
    """
    Polling and decoding engine.

    Usage:
        engine = Engine(config, sink)
        await engine.start()
        ...
        await engine.stop()

    or as ``async with Engine(config, sink): ...``.
    """

    def __init__(
        self,
        config: EngineConfig,
        sink: Sink,
        logger: ServiceLoggerAdapter | None = None,
        transport_factory: TransportFactory | None = None,
        coalesce: bool = True,
        queue_size: int = 1000,
        drain_timeout: float = 5.0,
    ):
        self.config = config
        self.sink = sink
        self._logger = logger or get_service_logger("engine", config.log_level)
        self._transport_factory = transport_factory or TransportBuilder()
        self._queue_size = queue_size
        self._drain_timeout = drain_timeout
        self._coalesce = coalesce

        self._pollers: dict[str, SourcePoller] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._queue: asyncio.Queue[PollOutcome | None] | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._running = False
        self._started_at: datetime | None = None

        self.published = 0
        self.publish_failures = 0
        # Values lost to a full queue or an unfinished drain at stop
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pollers(self) -> dict[str, SourcePoller]:
        return dict(self._pollers)

    def validate(self) -> None:
        """Raise ConfigError unless every variable names a declared source"""
        names = [s.name for s in self.config.sources]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"duplicate source names: {', '.join(duplicates)}")

        known = set(names)
        errors = [
            f"variable {v.name!r} references unknown source {v.source!r}"
            for v in self.config.variables
            if v.source not in known
        ]
        if errors:
            raise ConfigError(errors[0], errors=errors)

    def _build_pollers(self) -> dict[str, SourcePoller]:
        pollers = {}
        for source in self.config.sources:
            try:
                resolver = VariableResolver(
                    source,
                    self.config.variables_for(source.name),
                    coalesce=self._coalesce,
                )
            except ResolutionError as e:
                raise ConfigError(e.message)

            poller_logger = self._logger.bind(source=source.name)
            pollers[source.name] = SourcePoller(
                source=source,
                resolver=resolver,
                transport=self._transport_factory(source, poller_logger),
                emit=self._enqueue,
                logger=poller_logger,
            )
        return pollers

    async def start(self) -> None:
        """Validate the configuration and start one task per source"""
        if self._running:
            return

        self.validate()
        pollers = self._build_pollers()

        await self.sink.start()

        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._pollers = pollers
        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(), name="fieldpoll-dispatch")

        for name, poller in self._pollers.items():
            self._tasks[name] = asyncio.create_task(poller.run(), name=f"fieldpoll-{name}")

        self._logger.info(
            f"Engine started ({len(self._pollers)} sources, "
            f"{len(self.config.variables)} variables)",
            extra={"source_count": len(self._pollers)},
        )

    async def stop(self) -> None:
        """Stop every poller, drain pending outcomes, close the sink"""
        if not self._running:
            return

        self._logger.info("Stopping engine")
        self._running = False

        for poller in self._pollers.values():
            poller.stop()

        results = await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        for name, result in zip(self._tasks, results):
            if isinstance(result, BaseException):
                self._logger.error(f"Poller {name} ended with error: {result!r}")
        self._tasks.clear()

        # Sentinel after everything the pollers emitted
        self._put_nowait(None)
        if self._dispatch_task:
            try:
                await asyncio.wait_for(self._dispatch_task, self._drain_timeout)
            except asyncio.TimeoutError:
                discarded = self._discard_pending()
                self._logger.warning(
                    f"Sink {self.sink.name} did not drain within "
                    f"{self._drain_timeout}s, discarded {discarded} values"
                )
            self._dispatch_task = None

        try:
            await self.sink.close()
        except Exception as e:
            self._logger.error(f"Error closing sink {self.sink.name}: {e}")

        self._logger.info(
            f"Engine stopped (published={self.published}, "
            f"failures={self.publish_failures}, dropped={self.dropped})"
        )

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.stop()
        return False

    async def _enqueue(self, outcome: PollOutcome) -> None:
        """Hand an outcome to the dispatcher without ever blocking the poller"""
        self._put_nowait(outcome)

    def _put_nowait(self, outcome: PollOutcome | None) -> None:
        # A full queue drops its oldest outcome
        if self._queue.full():
            oldest = self._queue.get_nowait()
            if oldest is not None:
                self.dropped += len(oldest.values)
                self._logger.warning(
                    f"Outcome queue full ({self._queue_size}), dropped cycle "
                    f"{oldest.cycle} of {oldest.source}",
                    extra={"source": oldest.source, "cycle": oldest.cycle},
                )
        self._queue.put_nowait(outcome)

    def _discard_pending(self) -> int:
        discarded = 0
        while not self._queue.empty():
            outcome = self._queue.get_nowait()
            if outcome is not None:
                discarded += len(outcome.values)
        self.dropped += discarded
        return discarded

    async def _dispatch_loop(self) -> None:
        """Serialize every outcome into the sink"""
        while True:
            outcome = await self._queue.get()
            if outcome is None:
                break
            for value in outcome.values:
                try:
                    await self.sink.publish(value)
                    self.published += 1
                except Exception as e:
                    self.publish_failures += 1
                    self._logger.error(
                        f"Publish of {value.source}.{value.name} failed: {e}",
                        extra={"source": value.source, "variable": value.name},
                    )

    def status(self) -> dict:
        """Per-source status plus sink counters"""
        return {
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "sink": {
                "name": self.sink.name,
                "published": self.published,
                "failures": self.publish_failures,
                "dropped": self.dropped,
                "pending": self._queue.qsize() if self._queue else 0,
            },
            "sources": {name: poller.status() for name, poller in self._pollers.items()},
        }
