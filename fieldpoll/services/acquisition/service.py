"""
Acquisition Service

Runs the engine as a long-lived process:
- Starts the engine with the configured sink
- Serves a health endpoint reporting poller state
- Shuts down cleanly on SIGTERM/SIGINT
"""

import asyncio
import signal
from datetime import datetime, timezone

from aiohttp import web

from fieldpoll.common.config import EngineConfig
from fieldpoll.common.logging_setup import ServiceLoggerAdapter, get_service_logger
from .engine import Engine
from .sinks import Sink

# Health server port
HEALTH_PORT = 8090


class AcquisitionService:
    """
    Engine host process.

    The health endpoint exposes connection state and counters only; it does
    not serve acquired values.
    """

    def __init__(
        self,
        config: EngineConfig,
        sink: Sink,
        health_port: int | None = HEALTH_PORT,
        health_host: str = "127.0.0.1",
        logger: ServiceLoggerAdapter | None = None,
        engine: Engine | None = None,
    ):
        self.config = config
        self.health_port = health_port
        self.health_host = health_host
        self._logger = logger or get_service_logger("acquisition", config.log_level)
        self.engine = engine or Engine(config, sink, logger=self._logger.bind(service="engine"))

        self._start_time = datetime.now(timezone.utc)
        self._health_runner: web.AppRunner | None = None
        self._shutdown_event = asyncio.Event()

    async def run(self) -> None:
        """Start, wait for a shutdown signal, stop"""
        try:
            await self.start()
            self._setup_signal_handlers()
            await self._shutdown_event.wait()
        finally:
            self._remove_signal_handlers()
            await self.stop()

    async def start(self) -> None:
        """Start the acquisition service"""
        self._logger.info("Starting Acquisition Service")
        self._start_time = datetime.now(timezone.utc)

        await self.engine.start()

        if self.health_port is not None:
            await self._start_health_server()

        self._logger.info(
            f"Acquisition Service started ({len(self.config.sources)} sources)",
            extra={"source_count": len(self.config.sources)},
        )

    async def stop(self) -> None:
        """Stop the acquisition service"""
        self._logger.info("Stopping Acquisition Service")
        await self.engine.stop()
        await self._stop_health_server()
        self._logger.info("Acquisition Service stopped")

    def request_shutdown(self) -> None:
        """Handle shutdown signal"""
        self._logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(self.request_shutdown))

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)

    def build_health_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_runner = web.AppRunner(self.build_health_app())
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, self.health_host, self.health_port)
        await site.start()

        self._logger.info(f"Health server started on port {self.health_port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        status = self.engine.status()
        polling = sum(1 for s in status["sources"].values() if s["state"] == "polling")

        if not self.engine.running:
            health = "unhealthy"
        elif polling == len(status["sources"]):
            health = "healthy"
        else:
            health = "degraded"

        return web.json_response({
            "status": health,
            "service": "acquisition",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sources_polling": polling,
            "sink": status["sink"],
            "sources": status["sources"],
        })
