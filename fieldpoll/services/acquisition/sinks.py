"""
Sinks

The engine only needs ``publish``; where values finally land is the sink's
business. Sinks are called from a single dispatcher task, so they need not
be concurrency-safe.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

import httpx

from fieldpoll.common.exceptions import SinkError
from fieldpoll.common.logging_setup import (
    ServiceLoggerAdapter,
    get_service_logger,
    log_variable_read,
)
from .models import DecodedValue, Quality


class Sink(ABC):
    """Receiver of decoded values"""

    name = "sink"

    async def start(self) -> None:
        """Acquire resources before the first publish"""

    @abstractmethod
    async def publish(self, value: DecodedValue) -> None:
        """Deliver one value; raise to report a failed delivery"""

    async def close(self) -> None:
        """Flush and release resources"""


class LoggingSink(Sink):
    """Writes every value to the service log"""

    name = "log"

    def __init__(self, logger: ServiceLoggerAdapter | None = None):
        self._logger = logger or get_service_logger("sink.log")

    async def publish(self, value: DecodedValue) -> None:
        log_variable_read(
            self._logger,
            value.source,
            value.name,
            value.value,
            success=value.quality == Quality.GOOD,
            error=value.error or value.quality.value,
        )


class JsonLinesSink(Sink):
    """
    Appends one JSON object per value to a file.

    File I/O runs in the default executor so a slow disk never stalls the
    event loop.
    """

    name = "jsonl"

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._file = None

    async def _run_file(self, func, *args):
        """Run a blocking file operation in a thread"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _open(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return open(self.path, "a", encoding="utf-8")

    def _write(self, line: str) -> None:
        self._file.write(line)
        self._file.flush()

    async def start(self) -> None:
        try:
            self._file = await self._run_file(self._open)
        except OSError as e:
            raise SinkError(f"cannot open {self.path}: {e}", sink=self.name)

    async def publish(self, value: DecodedValue) -> None:
        if self._file is None:
            await self.start()
        line = json.dumps(value.to_dict()) + "\n"
        try:
            await self._run_file(self._write, line)
        except OSError as e:
            raise SinkError(f"write to {self.path} failed: {e}", sink=self.name)

    async def close(self) -> None:
        if self._file is not None:
            await self._run_file(self._file.close)
            self._file = None


class HttpSink(Sink):
    """
    Posts values as JSON batches.

    Values are buffered and sent once ``batch_size`` is reached and on close.
    A failed post keeps the batch and holds further posts for
    ``retry_interval`` seconds, so a dead endpoint costs one timeout per
    interval rather than one per value. The buffer holds at most
    ``max_buffer`` values; publish raises SinkError only when it had to drop
    older values to make room.
    """

    name = "http"

    def __init__(
        self,
        url: str,
        batch_size: int = 100,
        max_buffer: int = 10000,
        timeout: float = 10.0,
        retry_interval: float = 5.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        logger: ServiceLoggerAdapter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.batch_size = batch_size
        self.max_buffer = max_buffer
        self.timeout = timeout
        self.retry_interval = retry_interval
        self.headers = headers or {}
        self._client = client
        self._owns_client = client is None
        self._buffer: list[dict] = []
        self._logger = logger or get_service_logger("sink.http")
        self._clock = clock
        self._retry_at = 0.0

        self.posts = 0
        self.failed_posts = 0
        self.dropped = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json", **self.headers},
                timeout=self.timeout,
            )
        return self._client

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def backing_off(self) -> bool:
        return self._clock() < self._retry_at

    async def publish(self, value: DecodedValue) -> None:
        self._buffer.append(value.to_dict())

        dropped = len(self._buffer) - self.max_buffer
        if dropped > 0:
            del self._buffer[:dropped]
            self.dropped += dropped

        if len(self._buffer) >= self.batch_size and not self.backing_off:
            try:
                await self.flush()
            except SinkError as e:
                self._logger.warning(
                    f"{e.message}; holding {len(self._buffer)} values "
                    f"for {self.retry_interval}s"
                )

        if dropped > 0:
            raise SinkError(
                f"buffer full ({self.max_buffer}), dropped {dropped} oldest values",
                sink=self.name,
            )

    async def flush(self) -> int:
        """Send one batch; returns how many values were delivered"""
        if not self._buffer:
            return 0

        batch = self._buffer[:self.batch_size]
        client = await self._get_client()
        self.posts += 1
        try:
            response = await client.post(self.url, json={"values": batch})
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.failed_posts += 1
            self._retry_at = self._clock() + self.retry_interval
            raise SinkError(f"POST {self.url} failed: {e}", sink=self.name)

        self._retry_at = 0.0
        del self._buffer[:len(batch)]
        return len(batch)

    async def close(self) -> None:
        try:
            while self._buffer:
                await self.flush()
        except SinkError as e:
            self.dropped += len(self._buffer)
            self._logger.error(f"Dropping {len(self._buffer)} unsent values: {e}")
            self._buffer.clear()
        finally:
            if self._client is not None and self._owns_client:
                await self._client.aclose()
                self._client = None


class QueueSink(Sink):
    """Hands values to an asyncio.Queue for in-process consumers"""

    name = "queue"

    def __init__(self, queue: asyncio.Queue | None = None):
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    async def publish(self, value: DecodedValue) -> None:
        await self.queue.put(value)
