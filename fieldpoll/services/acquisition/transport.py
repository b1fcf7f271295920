"""
Modbus Transports

One Transport owns one link to one device: a TCP socket (MBAP framing) or a
serial port (RTU framing with CRC16). Framing, transaction-id matching and
CRC checks are delegated to pymodbus' async clients; this layer adds the
open/close lifecycle, exact per-call timeouts and the mapping of every
failure onto TransportError / ProtocolError.

No retries happen here. Retry policy belongs to the source poller.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable

from pymodbus.client import AsyncModbusTcpClient, AsyncModbusSerialClient
from pymodbus.exceptions import ModbusException

from fieldpoll.common.config import (
    ModbusRTUSettings,
    ModbusTCPSettings,
    SourceConfig,
    SourceType,
)
from fieldpoll.common.exceptions import ProtocolError, TransportError
from fieldpoll.common.logging_setup import ServiceLoggerAdapter, get_service_logger

READ_HOLDING_REGISTERS = 0x03
READ_INPUT_REGISTERS = 0x04

# Protocol limit for a single read request
MAX_READ_COUNT = 125


class Transport(ABC):
    """Link to one Modbus device"""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def open(self) -> None:
        """Connect. No-op when already open; raises TransportError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Disconnect. Safe to call when already closed."""

    @abstractmethod
    async def read_registers(
        self,
        unit_id: int,
        function_code: int,
        address: int,
        count: int,
        timeout: float,
    ) -> bytes:
        """
        Read ``count`` registers starting at ``address``.

        Returns:
            2 * count bytes, each register big-endian as transmitted

        Raises:
            TransportError: timeout, link failure or malformed response
            ProtocolError: the device returned a Modbus exception
        """


class ModbusTransport(Transport):
    """
    Shared pymodbus plumbing for the TCP and RTU variants.

    Subclasses only decide how the pymodbus client is built and how the link
    is described in logs.
    """

    def __init__(
        self,
        source_name: str,
        timeout: float,
        logger: ServiceLoggerAdapter | None = None,
    ):
        self.source_name = source_name
        self.timeout = timeout
        self._logger = logger or get_service_logger("transport")

        self._client: Any = None
        self._connected = False

    @property
    def is_open(self) -> bool:
        return self._connected and self._client is not None and self._client.connected

    @property
    @abstractmethod
    def endpoint(self) -> str:
        ...

    @abstractmethod
    def _create_client(self) -> Any:
        """Build a fresh pymodbus async client"""

    async def open(self) -> None:
        """Establish connection to Modbus device"""
        if self.is_open:
            return

        # Drop a half-dead client before reconnecting
        if self._client is not None:
            await self.close()

        self._client = self._create_client()
        try:
            connected = await asyncio.wait_for(self._client.connect(), self.timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TransportError(
                f"connect to {self.endpoint} timed out after {self.timeout:.3f}s",
                source=self.source_name,
                timed_out=True,
            )
        except (ModbusException, OSError) as e:
            await self.close()
            raise TransportError(
                f"connect to {self.endpoint} failed: {e}",
                source=self.source_name,
            )

        if not connected or not self._client.connected:
            await self.close()
            raise TransportError(
                f"connect to {self.endpoint} refused",
                source=self.source_name,
            )

        self._connected = True
        self._logger.debug(f"Connected to {self.endpoint}")

    async def close(self) -> None:
        """Close connection"""
        if self._client is not None:
            self._client.close()
            self._client = None
            if self._connected:
                self._logger.debug(f"Disconnected from {self.endpoint}")
        self._connected = False

    async def read_registers(
        self,
        unit_id: int,
        function_code: int,
        address: int,
        count: int,
        timeout: float,
    ) -> bytes:
        if not self.is_open:
            raise TransportError(
                f"not connected to {self.endpoint}",
                source=self.source_name,
            )
        if not 1 <= count <= MAX_READ_COUNT:
            raise TransportError(
                f"register count {count} out of range 1-{MAX_READ_COUNT}",
                source=self.source_name,
            )

        if function_code == READ_HOLDING_REGISTERS:
            request = self._client.read_holding_registers
        elif function_code == READ_INPUT_REGISTERS:
            request = self._client.read_input_registers
        else:
            raise TransportError(
                f"unsupported function code 0x{function_code:02X}",
                source=self.source_name,
            )

        try:
            response = await asyncio.wait_for(
                request(address, count=count, device_id=unit_id),
                timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(
                f"read {address}+{count} from {self.endpoint} timed out after {timeout:.3f}s",
                source=self.source_name,
                timed_out=True,
            )
        except (ModbusException, OSError) as e:
            raise TransportError(
                f"read {address}+{count} from {self.endpoint} failed: {e}",
                source=self.source_name,
            )

        if response.isError():
            exception_code = getattr(response, "exception_code", None)
            if exception_code is None:
                raise TransportError(
                    f"malformed response from {self.endpoint}: {response}",
                    source=self.source_name,
                )
            raise ProtocolError(
                exception_code,
                function_code=function_code,
                source=self.source_name,
            )

        registers = list(getattr(response, "registers", None) or [])
        if len(registers) != count:
            raise TransportError(
                f"expected {count} registers from {self.endpoint}, got {len(registers)}",
                source=self.source_name,
            )

        return b"".join(reg.to_bytes(2, byteorder="big") for reg in registers)


class ModbusTcpTransport(ModbusTransport):
    """Modbus TCP link (MBAP header, transaction-id matched responses)"""

    def __init__(
        self,
        source_name: str,
        settings: ModbusTCPSettings,
        logger: ServiceLoggerAdapter | None = None,
    ):
        super().__init__(source_name, settings.timeout, logger)
        self.host = settings.host
        self.port = settings.port

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def _create_client(self) -> AsyncModbusTcpClient:
        return AsyncModbusTcpClient(
            host=self.host,
            port=self.port,
            timeout=self.timeout,
            retries=0,
            reconnect_delay=0,
        )


class ModbusRtuTransport(ModbusTransport):
    """
    Modbus RTU serial link for direct RS485/RS232 connections.

    Frames failing the CRC check are dropped by the RTU framer and surface
    here as a read timeout.
    """

    def __init__(
        self,
        source_name: str,
        settings: ModbusRTUSettings,
        logger: ServiceLoggerAdapter | None = None,
    ):
        super().__init__(source_name, settings.timeout, logger)
        self.device = settings.device
        self.baudrate = settings.baud_rate
        self.bytesize = settings.data_bits
        self.parity = settings.parity.value
        self.stopbits = settings.stop_bits

    @property
    def endpoint(self) -> str:
        return (
            f"{self.device} ({self.baudrate} {self.bytesize}"
            f"{self.parity}{self.stopbits})"
        )

    def _create_client(self) -> AsyncModbusSerialClient:
        return AsyncModbusSerialClient(
            port=self.device,
            baudrate=self.baudrate,
            bytesize=self.bytesize,
            parity=self.parity,
            stopbits=self.stopbits,
            timeout=self.timeout,
            retries=0,
            reconnect_delay=0,
        )


class SerialLine:
    """
    One RS485/RS232 port shared by every RTU source on it.

    RTU frames carry no transaction id, so only one request may be on the
    wire at a time. The lock serializes open and read across all users; the
    port is closed when its last user closes.
    """

    def __init__(self, device: str, transport: Transport, open_timeout: float = 1.0):
        self.device = device
        self.transport = transport
        self.open_timeout = open_timeout
        self.lock = asyncio.Lock()
        self.users: set[str] = set()


class SharedSerialTransport(Transport):
    """A source's view of a SerialLine; unit ids tell the devices apart"""

    def __init__(self, source_name: str, line: SerialLine):
        self.source_name = source_name
        self.line = line

    @property
    def is_open(self) -> bool:
        return self.source_name in self.line.users and self.line.transport.is_open

    async def _acquire(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self.line.lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                f"serial line {self.line.device} busy for {timeout:.3f}s",
                source=self.source_name,
                timed_out=True,
            )

    async def open(self) -> None:
        await self._acquire(self.line.open_timeout)
        try:
            await self.line.transport.open()
            self.line.users.add(self.source_name)
        finally:
            self.line.lock.release()

    async def close(self) -> None:
        self.line.users.discard(self.source_name)
        if not self.line.users:
            await self.line.transport.close()

    async def read_registers(
        self,
        unit_id: int,
        function_code: int,
        address: int,
        count: int,
        timeout: float,
    ) -> bytes:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        await self._acquire(timeout)
        try:
            if self.source_name not in self.line.users:
                raise TransportError(
                    f"not connected to {self.line.device}",
                    source=self.source_name,
                )
            return await self.line.transport.read_registers(
                unit_id,
                function_code,
                address,
                count,
                max(0.0, deadline - loop.time()),
            )
        finally:
            self.line.lock.release()


TransportFactory = Callable[[SourceConfig, ServiceLoggerAdapter], Transport]


def build_transport(
    source: SourceConfig,
    logger: ServiceLoggerAdapter | None = None,
) -> Transport:
    """Create the transport variant matching the source type"""
    if source.type == SourceType.TCP:
        return ModbusTcpTransport(source.name, source.settings, logger)
    if source.type == SourceType.RTU:
        return ModbusRtuTransport(source.name, source.settings, logger)
    raise TransportError(f"unsupported source type {source.type!r}", source=source.name)


class TransportBuilder:
    """
    Transport factory for one engine.

    TCP sources each get their own link. RTU sources naming the same serial
    device share one SerialLine.
    """

    def __init__(self):
        self.lines: dict[str, SerialLine] = {}

    def __call__(
        self,
        source: SourceConfig,
        logger: ServiceLoggerAdapter | None = None,
    ) -> Transport:
        if source.type != SourceType.RTU:
            return build_transport(source, logger)

        device = source.settings.device
        line = self.lines.get(device)
        if line is None:
            line = SerialLine(
                device,
                ModbusRtuTransport(device, source.settings, logger),
                open_timeout=source.timeout,
            )
            self.lines[device] = line
        return SharedSerialTransport(source.name, line)
