"""
Shared test fixtures and helpers.

Stub transports stand in for real Modbus links; they speak the same
Transport interface the pollers use, so no sockets or serial ports are
touched.
"""

import asyncio
import struct

import pytest

from fieldpoll.common.config import (
    ByteOrder,
    DataType,
    EngineConfig,
    ModbusRTUSettings,
    ModbusTCPSettings,
    RegisterType,
    SourceConfig,
    SourceType,
    VariableConfig,
    WordOrder,
)
from fieldpoll.common.exceptions import ProtocolError, TransportError
from fieldpoll.common.logging_setup import get_service_logger
from fieldpoll.services.acquisition.transport import Transport

_PACK = {
    DataType.INT16: ">h",
    DataType.UINT16: ">H",
    DataType.INT32: ">i",
    DataType.UINT32: ">I",
    DataType.INT64: ">q",
    DataType.UINT64: ">Q",
    DataType.FLOAT32: ">f",
    DataType.FLOAT64: ">d",
}


def encode(value, data_type, byte_order=ByteOrder.BIG, word_order=WordOrder.HIGH_WORD_FIRST):
    """Lay out a value the way a device with the given ordering sends it"""
    if data_type == DataType.BOOL:
        packed = b"\x00\x01" if value else b"\x00\x00"
    else:
        packed = struct.pack(_PACK[data_type], value)

    registers = [packed[i:i + 2] for i in range(0, len(packed), 2)]
    if word_order == WordOrder.LOW_WORD_FIRST:
        registers.reverse()
    if byte_order == ByteOrder.LITTLE:
        registers = [reg[::-1] for reg in registers]
    return b"".join(registers)


def make_tcp_source(
    name="meter-1",
    timeout=0.2,
    poll_interval=0.05,
    retry_interval=0.01,
    **kwargs,
):
    settings = ModbusTCPSettings(
        host=kwargs.pop("host", "127.0.0.1"),
        timeout=timeout,
        poll_interval=poll_interval,
        retry_interval=retry_interval,
        **kwargs,
    )
    return SourceConfig(name=name, type=SourceType.TCP, settings=settings)


def make_rtu_source(name="rs485-1", **kwargs):
    settings = ModbusRTUSettings(device=kwargs.pop("device", "/dev/ttyUSB0"), **kwargs)
    return SourceConfig(name=name, type=SourceType.RTU, settings=settings)


def make_variable(
    name="power",
    source="meter-1",
    data_type=DataType.UINT16,
    address=0,
    register_type=RegisterType.HOLDING,
    tags=(),
):
    return VariableConfig(
        name=name,
        source=source,
        data_type=data_type,
        address=address,
        register_type=register_type,
        tags=frozenset(tags),
    )


def make_config(sources, variables):
    return EngineConfig(log_level="DEBUG", sources=tuple(sources), variables=tuple(variables))


class StubTransport(Transport):
    """
    Scriptable transport.

    Args:
        registers: {(function_code, address): register value} served on read
        connect_failures: number of open() calls that fail before success
        read_delay: seconds every read takes
        read_error: exception raised by every read (after read_delay)
    """

    def __init__(
        self,
        registers=None,
        connect_failures=0,
        read_delay=0.0,
        read_error=None,
    ):
        self.registers = dict(registers or {})
        self.connect_failures = connect_failures
        self.read_delay = read_delay
        self.read_error = read_error

        self.open_calls = 0
        self.close_calls = 0
        self.reads = []
        self._open = False

    @property
    def is_open(self):
        return self._open

    async def open(self):
        self.open_calls += 1
        if self.open_calls <= self.connect_failures:
            raise TransportError("connection refused", source="stub")
        self._open = True

    async def close(self):
        self.close_calls += 1
        self._open = False

    async def read_registers(self, unit_id, function_code, address, count, timeout):
        self.reads.append((unit_id, function_code, address, count))
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.read_error is not None:
            raise self.read_error
        return b"".join(
            self.registers.get((function_code, address + i), 0).to_bytes(2, "big")
            for i in range(count)
        )


class FailingTransport(StubTransport):
    """Never connects"""

    def __init__(self):
        super().__init__(connect_failures=10**9)


class ProtocolErrorTransport(StubTransport):
    """Connects, then answers every read with the given exception code"""

    def __init__(self, exception_code=0x02):
        super().__init__(read_error=ProtocolError(exception_code, function_code=0x03))


@pytest.fixture
def logger():
    return get_service_logger("test", "DEBUG")
