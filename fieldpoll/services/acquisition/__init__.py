"""
Acquisition Service - Modbus polling and decoding

Responsibilities:
- Maintain one Modbus link per source (TCP or RTU)
- Poll every source on its own fixed interval
- Decode registers into typed, tagged variables
- Deliver values with a quality marker to a sink
"""

from .engine import Engine
from .models import DecodedValue, FailureKind, PollerState, PollOutcome, Quality
from .poller import SourcePoller
from .resolver import ReadRequest, VariableResolver
from .service import AcquisitionService
from .sinks import HttpSink, JsonLinesSink, LoggingSink, QueueSink, Sink
from .transport import (
    ModbusRtuTransport,
    ModbusTcpTransport,
    SerialLine,
    SharedSerialTransport,
    Transport,
    TransportBuilder,
    build_transport,
)

__all__ = [
    "AcquisitionService",
    "Engine",
    "SourcePoller",
    "VariableResolver",
    "ReadRequest",
    "DecodedValue",
    "PollOutcome",
    "PollerState",
    "FailureKind",
    "Quality",
    "Sink",
    "LoggingSink",
    "JsonLinesSink",
    "HttpSink",
    "QueueSink",
    "Transport",
    "ModbusTcpTransport",
    "ModbusRtuTransport",
    "SerialLine",
    "SharedSerialTransport",
    "TransportBuilder",
    "build_transport",
]
