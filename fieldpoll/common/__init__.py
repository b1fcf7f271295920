"""
Common Utilities

Shared modules used across the engine and its outer surfaces:
- config.py - Configuration dataclasses and loading
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Fixed-rate tick schedule
"""

from .config import (
    EngineConfig,
    SourceConfig,
    VariableConfig,
    ModbusTCPSettings,
    ModbusRTUSettings,
    SourceType,
    DataType,
    ByteOrder,
    WordOrder,
    RegisterType,
    Parity,
    load_engine_config,
    parse_duration,
)
from .exceptions import (
    FieldpollError,
    ConfigError,
    TransportError,
    ProtocolError,
    DecodeError,
    ResolutionError,
    SinkError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    ServiceLoggerAdapter,
    log_variable_read,
    log_poll_outcome,
)
from .scheduler import TickSchedule

__all__ = [
    # Config
    "EngineConfig",
    "SourceConfig",
    "VariableConfig",
    "ModbusTCPSettings",
    "ModbusRTUSettings",
    "SourceType",
    "DataType",
    "ByteOrder",
    "WordOrder",
    "RegisterType",
    "Parity",
    "load_engine_config",
    "parse_duration",
    # Exceptions
    "FieldpollError",
    "ConfigError",
    "TransportError",
    "ProtocolError",
    "DecodeError",
    "ResolutionError",
    "SinkError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "ServiceLoggerAdapter",
    "log_variable_read",
    "log_poll_outcome",
    # Scheduling
    "TickSchedule",
]
