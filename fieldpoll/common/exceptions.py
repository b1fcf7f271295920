"""
Custom Exception Classes for fieldpoll

Hierarchical exception structure for error handling across the engine.
Only ConfigError is fatal; everything else is turned into quality markers
by the source poller.
"""


class FieldpollError(Exception):
    """Base exception for all fieldpoll errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(FieldpollError):
    """Configuration-related errors (fatal at startup)"""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(f"Config Error: {message}", recoverable=False)


class TransportError(FieldpollError):
    """Link-level failure: I/O error, timeout, malformed frame"""

    def __init__(
        self,
        message: str,
        source: str | None = None,
        timed_out: bool = False,
    ):
        self.source = source
        self.timed_out = timed_out
        super().__init__(f"Transport Error: {message}", recoverable=True)


class ProtocolError(TransportError):
    """Device answered with a Modbus exception response"""

    EXCEPTION_NAMES = {
        0x01: "Illegal Function",
        0x02: "Illegal Data Address",
        0x03: "Illegal Data Value",
        0x04: "Server Device Failure",
        0x05: "Acknowledge",
        0x06: "Server Device Busy",
        0x08: "Memory Parity Error",
        0x0A: "Gateway Path Unavailable",
        0x0B: "Gateway Target Device Failed to Respond",
    }

    def __init__(
        self,
        exception_code: int,
        function_code: int | None = None,
        source: str | None = None,
    ):
        self.exception_code = exception_code
        self.function_code = function_code
        name = self.EXCEPTION_NAMES.get(exception_code, "Unknown Exception")
        super().__init__(
            f"Modbus exception 0x{exception_code:02X} ({name})",
            source=source,
        )


class DecodeError(FieldpollError):
    """Raw register data could not be decoded into the declared type"""

    def __init__(self, message: str, data_type: str | None = None):
        self.data_type = data_type
        super().__init__(f"Decode Error: {message}", recoverable=True)


class ResolutionError(FieldpollError):
    """A variable could not be bound to its source or register data"""

    def __init__(self, message: str, variable: str | None = None):
        self.variable = variable
        super().__init__(f"Resolution Error: {message}", recoverable=True)


class SinkError(FieldpollError):
    """Downstream sink failed to accept a value"""

    def __init__(self, message: str, sink: str | None = None):
        self.sink = sink
        super().__init__(f"Sink Error: {message}", recoverable=True)
