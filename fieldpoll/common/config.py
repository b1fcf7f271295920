"""
Configuration Dataclasses

Type-safe configuration structures for the acquisition engine.
The engine only ever sees these objects; textual forms (YAML) are turned
into them by load_engine_config().
"""

import re
from dataclasses import dataclass, field
from typing import Any, Union
from enum import Enum

from .exceptions import ConfigError


class SourceType(str, Enum):
    """Supported source transports"""
    TCP = "tcp"
    RTU = "rtu"


class DataType(str, Enum):
    """Modbus register data types"""
    BOOL = "bool"
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    INT64 = "int64"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"


class ByteOrder(str, Enum):
    """Byte order within one 16-bit register"""
    BIG = "big"
    LITTLE = "little"


class WordOrder(str, Enum):
    """Register order within multi-register values"""
    HIGH_WORD_FIRST = "high_word_first"
    LOW_WORD_FIRST = "low_word_first"


class RegisterType(str, Enum):
    """Readable register tables"""
    HOLDING = "holding"
    INPUT = "input"


class Parity(str, Enum):
    """Serial parity"""
    NONE = "N"
    EVEN = "E"
    ODD = "O"


# Modbus function codes for the readable register tables
FUNCTION_CODES: dict[RegisterType, int] = {
    RegisterType.HOLDING: 0x03,
    RegisterType.INPUT: 0x04,
}

REGISTER_COUNTS: dict[DataType, int] = {
    DataType.BOOL: 1,
    DataType.INT16: 1,
    DataType.UINT16: 1,
    DataType.INT32: 2,
    DataType.UINT32: 2,
    DataType.FLOAT32: 2,
    DataType.INT64: 4,
    DataType.UINT64: 4,
    DataType.FLOAT64: 4,
}

STANDARD_BAUD_RATES = (1200, 2400, 4800, 9600, 19200, 38400, 57600, 115200)


@dataclass(frozen=True)
class ModbusTCPSettings:
    """Modbus TCP connection settings"""
    host: str
    port: int = 502
    unit_id: int = 1
    timeout: float = 1.0
    poll_interval: float = 1.0
    retry_interval: float = 5.0
    byte_order: ByteOrder = ByteOrder.BIG
    word_order: WordOrder = WordOrder.HIGH_WORD_FIRST

    def validate(self) -> list[str]:
        errors = []
        if not self.host:
            errors.append("host is required")
        if not 1 <= self.port <= 65535:
            errors.append(f"port {self.port} out of range 1-65535")
        if not 0 <= self.unit_id <= 255:
            errors.append(f"unitId {self.unit_id} out of range 0-255")
        errors.extend(_validate_timing(self.timeout, self.poll_interval, self.retry_interval))
        return errors


@dataclass(frozen=True)
class ModbusRTUSettings:
    """Modbus RTU (serial) connection settings"""
    device: str
    baud_rate: int = 9600
    data_bits: int = 8
    parity: Parity = Parity.NONE
    stop_bits: int = 1
    unit_id: int = 1
    timeout: float = 1.0
    poll_interval: float = 1.0
    retry_interval: float = 5.0
    byte_order: ByteOrder = ByteOrder.BIG
    word_order: WordOrder = WordOrder.HIGH_WORD_FIRST

    def validate(self) -> list[str]:
        errors = []
        if not self.device:
            errors.append("device is required")
        if self.baud_rate not in STANDARD_BAUD_RATES:
            errors.append(f"baudRate {self.baud_rate} is not a standard rate")
        if self.data_bits not in (7, 8):
            errors.append(f"dataBits must be 7 or 8, got {self.data_bits}")
        if self.stop_bits not in (1, 2):
            errors.append(f"stopBits must be 1 or 2, got {self.stop_bits}")
        # 0 is the broadcast address; slaves never answer it
        if not 1 <= self.unit_id <= 247:
            errors.append(f"unitId {self.unit_id} out of range 1-247")
        errors.extend(_validate_timing(self.timeout, self.poll_interval, self.retry_interval))
        return errors


SourceSettings = Union[ModbusTCPSettings, ModbusRTUSettings]

_SETTINGS_TYPES: dict[SourceType, type] = {
    SourceType.TCP: ModbusTCPSettings,
    SourceType.RTU: ModbusRTUSettings,
}


def _validate_timing(timeout: float, poll_interval: float, retry_interval: float) -> list[str]:
    errors = []
    if timeout <= 0:
        errors.append("timeout must be positive")
    if poll_interval <= 0:
        errors.append("pollInterval must be positive")
    if retry_interval <= 0:
        errors.append("retryInterval must be positive")
    return errors


@dataclass(frozen=True)
class SourceConfig:
    """A device connection; settings is the variant selected by type"""
    name: str
    type: SourceType
    settings: SourceSettings

    def __post_init__(self) -> None:
        expected = _SETTINGS_TYPES[self.type]
        if not isinstance(self.settings, expected):
            raise ConfigError(
                f"source {self.name!r}: type {self.type.value} requires "
                f"{expected.__name__}, got {type(self.settings).__name__}"
            )

    def validate(self) -> list[str]:
        return [f"source {self.name!r}: {e}" for e in self.settings.validate()]

    @property
    def unit_id(self) -> int:
        return self.settings.unit_id

    @property
    def timeout(self) -> float:
        return self.settings.timeout

    @property
    def poll_interval(self) -> float:
        return self.settings.poll_interval

    @property
    def retry_interval(self) -> float:
        return self.settings.retry_interval

    @property
    def byte_order(self) -> ByteOrder:
        return self.settings.byte_order

    @property
    def word_order(self) -> WordOrder:
        return self.settings.word_order

    @property
    def endpoint(self) -> str:
        """Human-readable link description for logs"""
        if isinstance(self.settings, ModbusTCPSettings):
            return f"{self.settings.host}:{self.settings.port}"
        return f"{self.settings.device}@{self.settings.baud_rate}"


@dataclass(frozen=True)
class VariableConfig:
    """A named value read from one source"""
    name: str
    source: str
    data_type: DataType
    address: int
    register_type: RegisterType = RegisterType.HOLDING
    tags: frozenset[str] = field(default_factory=frozenset)

    @property
    def register_count(self) -> int:
        return REGISTER_COUNTS[self.data_type]

    @property
    def function_code(self) -> int:
        return FUNCTION_CODES[self.register_type]

    @property
    def end_address(self) -> int:
        """One past the last register this variable occupies"""
        return self.address + self.register_count


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration"""
    log_level: str = "INFO"
    sources: tuple[SourceConfig, ...] = ()
    variables: tuple[VariableConfig, ...] = ()

    def get_source(self, name: str) -> SourceConfig | None:
        return next((s for s in self.sources if s.name == name), None)

    def variables_for(self, source_name: str) -> list[VariableConfig]:
        return [v for v in self.variables if v.source == source_name]


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Any) -> float:
    """
    Parse a duration expression into seconds.

    Accepts "500ms", "5s", "1m30s", "1.5h" or a bare number of seconds.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total


def _get(data: dict, *keys: str, default: Any = None) -> Any:
    """Look up the first key present (camelCase and snake_case accepted)"""
    for key in keys:
        if key in data:
            return data[key]
    return default


# Vendor manuals name word order several ways
_WORD_ORDER_ALIASES = {
    "big": WordOrder.HIGH_WORD_FIRST,
    "high": WordOrder.HIGH_WORD_FIRST,
    "highwordfirst": WordOrder.HIGH_WORD_FIRST,
    "little": WordOrder.LOW_WORD_FIRST,
    "low": WordOrder.LOW_WORD_FIRST,
    "lowwordfirst": WordOrder.LOW_WORD_FIRST,
}


def _enum(enum_cls: type[Enum], value: Any, what: str) -> Any:
    try:
        if isinstance(value, str) and enum_cls is Parity:
            value = value.strip().upper()[:1]
        elif isinstance(value, str):
            value = value.strip().lower().replace("-", "_")
            if enum_cls is WordOrder and value in _WORD_ORDER_ALIASES:
                return _WORD_ORDER_ALIASES[value]
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ConfigError(f"invalid {what} {value!r} (expected one of: {allowed})")


def _duration(data: dict, default: float, *keys: str) -> float:
    raw = _get(data, *keys)
    if raw is None:
        return default
    return parse_duration(raw)


def _int(data: dict, default: int, *keys: str) -> int:
    raw = _get(data, *keys, default=default)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid integer for {keys[0]}: {raw!r}")


def _tags(raw: Any, variable: str) -> frozenset[str]:
    """A single tag may be written as a bare string"""
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        return frozenset({raw})
    if not isinstance(raw, (list, tuple, set, frozenset)):
        raise ConfigError(f"variable {variable!r}: tags must be a list, got {raw!r}")
    return frozenset(str(tag) for tag in raw)


def _load_settings(source_type: SourceType, data: dict) -> SourceSettings:
    common = {
        "unit_id": _int(data, 1, "unitId", "unit_id"),
        "timeout": _duration(data, 1.0, "timeout"),
        "poll_interval": _duration(data, 1.0, "pollInterval", "poll_interval"),
        "retry_interval": _duration(data, 5.0, "retryInterval", "retry_interval"),
        "byte_order": _enum(
            ByteOrder, _get(data, "byteOrder", "byte_order", default="big"), "byteOrder"
        ),
        "word_order": _enum(
            WordOrder,
            _get(data, "wordOrder", "word_order", default="high_word_first"),
            "wordOrder",
        ),
    }

    if source_type == SourceType.TCP:
        return ModbusTCPSettings(
            host=str(_get(data, "host", default="")),
            port=_int(data, 502, "port"),
            **common,
        )

    return ModbusRTUSettings(
        device=str(_get(data, "device", default="")),
        baud_rate=_int(data, 9600, "baudRate", "baud_rate"),
        data_bits=_int(data, 8, "dataBits", "data_bits"),
        parity=_enum(Parity, _get(data, "parity", default="N"), "parity"),
        stop_bits=_int(data, 1, "stopBits", "stop_bits"),
        **common,
    )


def load_engine_config(data: dict) -> EngineConfig:
    """Load EngineConfig from a parsed mapping (e.g., from YAML)"""
    if not isinstance(data, dict):
        raise ConfigError("configuration root must be a mapping")

    sources = []
    for s in data.get("sources") or []:
        name = s.get("name")
        if not name:
            raise ConfigError("source without a name")
        source_type = _enum(SourceType, s.get("type", "tcp"), f"type for source {name!r}")
        settings = _get(s, "config", "settings", default={}) or {}
        sources.append(SourceConfig(
            name=name,
            type=source_type,
            settings=_load_settings(source_type, settings),
        ))

    variables = []
    for v in data.get("variables") or []:
        name = v.get("name")
        if not name:
            raise ConfigError("variable without a name")
        if _get(v, "address") is None:
            raise ConfigError(f"variable {name!r}: address is required")
        variables.append(VariableConfig(
            name=name,
            source=v.get("source", ""),
            data_type=_enum(
                DataType, _get(v, "dataType", "data_type", default="uint16"),
                f"dataType for variable {name!r}",
            ),
            address=_int(v, 0, "address"),
            register_type=_enum(
                RegisterType, _get(v, "registerType", "register_type", default="holding"),
                f"registerType for variable {name!r}",
            ),
            tags=_tags(v.get("tags"), name),
        ))

    return EngineConfig(
        log_level=str(_get(data, "logLevel", "log_level", default="INFO")).upper(),
        sources=tuple(sources),
        variables=tuple(variables),
    )
