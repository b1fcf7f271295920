"""
Acquisition result types

DecodedValue is what a sink receives; PollOutcome is what one poll cycle of
one source produces.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fieldpoll.common.config import VariableConfig


class Quality(str, Enum):
    """Confidence in a published value"""
    GOOD = "good"
    BAD = "bad"
    STALE = "stale"


class FailureKind(str, Enum):
    """Why a poll cycle did not produce Good values"""
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    DECODE = "decode"
    OVERRUN = "overrun"  # tick dropped, previous cycle still running


class PollerState(str, Enum):
    """Source poller lifecycle"""
    IDLE = "idle"
    CONNECTING = "connecting"
    POLLING = "polling"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass(frozen=True)
class DecodedValue:
    """One variable's value from one poll cycle"""
    variable: VariableConfig
    value: bool | int | float | None
    timestamp: datetime
    quality: Quality = Quality.GOOD
    error: str | None = None

    @property
    def name(self) -> str:
        return self.variable.name

    @property
    def source(self) -> str:
        return self.variable.source

    @property
    def tags(self) -> frozenset[str]:
        return self.variable.tags

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.variable.source,
            "name": self.variable.name,
            "value": self.value,
            "quality": self.quality.value,
            "timestamp": self.timestamp.isoformat(),
            "tags": sorted(self.variable.tags),
            "error": self.error,
        }


@dataclass(frozen=True)
class PollOutcome:
    """Result of one poll cycle of one source"""
    source: str
    cycle: int
    timestamp: datetime
    values: tuple[DecodedValue, ...] = ()
    failure: FailureKind | None = None
    error: str | None = None
    exception_code: int | None = None
    duration_ms: float = 0.0

    @property
    def quality(self) -> Quality:
        if self.failure == FailureKind.OVERRUN:
            return Quality.STALE
        if self.failure is not None:
            return Quality.BAD
        return Quality.GOOD

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class PollerStats:
    """Counters for one source poller"""
    cycles: int = 0
    good_cycles: int = 0
    failed_cycles: int = 0
    skipped_ticks: int = 0
    connect_attempts: int = 0
    backoff_waits: int = 0
    consecutive_timeouts: int = 0
    last_error: str | None = None
    last_success: datetime | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "good_cycles": self.good_cycles,
            "failed_cycles": self.failed_cycles,
            "skipped_ticks": self.skipped_ticks,
            "connect_attempts": self.connect_attempts,
            "backoff_waits": self.backoff_waits,
            "last_error": self.last_error,
            "last_success": self.last_success.isoformat() if self.last_success else None,
        }
