"""
Streaming configuration, state and raw tick types.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from quotestream.config import Settings, settings
from quotestream.errors import ConfigurationError, ValidationError
from quotestream.util.backoff import Backoff, ExponentialBackoff, RetryConfig
from quotestream.util.cache import CacheMode


class StreamMethod(str, Enum):
    """Transport preference for a stream."""
    PUSH_ONLY = "push_only"
    POLL_ONLY = "poll_only"
    PUSH_WITH_POLL_FALLBACK = "push_with_poll_fallback"


class StreamState(str, Enum):
    """Stream session states. PUSH_ACTIVE and POLL_ACTIVE are mutually exclusive."""
    CONNECTING = "connecting"
    PUSH_ACTIVE = "push_active"
    POLL_ACTIVE = "poll_active"
    STOPPED = "stopped"   # caller cancelled
    FAILED = "failed"     # unrecoverable

    @property
    def terminal(self) -> bool:
        return self in (StreamState.STOPPED, StreamState.FAILED)


ALLOWED_TRANSITIONS: Dict[StreamState, FrozenSet[StreamState]] = {
    StreamState.CONNECTING: frozenset({
        StreamState.PUSH_ACTIVE, StreamState.POLL_ACTIVE, StreamState.STOPPED, StreamState.FAILED,
    }),
    StreamState.PUSH_ACTIVE: frozenset({
        StreamState.CONNECTING, StreamState.POLL_ACTIVE, StreamState.STOPPED, StreamState.FAILED,
    }),
    StreamState.POLL_ACTIVE: frozenset({StreamState.STOPPED, StreamState.FAILED}),
    StreamState.STOPPED: frozenset(),
    StreamState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class StreamConfig:
    """Configuration of one streaming subscription."""
    interval: float = 1.0   # polling interval in seconds
    diff_only: bool = True
    method: StreamMethod = StreamMethod.PUSH_WITH_POLL_FALLBACK
    max_consecutive_errors: int = 5
    max_reconnects: int = 5
    reconnect_backoff: Backoff = field(
        default_factory=lambda: ExponentialBackoff(base=1.0, factor=2.0, max=30.0, jitter=True)
    )
    poll_failure_limit: Optional[int] = None
    cache_mode: CacheMode = CacheMode.DEFAULT
    retry: Optional[RetryConfig] = None
    channel_size: int = 1024

    def __post_init__(self):
        if self.interval <= 0:
            raise ValidationError("interval must be positive")
        if self.max_consecutive_errors < 1:
            raise ValidationError("max_consecutive_errors must be at least 1")
        if self.max_reconnects < 0:
            raise ValidationError("max_reconnects must be non-negative")
        if self.channel_size < 1:
            raise ValidationError("channel_size must be at least 1")

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None, **overrides) -> "StreamConfig":
        s = s or settings
        try:
            method = StreamMethod(s.QS_STREAM_METHOD)
        except ValueError:
            raise ConfigurationError(f"Unknown QS_STREAM_METHOD {s.QS_STREAM_METHOD!r}")
        values = dict(
            interval=s.QS_POLL_INTERVAL_MS / 1000.0,
            diff_only=s.QS_DIFF_ONLY,
            method=method,
        )
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class RawTick:
    """Worker output before volume-delta conversion."""
    symbol: str
    price: Optional[float]
    cumulative_volume: Optional[int]
    ts: datetime
    previous_close: Optional[float] = None
    currency: Optional[str] = None
    source: str = "push"
