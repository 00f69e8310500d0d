"""
Retry policy and backoff delays.
Pure functions: attempt number in, delay in seconds out.
"""

import random
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class FixedBackoff:
    """Constant delay between attempts."""
    delay: float = 0.5


@dataclass(frozen=True)
class ExponentialBackoff:
    """base * factor**attempt, capped at max, optionally jittered by +/-50%."""
    base: float = 0.2
    factor: float = 2.0
    max: float = 3.0
    jitter: bool = True


Backoff = Union[FixedBackoff, ExponentialBackoff]


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy attached to a single request. Total attempts = max_retries + 1."""
    max_retries: int = 4
    backoff: Backoff = field(default_factory=ExponentialBackoff)
    retry_on_status: Tuple[int, ...] = (408, 429, 500, 502, 503, 504)
    retry_on_timeout: bool = True
    retry_on_connect: bool = True
    enabled: bool = True

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1 if self.enabled else 1

    def should_retry_status(self, status: int) -> bool:
        return self.enabled and (status in self.retry_on_status or 500 <= status <= 599)


def compute_delay(backoff: Backoff, attempt: int, rng: Optional[random.Random] = None) -> float:
    """
    Delay in seconds to sleep after the given failed attempt.

    Args:
        backoff: Backoff variant
        attempt: Zero-based index of the attempt that just failed
        rng: Random source for jitter (seeded in tests)

    Returns:
        Delay in seconds, never above ``backoff.max`` for exponential backoff
    """
    if attempt < 0:
        raise ValueError("attempt must be non-negative")

    if isinstance(backoff, FixedBackoff):
        return max(0.0, backoff.delay)

    delay = min(backoff.base * (backoff.factor ** attempt), backoff.max)
    if backoff.jitter:
        jitter_factor = (rng or random).uniform(0.5, 1.5)
        delay = min(delay * jitter_factor, backoff.max)
    return max(0.0, delay)
