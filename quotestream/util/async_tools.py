"""
Async Hygiene Tools
Supervised tasks, stop-aware waits and a deterministic clock for tests.
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Optional, Tuple, TypeVar
from functools import wraps

logger = logging.getLogger(__name__)

T = TypeVar('T')


def create_supervised_task(coro: Awaitable[T], *, name: str) -> "asyncio.Task[T]":
    """
    Create a task whose cancellation and failure are logged.

    Args:
        coro: The coroutine to run
        name: Name for the task (used in logs)

    Returns:
        The created task
    """
    async def _supervised_wrapper():
        try:
            return await coro
        except asyncio.CancelledError:
            logger.info(f"[async_tools] Task '{name}' cancelled")
            raise
        except Exception as e:
            logger.error(f"[async_tools] Task '{name}' failed: {e}")
            raise

    return asyncio.create_task(_supervised_wrapper(), name=name)


async def wait_or_stop(awaitable: Awaitable[T], stop: asyncio.Event) -> Tuple[bool, Optional[T]]:
    """
    Race an awaitable against a stop event.

    Returns:
        (True, result) if the awaitable finished first, (False, None) if stop
        fired first; the awaitable is then cancelled. Exceptions raised by the
        awaitable propagate.
    """
    if stop.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        return False, None

    work = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(stop.wait())
    try:
        done, _ = await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        stopper.cancel()
        raise

    if work in done:
        stopper.cancel()
        return True, work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    return False, None


async def sleep_or_stop(seconds: float, stop: asyncio.Event) -> bool:
    """Sleep unless stopped first. Returns True if the stop event fired."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=max(0.0, seconds))
        return True
    except asyncio.TimeoutError:
        return False


def seeded_random(seed: int = 1337):
    """Decorator to seed random number generators for deterministic tests."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            random.seed(seed)
            return await func(*args, **kwargs)
        return wrapper
    return decorator


class DeterministicClock:
    """A deterministic clock for testing that can be frozen and advanced."""

    def __init__(self, start_time: float = 0.0):
        self._time = start_time
        self._frozen = False

    def time(self) -> float:
        """Get current time."""
        if self._frozen:
            return self._time
        return time.monotonic()

    def freeze(self):
        """Freeze the clock at current time."""
        self._frozen = True
        self._time = time.monotonic()

    def advance(self, seconds: float):
        """Advance the clock by the given number of seconds."""
        if not self._frozen:
            raise RuntimeError("Clock must be frozen to advance")
        self._time += seconds

    def unfreeze(self):
        """Unfreeze the clock to use real time."""
        self._frozen = False


# Global deterministic clock for tests
_deterministic_clock = DeterministicClock()


def get_deterministic_clock() -> DeterministicClock:
    """Get the global deterministic clock."""
    return _deterministic_clock
