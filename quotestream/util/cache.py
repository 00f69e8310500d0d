"""
In-memory response cache keyed by canonical request fingerprint.
Read/write behaviour is decided per call by CacheMode, never by the store.
"""

import asyncio
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


class CacheMode(str, Enum):
    """Per-call cache policy."""
    DEFAULT = "default"              # read-if-fresh, write-on-success
    BYPASS = "bypass"                # never read, never write
    REFRESH_FORCE = "refresh_force"  # never read, always write
    READ_ONLY = "read_only"          # read-if-fresh, never write

    @property
    def can_read(self) -> bool:
        return self in (CacheMode.DEFAULT, CacheMode.READ_ONLY)

    @property
    def can_write(self) -> bool:
        return self in (CacheMode.DEFAULT, CacheMode.REFRESH_FORCE)


@dataclass(frozen=True)
class CacheEntry:
    """Cached value. Replaced on refresh, never mutated."""
    value: Any
    created_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now < self.created_at + self.ttl


def canonical_key(method: str, url: str, params: Optional[Iterable[Tuple[str, Any]]] = None,
                  exclude: Iterable[str] = ("crumb",)) -> str:
    """Fingerprint of method + endpoint + sorted params."""
    skip = set(exclude)
    pairs = sorted((str(k), str(v)) for k, v in (params or ()) if k not in skip)
    query = "&".join(f"{k}={v}" for k, v in pairs)
    return f"{method.upper()} {url}?{query}"


class ResponseCache:
    """TTL store shared by every request of one client. ttl=None disables it."""

    def __init__(self, ttl: Optional[float], clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.ttl is not None and self.ttl > 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value if fresh."""
        if not self.enabled:
            return None

        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self.hits += 1
            logger.debug(f"Cache hit for {key}")
            return entry.value

        self.misses += 1
        if entry is not None:
            logger.debug(f"Cache expired for {key}")
        return None

    async def put(self, key: str, value: Any) -> None:
        """Store a fresh entry, replacing any previous one."""
        if not self.enabled:
            return
        async with self._lock:
            self._entries[key] = CacheEntry(value=value, created_at=self._clock(), ttl=self.ttl)
        logger.debug(f"Cache updated for {key}")

    async def clear(self) -> None:
        """Clear all cached data."""
        async with self._lock:
            self._entries.clear()
        logger.info("Cache cleared")

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        now = self._clock()
        valid_entries = sum(1 for entry in self._entries.values() if entry.is_fresh(now))
        return {
            "enabled": self.enabled,
            "ttl": self.ttl,
            "total_entries": len(self._entries),
            "valid_entries": valid_entries,
            "expired_entries": len(self._entries) - valid_entries,
            "hits": self.hits,
            "misses": self.misses,
        }
