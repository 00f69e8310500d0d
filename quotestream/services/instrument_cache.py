"""
Instrument Resolution Cache
Symbol -> InstrumentMetadata, filled from the batched quote endpoint.
Entries are never evicted.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from quotestream.errors import NotFoundError
from quotestream.schemas.quote import InstrumentMetadata
from quotestream.services.executor import RequestExecutor
from quotestream.services.quotes import fetch_quote_nodes, normalize_symbols
from quotestream.util.cache import CacheMode

logger = logging.getLogger("instrument_cache")


class InstrumentCache:
    """Per-client symbol metadata cache."""

    def __init__(self, executor: RequestExecutor):
        self._executor = executor
        self._entries: Dict[str, InstrumentMetadata] = {}
        self._lock = asyncio.Lock()
        self.lookups = 0

    def get(self, symbol: str) -> Optional[InstrumentMetadata]:
        return self._entries.get(symbol.strip().upper())

    def __contains__(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def __len__(self) -> int:
        return len(self._entries)

    async def resolve(self, symbol: str) -> InstrumentMetadata:
        """Resolve one symbol; a hit costs no network call."""
        resolved = await self.resolve_many([symbol])
        key = symbol.strip().upper()
        if key not in resolved:
            raise NotFoundError(key, {"symbol": key})
        return resolved[key]

    async def resolve_many(self, symbols: Iterable[str]) -> Dict[str, InstrumentMetadata]:
        """
        Resolve several symbols with at most one batched request for the misses.

        Returns:
            Mapping of uppercased symbol to metadata; unknown symbols are absent
        """
        wanted = normalize_symbols(symbols)
        misses = [s for s in wanted if s not in self._entries]

        if misses:
            self.lookups += 1
            logger.debug(f"[instrument_cache] Looking up {len(misses)} symbol(s): {','.join(misses)}")
            # Bypass the response cache; this cache is the one that remembers
            nodes = await fetch_quote_nodes(self._executor, misses, cache_mode=CacheMode.BYPASS)
            await self.observe(nodes)

        return {s: self._entries[s] for s in wanted if s in self._entries}

    async def observe(self, nodes: Iterable[Dict[str, Any]]) -> int:
        """Store metadata from any multi-symbol quote response. Returns the number stored."""
        stored = 0
        async with self._lock:
            for node in nodes:
                meta = InstrumentMetadata.from_quote_node(node)
                if meta is None:
                    continue
                self._entries[meta.symbol] = meta
                stored += 1
        return stored

    def symbols(self) -> List[str]:
        return sorted(self._entries)
