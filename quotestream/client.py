"""
QuoteClient: the public entry point.
One client owns one HTTP connection pool, one session, one response cache and
one instrument cache. Clients share nothing.
"""

import asyncio
import logging
import random
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from quotestream.config import ClientConfig, redacted
from quotestream.protocols import PayloadDecoder
from quotestream.schemas.http import Request, Response
from quotestream.schemas.quote import InstrumentMetadata
from quotestream.schemas.stream import StreamConfig
from quotestream.services.executor import RequestExecutor
from quotestream.services.instrument_cache import InstrumentCache
from quotestream.services.quotes import fetch_modules, fetch_quote_nodes
from quotestream.services.session_manager import SessionManager
from quotestream.services.stream_session import StreamBuilder, StreamHandle, UpdateChannel, start_stream
from quotestream.services.transport import Sleep
from quotestream.util.backoff import RetryConfig
from quotestream.util.cache import CacheMode

logger = logging.getLogger("quote_client")


def build_http_client(config: ClientConfig) -> httpx.AsyncClient:
    options: Dict[str, Any] = dict(
        headers={"User-Agent": config.user_agent},
        timeout=httpx.Timeout(config.timeout, connect=config.connect_timeout),
        follow_redirects=True,
    )
    if config.transport is not None:
        options["transport"] = config.transport
    elif config.proxy:
        options["proxy"] = config.proxy
    return httpx.AsyncClient(**options)


class QuoteClient:
    """
    Resilient client for the quote service.

    Usage:
        async with QuoteClient() as client:
            nodes = await client.fetch_quotes(["AAPL", "MSFT"])
            handle, updates = await client.stream(["AAPL"])
    """

    def __init__(self, config: Optional[ClientConfig] = None, *,
                 sleep: Sleep = asyncio.sleep, rng: Optional[random.Random] = None):
        self.config = config or ClientConfig.from_settings()
        self.http = build_http_client(self.config)
        self.session = SessionManager(self.http, self.config)
        self.executor = RequestExecutor(self.http, self.config, self.session, sleep=sleep, rng=rng)
        self.instruments = InstrumentCache(self.executor)
        self._rng = rng
        self._closed = False
        logger.info(f"[client] Initialized: {redacted(self.config)}")

    async def __aenter__(self) -> "QuoteClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.http.aclose()
        logger.info("[client] Closed")

    @property
    def cache(self):
        return self.executor.cache

    async def execute(self, request: Request, retry_config: Optional[RetryConfig] = None,
                      cache_mode: Optional[CacheMode] = None) -> Response:
        return await self.executor.execute(request, retry_config, cache_mode)

    async def fetch_quotes(self, symbols: Iterable[str], cache_mode: Optional[CacheMode] = None,
                           retry: Optional[RetryConfig] = None) -> List[Dict[str, Any]]:
        """Raw v7 quote nodes for a batch of symbols (one request)."""
        nodes = await fetch_quote_nodes(self.executor, symbols, cache_mode, retry)
        await self.instruments.observe(nodes)
        return nodes

    async def fetch_modules(self, symbol: str, modules: Iterable[str],
                            decoder: Optional[PayloadDecoder] = None,
                            cache_mode: Optional[CacheMode] = None,
                            retry: Optional[RetryConfig] = None) -> Any:
        return await fetch_modules(self.executor, symbol, modules, decoder, cache_mode, retry)

    async def resolve(self, symbol: str) -> InstrumentMetadata:
        return await self.instruments.resolve(symbol)

    async def resolve_many(self, symbols: Iterable[str]) -> Dict[str, InstrumentMetadata]:
        return await self.instruments.resolve_many(symbols)

    async def stream(self, symbols: Iterable[str],
                     config: Optional[StreamConfig] = None) -> Tuple[StreamHandle, UpdateChannel]:
        return await start_stream(self, symbols, config, rng=self._rng)

    def stream_builder(self) -> StreamBuilder:
        return StreamBuilder(self)
