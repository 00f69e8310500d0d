"""
Poll worker: periodic batched quote requests through the executor.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from quotestream.errors import QuoteStreamError, StreamExhaustedError, sanitize_error_message
from quotestream.observability.metrics import record_poll_cycle
from quotestream.schemas.stream import RawTick
from quotestream.services.executor import RequestExecutor
from quotestream.services.instrument_cache import InstrumentCache
from quotestream.services.quotes import fetch_quote_nodes
from quotestream.util.async_tools import sleep_or_stop
from quotestream.util.backoff import RetryConfig
from quotestream.util.cache import CacheMode

logger = logging.getLogger("poll_worker")

TickSink = Callable[[RawTick], Awaitable[bool]]


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def node_to_tick(node: Dict[str, Any], now: datetime) -> Optional[RawTick]:
    """Map a v7 quote node to a raw tick; None when the node has no symbol."""
    symbol = (node.get("symbol") or "").strip().upper()
    if not symbol:
        return None

    previous_close = _number(node.get("regularMarketPreviousClose"))
    price = _number(node.get("regularMarketPrice"))
    if price is None:
        price = previous_close

    volume = node.get("regularMarketVolume")
    cumulative = int(volume) if _number(volume) is not None else None

    return RawTick(
        symbol=symbol,
        price=price,
        cumulative_volume=cumulative,
        ts=now,
        previous_close=previous_close,
        currency=node.get("currency"),
        source="poll",
    )


class PollWorker:
    """Polls the batched quote endpoint every ``interval`` seconds; first cycle runs immediately."""

    def __init__(self, executor: RequestExecutor, symbols: Set[str], on_tick: TickSink,
                 stop: asyncio.Event, interval: float = 1.0,
                 instrument_cache: Optional[InstrumentCache] = None,
                 cache_mode: CacheMode = CacheMode.DEFAULT,
                 retry: Optional[RetryConfig] = None,
                 failure_limit: Optional[int] = None):
        self._executor = executor
        self.symbols = symbols  # live view owned by the session
        self._on_tick = on_tick
        self._stop = stop
        self.interval = interval
        self._instruments = instrument_cache
        self.cache_mode = cache_mode
        self.retry = retry
        self.failure_limit = failure_limit

        self.cycles = 0
        self.failures = 0
        self.consecutive_failures = 0

    async def run(self) -> None:
        """
        Poll until stopped.

        Raises:
            StreamExhaustedError: ``failure_limit`` consecutive cycles failed
        """
        logger.info(f"[poll_worker] Polling every {self.interval}s")
        while not self._stop.is_set():
            if not await self._cycle():
                return
            if await sleep_or_stop(self.interval, self._stop):
                return

    async def _cycle(self) -> bool:
        batch = sorted(self.symbols)
        if not batch:
            return True

        self.cycles += 1
        try:
            # In-flight requests are not cancelled by stop
            nodes = await fetch_quote_nodes(self._executor, batch, self.cache_mode, self.retry)
        except QuoteStreamError as e:
            self.failures += 1
            self.consecutive_failures += 1
            record_poll_cycle(False)
            logger.warning(
                f"[poll_worker] Cycle failed ({self.consecutive_failures} in a row): "
                f"{sanitize_error_message(e.message)}"
            )
            if self.failure_limit is not None and self.consecutive_failures >= self.failure_limit:
                raise StreamExhaustedError(
                    f"Polling failed {self.consecutive_failures} consecutive times",
                    {"last_error": e.error_code},
                )
            return True

        self.consecutive_failures = 0
        record_poll_cycle(True)
        if self._instruments is not None:
            await self._instruments.observe(nodes)

        now = datetime.now(timezone.utc)
        for node in nodes:
            tick = node_to_tick(node, now)
            if tick is None or tick.symbol not in self.symbols:
                continue
            if not await self._on_tick(tick):
                return False
        return True
