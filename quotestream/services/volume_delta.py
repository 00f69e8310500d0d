"""
Volume-delta engine.
Turns cumulative day volume into per-tick deltas and applies diff-only filtering.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from quotestream.schemas.quote import QuoteUpdate
from quotestream.schemas.stream import RawTick

logger = logging.getLogger(__name__)


@dataclass
class SymbolVolumeState:
    """Running state for one subscribed symbol."""
    last_cumulative_volume: Optional[int] = None
    last_price: Optional[float] = None
    last_seen_at: Optional[datetime] = None


class VolumeDeltaEngine:
    """
    Per-symbol cumulative-to-delta converter.

    - first observation: delta None, baseline stored
    - cumulative >= baseline: delta = cumulative - baseline
    - cumulative < baseline (session rollover): delta None, baseline reset
    - cumulative unknown: delta None, baseline kept

    Ticks are processed in arrival order; timestamps are not reordered or filtered.
    """

    def __init__(self, diff_only: bool = False):
        self.diff_only = diff_only
        self._state: Dict[str, SymbolVolumeState] = {}
        self.suppressed = 0

    def observe(self, symbol: str, price: Optional[float], cumulative_volume: Optional[int],
                ts: datetime, previous_close: Optional[float] = None,
                currency: Optional[str] = None, source: str = "push") -> Optional[QuoteUpdate]:
        """Process one tick. Returns the update to emit, or None if diff_only suppressed it."""
        state = self._state.get(symbol)
        first = state is None
        if first:
            state = SymbolVolumeState()
            self._state[symbol] = state

        delta: Optional[int] = None
        if cumulative_volume is not None:
            baseline = state.last_cumulative_volume
            if baseline is not None and cumulative_volume >= baseline:
                delta = cumulative_volume - baseline
            elif baseline is not None:
                logger.debug(f"Volume reset for {symbol}: {baseline} -> {cumulative_volume}")
            state.last_cumulative_volume = cumulative_volume

        price_changed = first or price != state.last_price
        state.last_price = price
        state.last_seen_at = ts

        if self.diff_only and not price_changed and not delta:
            self.suppressed += 1
            return None

        return QuoteUpdate(
            symbol=symbol,
            price=price,
            previous_close=previous_close,
            currency=currency,
            volume=delta,
            ts=ts,
            source=source,
        )

    def observe_tick(self, tick: RawTick) -> Optional[QuoteUpdate]:
        return self.observe(
            tick.symbol, tick.price, tick.cumulative_volume, tick.ts,
            previous_close=tick.previous_close, currency=tick.currency, source=tick.source,
        )

    def forget(self, symbol: str) -> None:
        """Drop state for an unsubscribed symbol."""
        self._state.pop(symbol, None)

    def state_for(self, symbol: str) -> Optional[SymbolVolumeState]:
        return self._state.get(symbol)

    @property
    def symbols(self):
        return set(self._state)
