"""
Quote schemas using Pydantic for validation and serialization.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class QuoteUpdate(BaseModel):
    """One streamed quote. Produced fresh per tick, never mutated."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: Optional[float] = None
    previous_close: Optional[float] = None
    currency: Optional[str] = None
    volume: Optional[int] = None    # per-tick delta, None when undeterminable
    ts: datetime                    # UTC
    source: str = "push"            # "push" | "poll"


class InstrumentMetadata(BaseModel):
    """Canonical instrument identity as reported by the batched quote endpoint."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    short_name: Optional[str] = None
    quote_type: Optional[str] = None
    exchange: Optional[str] = None
    full_exchange_name: Optional[str] = None
    market: Optional[str] = None
    currency: Optional[str] = None

    @classmethod
    def from_quote_node(cls, node: Dict[str, Any]) -> Optional["InstrumentMetadata"]:
        """Build from a v7 quote node; None when the node carries no symbol."""
        symbol = (node.get("symbol") or "").strip()
        if not symbol:
            return None
        return cls(
            symbol=symbol.upper(),
            short_name=node.get("shortName") or node.get("longName"),
            quote_type=node.get("quoteType"),
            exchange=node.get("exchange"),
            full_exchange_name=node.get("fullExchangeName"),
            market=node.get("market"),
            currency=node.get("currency"),
        )
