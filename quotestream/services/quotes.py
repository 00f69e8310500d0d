"""
Quote endpoints: batched v7 quote and v10 quoteSummary.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

from quotestream.errors import DataError, DecodeError, ValidationError
from quotestream.protocols import PayloadDecoder
from quotestream.schemas.http import Request
from quotestream.services.executor import RequestExecutor
from quotestream.util.backoff import RetryConfig
from quotestream.util.cache import CacheMode

logger = logging.getLogger("quotes")


def normalize_symbols(symbols: Iterable[str]) -> List[str]:
    """Uppercase, strip and de-duplicate while keeping order."""
    seen = set()
    out = []
    for raw in symbols:
        sym = (raw or "").strip().upper()
        if sym and sym not in seen:
            seen.add(sym)
            out.append(sym)
    return out


def quote_request(executor: RequestExecutor, symbols: List[str]) -> Request:
    # First attempt goes without a crumb; a 401/403 upgrades it
    return Request.get(
        executor.config.base_quote_v7,
        {"symbols": ",".join(symbols)},
        headers={"Accept": "application/json"},
        endpoint="quote_v7",
    )


async def fetch_quote_nodes(executor: RequestExecutor, symbols: Iterable[str],
                            cache_mode: Optional[CacheMode] = None,
                            retry: Optional[RetryConfig] = None) -> List[Dict[str, Any]]:
    """
    Fetch raw v7 quote nodes for a batch of symbols in one request.

    Returns:
        The ``quoteResponse.result`` list (may be shorter than ``symbols``)
    """
    batch = normalize_symbols(symbols)
    if not batch:
        raise ValidationError("No symbols given")

    response = await executor.execute(quote_request(executor, batch), retry, cache_mode)
    body = response.json()

    envelope = body.get("quoteResponse") if isinstance(body, dict) else None
    if not isinstance(envelope, dict):
        raise DecodeError("quoteResponse missing from v7 quote body")
    if envelope.get("error"):
        raise DataError(f"Quote endpoint error: {envelope['error']}")

    result = envelope.get("result") or []
    if not isinstance(result, list):
        raise DecodeError("quoteResponse.result is not a list")
    return [node for node in result if isinstance(node, dict)]


async def fetch_modules(executor: RequestExecutor, symbol: str, modules: Iterable[str],
                        decoder: Optional[PayloadDecoder] = None,
                        cache_mode: Optional[CacheMode] = None,
                        retry: Optional[RetryConfig] = None) -> Any:
    """
    Fetch quoteSummary modules for one symbol.

    Args:
        decoder: Optional PayloadDecoder applied to the first result node

    Returns:
        The decoded object, or the raw result node when no decoder is given

    Raises:
        DataError: upstream error payload or empty result
    """
    sym = (symbol or "").strip().upper()
    if not sym:
        raise ValidationError("Symbol must not be empty")
    module_list = ",".join(m.strip() for m in modules if m and m.strip())
    if not module_list:
        raise ValidationError("At least one module is required")

    request = Request.get(
        executor.config.base_quote_api + quote(sym, safe=""),
        {"modules": module_list},
        needs_crumb=True,
        endpoint="quote_summary",
    )
    response = await executor.execute(request, retry, cache_mode)
    body = response.json()

    summary = body.get("quoteSummary") if isinstance(body, dict) else None
    if not isinstance(summary, dict):
        raise DecodeError("quoteSummary missing from response body")

    error = summary.get("error")
    if error:
        description = error.get("description") if isinstance(error, dict) else str(error)
        raise DataError(f"Upstream error: {description}", {"symbol": sym})

    result = summary.get("result") or []
    if not result:
        raise DataError(f"Empty quoteSummary result for {sym}", {"symbol": sym, "modules": module_list})

    node = result[0]
    logger.debug(f"[quotes] quoteSummary {sym} modules={module_list}")
    return decoder.decode(node) if decoder is not None else node
