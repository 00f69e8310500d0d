"""
HTTP send with transient-failure retry.
Connect errors, timeouts and retryable statuses are retried with backoff; every
other answer is handed back to the caller for classification.
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional

import httpx

from quotestream.errors import NetworkError, RateLimitError, ServerError, sanitize_error_message
from quotestream.observability.metrics import record_request, record_retry
from quotestream.schemas.http import Request, Response
from quotestream.util.backoff import RetryConfig, compute_delay

logger = logging.getLogger("transport")

Sleep = Callable[[float], Awaitable[None]]

# Upper bound on a server-supplied Retry-After
MAX_RETRY_AFTER_S = 30.0


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as delta-seconds or HTTP date; None if absent or unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def status_error(response: Response) -> NetworkError:
    """Transient error for a retryable status."""
    url = sanitize_error_message(response.url)
    if response.status == 429:
        return RateLimitError(url, retry_after=parse_retry_after(response.header("retry-after")))
    return ServerError(response.status, url)


async def send_with_retry(
    http: httpx.AsyncClient,
    request: Request,
    retry: RetryConfig,
    *,
    crumb: Optional[str] = None,
    cookie_header: Optional[str] = None,
    sleep: Sleep = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> Response:
    """
    Send a request, retrying transient failures per the retry policy.

    Returns:
        The first non-retryable response (any status)

    Raises:
        NetworkError: the last transient failure once attempts are exhausted
    """
    attempts = retry.total_attempts
    headers = dict(request.headers)
    if cookie_header:
        headers["Cookie"] = cookie_header

    last_error: Optional[NetworkError] = None
    for attempt in range(attempts):
        delay_override: Optional[float] = None
        started = time.monotonic()
        try:
            raw = await http.request(
                request.method,
                request.url,
                params=request.query(crumb),
                headers=headers,
                data=request.data,
            )
        except httpx.TimeoutException as e:
            record_request(request.endpoint, None, (time.monotonic() - started) * 1000)
            last_error = NetworkError(f"Timeout calling {request.url}: {e}", {"kind": "timeout"})
            if not retry.enabled or not retry.retry_on_timeout:
                raise last_error from e
        except httpx.TransportError as e:
            record_request(request.endpoint, None, (time.monotonic() - started) * 1000)
            last_error = NetworkError(f"Connection error calling {request.url}: {e}", {"kind": "connect"})
            if not retry.enabled or not retry.retry_on_connect:
                raise last_error from e
        else:
            response = Response.from_httpx(raw)
            record_request(request.endpoint, response.status, (time.monotonic() - started) * 1000)
            if not retry.should_retry_status(response.status):
                return response
            last_error = status_error(response)
            if isinstance(last_error, RateLimitError) and last_error.retry_after is not None:
                delay_override = last_error.retry_after
                if delay_override > MAX_RETRY_AFTER_S:
                    logger.warning(
                        f"[transport] {request.endpoint} Retry-After {delay_override:.0f}s "
                        f"clamped to {MAX_RETRY_AFTER_S:.0f}s"
                    )
                    delay_override = MAX_RETRY_AFTER_S

        if attempt + 1 >= attempts:
            break

        delay = delay_override if delay_override is not None else compute_delay(retry.backoff, attempt, rng)
        reason = last_error.error_code.lower()
        logger.warning(
            f"[transport] {request.endpoint} attempt {attempt + 1}/{attempts} failed: "
            f"{sanitize_error_message(last_error.message)}. Retrying in {delay:.2f}s"
        )
        record_retry(request.endpoint, reason, delay)
        await sleep(delay)

    logger.error(f"[transport] {request.endpoint} failed after {attempts} attempts")
    raise last_error
