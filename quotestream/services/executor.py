"""
Request Executor
Retry, cache and authenticated-session handling for every upstream call.
"""

import asyncio
import logging
import random
from typing import Optional

import httpx

from quotestream.config import ClientConfig
from quotestream.errors import (
    AuthError,
    ClientRequestError,
    NotFoundError,
    sanitize_error_message,
)
from quotestream.observability.metrics import record_cache, record_cache_size
from quotestream.schemas.http import Request, Response
from quotestream.services.session_manager import SessionManager
from quotestream.services.transport import Sleep, send_with_retry, status_error
from quotestream.util.backoff import RetryConfig
from quotestream.util.cache import CacheMode, ResponseCache

logger = logging.getLogger("executor")


def is_auth_rejection(response: Response) -> bool:
    """401/403, or an error body complaining about the crumb."""
    if response.status in (401, 403):
        return True
    if b"crumb" not in response.content.lower():
        return False
    return "invalid crumb" in response.text.lower()


class RequestExecutor:
    """Executes requests for one client. Instances share nothing."""

    def __init__(self, http: httpx.AsyncClient, config: ClientConfig,
                 session: Optional[SessionManager] = None,
                 cache: Optional[ResponseCache] = None,
                 sleep: Sleep = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.http = http
        self.config = config
        self.session = session or SessionManager(http, config)
        self.cache = cache or ResponseCache(config.cache_ttl)
        self._sleep = sleep
        self._rng = rng

    async def execute(self, request: Request, retry_config: Optional[RetryConfig] = None,
                      cache_mode: Optional[CacheMode] = None) -> Response:
        """
        Execute one logical request.

        Args:
            request: The request to send
            retry_config: Retry policy for this call (client default if None)
            cache_mode: Cache policy for this call (client default if None)

        Returns:
            A successful response, possibly served from cache

        Raises:
            NetworkError: transient failure after all retries (incl. ServerError, RateLimitError)
            AuthError: the session could not be (re-)established or was rejected twice
            ClientRequestError: non-retryable 4xx (NotFoundError for 404)
        """
        retry = retry_config or self.config.retry
        mode = cache_mode or self.config.cache_mode
        key = request.cache_key()

        if self.cache.enabled and mode.can_read:
            cached = self.cache.get(key)
            if cached is not None:
                record_cache("hit")
                logger.debug(f"[executor] {request.endpoint} served from cache")
                return cached
            record_cache("miss")

        reauthenticated = False
        while True:
            crumb = await self.session.ensure_ready() if request.needs_crumb else None
            response = await send_with_retry(
                self.http,
                request,
                retry,
                crumb=crumb,
                cookie_header=self.session.cookie_header,
                sleep=self._sleep,
                rng=self._rng,
            )

            if is_auth_rejection(response):
                if crumb is None:
                    # Rejected without a crumb: resend with one before touching the session
                    logger.info(f"[executor] {request.endpoint} rejected without crumb ({response.status}), retrying with crumb")
                    request = request.with_crumb_required()
                    continue
                if reauthenticated:
                    raise AuthError(
                        f"Request rejected after re-authentication ({response.status})",
                        response.describe(),
                    )
                reauthenticated = True
                logger.warning(f"[executor] {request.endpoint} auth rejected ({response.status}), re-authenticating")
                await self.session.invalidate(crumb)
                continue
            break

        self._raise_for_status(response)

        if self.cache.enabled and mode.can_write:
            await self.cache.put(key, response)
            record_cache("write")
            record_cache_size(self.cache.stats()["total_entries"])
        return response

    @staticmethod
    def _raise_for_status(response: Response) -> None:
        if response.ok:
            return
        url = sanitize_error_message(response.url)
        if response.status == 404:
            raise NotFoundError(url, response.describe())
        if response.status in (408, 429) or response.status >= 500:
            # Only reachable with retries disabled for this status
            raise status_error(response)
        if 400 <= response.status < 500:
            raise ClientRequestError(response.status, url, response.describe())
        logger.debug(f"[executor] Passing through status {response.status}")
