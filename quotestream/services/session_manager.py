"""
Session Manager
Owns the cookie/crumb lifecycle with a single-flight bootstrap.

UNINITIALIZED -> BOOTSTRAPPING -> READY -> INVALID -> BOOTSTRAPPING -> ...
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Dict, Optional, Tuple
from urllib.parse import urljoin

import httpx

from quotestream.config import ClientConfig
from quotestream.errors import AuthError, sanitize_error_message
from quotestream.observability.metrics import record_bootstrap
from quotestream.schemas.http import Request, Response
from quotestream.services.transport import send_with_retry

logger = logging.getLogger("session_manager")

_FORM_ACTION = re.compile(r'<form[^>]*action="([^"]*)"', re.IGNORECASE)
_HIDDEN_INPUT = re.compile(r"<input[^>]*>", re.IGNORECASE)
_ATTR = re.compile(r'(\w+)="([^"]*)"')


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    INVALID = "invalid"


def validate_crumb(crumb: str) -> str:
    """Reject empty crumbs and HTML/JSON error bodies served with a 200."""
    crumb = crumb.strip()
    if not crumb or "{" in crumb or "<" in crumb:
        raise AuthError("Received invalid crumb", {"length": len(crumb)})
    return crumb


def parse_consent_form(html: str) -> Optional[Tuple[str, Dict[str, str]]]:
    """
    Extract the GDPR consent form from an interstitial page.

    Returns:
        (action, hidden fields) or None if the page is not a consent form
    """
    if "csrfToken" not in html and "sessionId" not in html:
        return None
    action = _FORM_ACTION.search(html)
    fields: Dict[str, str] = {}
    for tag in _HIDDEN_INPUT.findall(html):
        attrs = dict(_ATTR.findall(tag))
        if attrs.get("type", "").lower() == "hidden" and attrs.get("name"):
            fields[attrs["name"]] = attrs.get("value", "")
    if not fields:
        return None
    return (action.group(1) if action else ""), fields


class SessionManager:
    """
    Cookie + crumb session shared by every request of one client.

    Cookies live in the httpx client's jar; only the crumb is held here.
    """

    def __init__(self, http: httpx.AsyncClient, config: ClientConfig):
        self._http = http
        self._config = config
        self._lock = asyncio.Lock()
        self._inflight: Optional["asyncio.Task[str]"] = None
        self._crumb: Optional[str] = None
        self._cookie_header: Optional[str] = None
        self.state = SessionState.UNINITIALIZED
        self.bootstrap_count = 0

        if config.preauth is not None:
            cookie, crumb = config.preauth
            self._cookie_header = cookie
            self._crumb = validate_crumb(crumb)
            self.state = SessionState.READY
            logger.info("[session] Using pre-authenticated session")

    @property
    def crumb(self) -> Optional[str]:
        return self._crumb

    @property
    def cookie_header(self) -> Optional[str]:
        """Explicit Cookie header for pre-authenticated sessions, else None (jar is used)."""
        return self._cookie_header

    async def ensure_ready(self) -> str:
        """
        Return a valid crumb, bootstrapping if needed.

        Concurrent callers share one in-flight bootstrap. A caller that is
        cancelled while waiting does not cancel the bootstrap for the others.
        """
        async with self._lock:
            if self.state == SessionState.READY and self._crumb:
                return self._crumb
            if self._inflight is None:
                self.state = SessionState.BOOTSTRAPPING
                self._inflight = asyncio.create_task(self._run_bootstrap(), name="session_bootstrap")
            task = self._inflight

        return await asyncio.shield(task)

    async def invalidate(self, stale_crumb: Optional[str]) -> bool:
        """
        Mark the session invalid if ``stale_crumb`` is still current.

        Returns:
            True if this call invalidated the session
        """
        async with self._lock:
            if self.state != SessionState.READY or self._crumb != stale_crumb:
                return False
            self.state = SessionState.INVALID
            self._crumb = None
            self._cookie_header = None
        logger.warning("[session] Crumb rejected, session invalidated", extra={"evt": "session_invalidated"})
        return True

    async def _run_bootstrap(self) -> str:
        self.bootstrap_count += 1
        try:
            crumb = await self._bootstrap()
        except Exception as e:
            async with self._lock:
                self.state = SessionState.UNINITIALIZED
                self._inflight = None
            record_bootstrap("failure")
            logger.error(f"[session] Bootstrap failed: {sanitize_error_message(str(e))}")
            raise

        async with self._lock:
            self._crumb = crumb
            self.state = SessionState.READY
            self._inflight = None
        record_bootstrap("success")
        logger.info("[session] Session ready", extra={"evt": "session_ready"})
        return crumb

    async def _bootstrap(self) -> str:
        await self._fetch_cookie()
        return await self._fetch_crumb()

    async def _fetch_cookie(self) -> None:
        # The cookie endpoint answers 404 with a Set-Cookie; success is judged by the jar.
        request = Request.get(
            self._config.cookie_url,
            headers={"User-Agent": self._config.user_agent},
            endpoint="cookie",
        )
        response = await send_with_retry(self._http, request, self._config.retry)

        if not self._has_cookie(response):
            form = parse_consent_form(response.text)
            if form is not None:
                await self._submit_consent(response, *form)

        if not self._has_cookie(response):
            raise AuthError("No cookie received from cookie endpoint", response.describe())
        logger.debug("[session] Cookie acquired")

    async def _submit_consent(self, page: Response, action: str, fields: Dict[str, str]) -> None:
        target = urljoin(page.url, action) if action else page.url
        data = dict(fields)
        data["agree"] = ["agree", "agree"]
        logger.info("[session] Submitting consent form")
        try:
            raw = await self._http.post(target, data=data, headers={"User-Agent": self._config.user_agent})
        except httpx.HTTPError as e:
            raise AuthError(f"Consent submission failed: {e}")
        logger.debug(f"[session] Consent answered {raw.status_code}")

    def _has_cookie(self, response: Response) -> bool:
        return bool(response.set_cookies()) or len(self._http.cookies.jar) > 0

    async def _fetch_crumb(self) -> str:
        request = Request.get(
            self._config.crumb_url,
            headers={"User-Agent": self._config.user_agent},
            endpoint="crumb",
        )
        response = await send_with_retry(self._http, request, self._config.retry)
        if not response.ok:
            raise AuthError(f"Crumb endpoint answered {response.status}", response.describe())
        return validate_crumb(response.text)
