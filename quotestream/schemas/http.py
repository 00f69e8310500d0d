"""
Request/response value types passed through the executor.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from quotestream.errors import DecodeError
from quotestream.util.cache import canonical_key


@dataclass(frozen=True)
class Request:
    """One logical upstream call."""
    method: str
    url: str
    params: Tuple[Tuple[str, str], ...] = ()
    headers: Tuple[Tuple[str, str], ...] = ()
    data: Optional[Mapping[str, Any]] = None
    needs_crumb: bool = False
    endpoint: str = "api"

    @classmethod
    def get(cls, url: str, params: Optional[Mapping[str, Any]] = None, *,
            headers: Optional[Mapping[str, str]] = None, needs_crumb: bool = False,
            endpoint: str = "api") -> "Request":
        return cls(
            method="GET",
            url=url,
            params=tuple((str(k), str(v)) for k, v in (params or {}).items()),
            headers=tuple((headers or {}).items()),
            needs_crumb=needs_crumb,
            endpoint=endpoint,
        )

    def cache_key(self) -> str:
        return canonical_key(self.method, self.url, self.params)

    def query(self, crumb: Optional[str] = None) -> List[Tuple[str, str]]:
        pairs = [(k, v) for k, v in self.params if k != "crumb"]
        if crumb:
            pairs.append(("crumb", crumb))
        return pairs

    def with_crumb_required(self) -> "Request":
        return Request(self.method, self.url, self.params, self.headers, self.data, True, self.endpoint)


@dataclass(frozen=True)
class Response:
    """Fully-read upstream response. Cached as-is, so cache hits are byte-identical."""
    status: int
    url: str
    content: bytes
    headers: httpx.Headers = field(default_factory=httpx.Headers)

    @classmethod
    def from_httpx(cls, raw: httpx.Response) -> "Response":
        return cls(status=raw.status_code, url=str(raw.url), content=raw.content, headers=raw.headers)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        try:
            return json.loads(self.content)
        except (ValueError, UnicodeDecodeError) as e:
            raise DecodeError(f"Invalid JSON from {self.url.split('?')[0]}: {e}")

    def set_cookies(self) -> List[str]:
        return self.headers.get_list("set-cookie")

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name, default)

    def describe(self) -> Dict[str, Any]:
        return {"status": self.status, "url": self.url.split("?")[0], "bytes": len(self.content)}
