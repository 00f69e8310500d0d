# quotestream/config.py
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple
from dotenv import load_dotenv, find_dotenv
import os
import logging

from quotestream.errors import ConfigurationError
from quotestream.util.backoff import ExponentialBackoff, RetryConfig
from quotestream.util.cache import CacheMode

# Load nearest .env from project tree, don't override existing process env
load_dotenv(find_dotenv(usecwd=True), override=False)

logger = logging.getLogger(__name__)

# Desktop UA to avoid trivial bot blocking
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)

DEFAULT_BASE_QUOTE_API = "https://query1.finance.yahoo.com/v10/finance/quoteSummary/"
DEFAULT_BASE_QUOTE_V7 = "https://query1.finance.yahoo.com/v7/finance/quote"
DEFAULT_COOKIE_URL = "https://fc.yahoo.com/consent"
DEFAULT_CRUMB_URL = "https://query1.finance.yahoo.com/v1/test/getcrumb"
DEFAULT_BASE_STREAM = "wss://streamer.finance.yahoo.com/?version=2"
STREAM_ORIGIN = "https://finance.yahoo.com"


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default).strip()
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default).strip()
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


class Settings:
    """Environment-backed defaults for clients and streams."""

    def __init__(self):
        # HTTP
        self.QS_TIMEOUT_S = _env_float("QS_TIMEOUT_S", "30")
        self.QS_CONNECT_TIMEOUT_S = _env_float("QS_CONNECT_TIMEOUT_S", "10")
        self.QS_USER_AGENT = (os.getenv("QS_USER_AGENT") or USER_AGENT).strip()
        self.QS_PROXY = (os.getenv("QS_PROXY") or "").strip() or None

        # Retry policy
        self.QS_RETRY_MAX = _env_int("QS_RETRY_MAX", "4")
        self.QS_RETRY_BASE_MS = _env_int("QS_RETRY_BASE_MS", "200")
        self.QS_RETRY_MAX_MS = _env_int("QS_RETRY_MAX_MS", "3000")

        # Response cache (0 disables)
        self.QS_CACHE_TTL_S = _env_float("QS_CACHE_TTL_S", "0")
        self.QS_CACHE_MODE = (os.getenv("QS_CACHE_MODE") or "default").strip().lower()

        # Streaming
        self.QS_STREAM_METHOD = (os.getenv("QS_STREAM_METHOD") or "push_with_poll_fallback").strip().lower()
        self.QS_POLL_INTERVAL_MS = _env_int("QS_POLL_INTERVAL_MS", "1000")
        self.QS_DIFF_ONLY = os.getenv("QS_DIFF_ONLY", "true").strip().lower() == "true"

        self.QS_LOG_LEVEL = (os.getenv("QS_LOG_LEVEL") or "INFO").strip().upper()


settings = Settings()


@dataclass(frozen=True)
class ClientConfig:
    """Immutable configuration of one QuoteClient."""
    user_agent: str = USER_AGENT
    timeout: Optional[float] = 30.0
    connect_timeout: Optional[float] = 10.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache_ttl: Optional[float] = None
    cache_mode: CacheMode = CacheMode.DEFAULT
    proxy: Optional[str] = None
    transport: Any = None  # httpx.AsyncBaseTransport override
    base_quote_api: str = DEFAULT_BASE_QUOTE_API
    base_quote_v7: str = DEFAULT_BASE_QUOTE_V7
    cookie_url: str = DEFAULT_COOKIE_URL
    crumb_url: str = DEFAULT_CRUMB_URL
    base_stream: str = DEFAULT_BASE_STREAM
    preauth: Optional[Tuple[str, str]] = None  # (cookie, crumb)

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None, **overrides) -> "ClientConfig":
        s = s or settings
        if s.QS_RETRY_MAX < 0:
            raise ConfigurationError("QS_RETRY_MAX must be non-negative")
        try:
            cache_mode = CacheMode(s.QS_CACHE_MODE)
        except ValueError:
            raise ConfigurationError(f"Unknown QS_CACHE_MODE {s.QS_CACHE_MODE!r}")

        values = dict(
            user_agent=s.QS_USER_AGENT,
            timeout=s.QS_TIMEOUT_S or None,
            connect_timeout=s.QS_CONNECT_TIMEOUT_S or None,
            retry=RetryConfig(
                max_retries=s.QS_RETRY_MAX,
                backoff=ExponentialBackoff(
                    base=s.QS_RETRY_BASE_MS / 1000.0,
                    factor=2.0,
                    max=s.QS_RETRY_MAX_MS / 1000.0,
                    jitter=True,
                ),
            ),
            cache_ttl=s.QS_CACHE_TTL_S if s.QS_CACHE_TTL_S > 0 else None,
            cache_mode=cache_mode,
            proxy=s.QS_PROXY,
        )
        values.update(overrides)
        return cls(**values)


def redacted(cfg: ClientConfig) -> dict:
    return {
        "user_agent": cfg.user_agent,
        "timeout": cfg.timeout,
        "connect_timeout": cfg.connect_timeout,
        "max_retries": cfg.retry.max_retries,
        "cache_ttl": cfg.cache_ttl,
        "cache_mode": cfg.cache_mode.value,
        "proxy": "***redacted***" if cfg.proxy else None,
        "custom_transport": cfg.transport is not None,
        "preauth": cfg.preauth is not None,
    }
