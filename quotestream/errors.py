"""
Centralized Exceptions
Error taxonomy for the request executor and the streaming engine.
"""

import re
from typing import Dict, Any, Optional


class QuoteStreamError(Exception):
    """Base exception for quotestream."""

    def __init__(self, message: str, error_code: str = "UNKNOWN", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class NetworkError(QuoteStreamError):
    """Transient network failure (connect error, timeout)."""

    def __init__(self, message: str = "Network error", details: Optional[Dict[str, Any]] = None,
                 error_code: str = "NETWORK_ERROR"):
        super().__init__(message, error_code, details)


class ServerError(NetworkError):
    """Upstream answered with a retryable status (5xx, 408)."""

    def __init__(self, status: int, url: str, details: Optional[Dict[str, Any]] = None):
        self.status = status
        self.url = url
        super().__init__(f"Server error {status} at {url}", details, "SERVER_ERROR")


class RateLimitError(NetworkError):
    """Rate limit exceeded (429)."""

    def __init__(self, url: str, retry_after: Optional[float] = None, details: Optional[Dict[str, Any]] = None):
        self.status = 429
        self.url = url
        self.retry_after = retry_after
        super().__init__(f"Rate limited at {url}", details, "RATE_LIMIT")


class AuthError(QuoteStreamError):
    """Rejected crumb/session or failed cookie+crumb bootstrap."""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTH_ERROR", details)


class ClientRequestError(QuoteStreamError):
    """Non-retryable 4xx answer."""

    def __init__(self, status: int, url: str, details: Optional[Dict[str, Any]] = None,
                 error_code: str = "CLIENT_ERROR"):
        self.status = status
        self.url = url
        super().__init__(f"Unexpected response status {status} at {url}", error_code, details)


class NotFoundError(ClientRequestError):
    """Upstream returned 404, or a symbol could not be resolved."""

    def __init__(self, url: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(404, url, details, "NOT_FOUND")


class DecodeError(QuoteStreamError):
    """Malformed payload or stream frame."""

    def __init__(self, message: str = "Decode failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DECODE_ERROR", details)


class DataError(QuoteStreamError):
    """Upstream returned an error payload or the expected data is missing."""

    def __init__(self, message: str = "Data missing", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATA_ERROR", details)


class StreamDisconnectError(QuoteStreamError):
    """Push connection failed or was lost."""

    def __init__(self, message: str = "Stream disconnected", established: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        self.established = established
        super().__init__(message, "STREAM_DISCONNECT", details)


class StreamExhaustedError(QuoteStreamError):
    """No worker can keep the stream alive any more."""

    def __init__(self, message: str = "Stream exhausted", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "STREAM_EXHAUSTED", details)


class ValidationError(QuoteStreamError):
    """Invalid caller input."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class ConfigurationError(QuoteStreamError):
    """Configuration error."""

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIG_ERROR", details)


_SECRET_PARAM = re.compile(r"\b(crumb|cookie|A1|A3|B)=([^&\s;,'\"]+)", re.IGNORECASE)


def sanitize_error_message(message: str) -> str:
    """Redact crumb and cookie values before a message reaches the logs."""
    return _SECRET_PARAM.sub(lambda m: f"{m.group(1)}=***", message)


def create_structured_error_response(error: Exception) -> Dict[str, Any]:
    """Create structured error payload for logging."""
    if isinstance(error, QuoteStreamError):
        return {
            "error_type": error.error_code,
            "message": sanitize_error_message(error.message),
            "details": error.details,
        }
    else:
        return {
            "error_type": "UNKNOWN_ERROR",
            "message": sanitize_error_message(str(error)),
            "details": {},
        }
