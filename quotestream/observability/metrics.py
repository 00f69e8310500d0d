"""
Observability metrics for monitoring and debugging.
Request, retry, cache, bootstrap and streaming counters.
"""

from fastapi import APIRouter, Response
from typing import Dict, List, Optional
import json


# Simple metrics tracking without Prometheus dependency
class SimpleMetrics:
    """Simple metrics tracking for observability."""

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, List[float]] = {}

    @staticmethod
    def _key(name: str, labels: Optional[Dict[str, str]]) -> str:
        return f"{name}_{json.dumps(labels or {}, sort_keys=True)}"

    def inc_counter(self, name: str, labels: Dict[str, str] = None):
        """Increment a counter."""
        key = self._key(name, labels)
        self.counters[key] = self.counters.get(key, 0) + 1

    def set_gauge(self, name: str, value: float, labels: Dict[str, str] = None):
        """Set a gauge value."""
        self.gauges[self._key(name, labels)] = value

    def observe_histogram(self, name: str, value: float, labels: Dict[str, str] = None):
        """Observe a histogram value."""
        key = self._key(name, labels)
        if key not in self.histograms:
            self.histograms[key] = []
        self.histograms[key].append(value)
        # Keep only last 1000 samples
        if len(self.histograms[key]) > 1000:
            self.histograms[key] = self.histograms[key][-1000:]

    def counter_value(self, name: str, labels: Dict[str, str] = None) -> int:
        return self.counters.get(self._key(name, labels), 0)

    def gauge_value(self, name: str, labels: Dict[str, str] = None) -> Optional[float]:
        return self.gauges.get(self._key(name, labels))

    def reset(self):
        self.counters.clear()
        self.gauges.clear()
        self.histograms.clear()

    def get_metrics(self) -> str:
        """Get metrics in text format."""
        lines = []
        for key, value in self.counters.items():
            lines.append(f"# TYPE {key.split('_{')[0]} counter")
            lines.append(f"{key} {value}")
        for key, value in self.gauges.items():
            lines.append(f"# TYPE {key.split('_{')[0]} gauge")
            lines.append(f"{key} {value}")
        for key, values in self.histograms.items():
            if values:
                lines.append(f"# TYPE {key.split('_{')[0]} histogram")
                lines.append(f"{key}_count {len(values)}")
                lines.append(f"{key}_sum {sum(values)}")
                lines.append(f"{key}_avg {sum(values)/len(values)}")
        return "\n".join(lines)


# Global metrics instance
_metrics = SimpleMetrics()


def get_registry() -> SimpleMetrics:
    return _metrics


def record_request(endpoint: str, status_code: Optional[int], duration_ms: float):
    """Record one HTTP attempt (status None for transport failures)."""
    if status_code is None:
        status = "transport_error"
    else:
        status = "success" if 200 <= status_code < 400 else "error"
    _metrics.inc_counter("http_requests", {"endpoint": endpoint, "status": status})
    _metrics.observe_histogram("http_duration_ms", duration_ms, {"endpoint": endpoint})


def record_retry(endpoint: str, reason: str, delay_s: float):
    """Record a retry scheduled by the executor."""
    _metrics.inc_counter("http_retries", {"endpoint": endpoint, "reason": reason})
    _metrics.observe_histogram("http_backoff_ms", delay_s * 1000.0, {"endpoint": endpoint})


def record_cache(result: str):
    """Record cache lookup result: hit | miss | write."""
    _metrics.inc_counter("cache_events", {"result": result})


def record_cache_size(entries: int):
    """Record the number of entries held by the response cache."""
    _metrics.set_gauge("cache_entries", entries)


def record_bootstrap(outcome: str):
    """Record session bootstrap outcome: success | failure."""
    _metrics.inc_counter("session_bootstraps", {"outcome": outcome})


def record_stream_transition(from_state: str, to_state: str):
    """Record a stream state machine transition."""
    _metrics.inc_counter("stream_transitions", {"from": from_state, "to": to_state})


def record_ws_reconnect():
    """Record WebSocket reconnection."""
    _metrics.inc_counter("ws_reconnects")


def record_ws_decode_error():
    """Record an undecodable push frame."""
    _metrics.inc_counter("ws_decode_errors")


def record_poll_cycle(ok: bool):
    """Record one polling cycle."""
    _metrics.inc_counter("poll_cycles", {"ok": str(ok).lower()})


def record_update_emitted(source: str):
    """Record a quote update delivered to the output channel."""
    _metrics.inc_counter("stream_updates", {"source": source})


def get_metrics() -> str:
    """Get metrics in text format."""
    return _metrics.get_metrics()


def create_metrics_router() -> APIRouter:
    """Create FastAPI router for metrics endpoint."""
    router = APIRouter()

    @router.get("/ops/metrics")
    def metrics():
        """Metrics endpoint."""
        return Response(get_metrics(), media_type="text/plain")

    return router
