"""
Prometheus metrics for the partnership panel.

This module provides:
- HTTP request counter and latency histogram for the host API
- Refresh outcome counter per collection (messages, meetings)
- Overlap-suppression counter per collection
- Write outcome counter per action (send, propose, accept)
- Gauge of currently open panels

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: ok, error
panel_refresh_total = Counter(
    "panel_refresh_total",
    "Total collection refresh outcomes",
    labelnames=["collection", "result"]
)

panel_refresh_skipped_total = Counter(
    "panel_refresh_skipped_total",
    "Timer ticks skipped because a refresh was already in flight",
    labelnames=["collection"]
)

# result: ok, error, invalid, noop
panel_write_total = Counter(
    "panel_write_total",
    "Total user-initiated write outcomes",
    labelnames=["action", "result"]
)

panel_open_panels = Gauge(
    "panel_open_panels",
    "Number of panels currently open"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record a host API request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template (e.g. /panels/{partnership_id})
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_refresh(collection: str, result: str) -> None:
    """
    Record a refresh outcome.

    Args:
        collection: "messages" or "meetings"
        result: "ok" or "error"
    """
    panel_refresh_total.labels(collection=collection, result=result).inc()


def record_refresh_skipped(collection: str) -> None:
    panel_refresh_skipped_total.labels(collection=collection).inc()


def record_write(action: str, result: str) -> None:
    """
    Record a write outcome.

    Args:
        action: "send", "propose" or "accept"
        result: Processing result - one of:
            - "ok": Remote service accepted the write
            - "error": Remote service rejected it or was unreachable
            - "invalid": Rejected locally before any request
            - "noop": Guarded locally (e.g. accepting a non-pending meeting)
    """
    panel_write_total.labels(action=action, result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
