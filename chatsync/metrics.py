"""
Prometheus metrics for the sync service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (result)
- Merge decision counter (source, outcome)
- Poll sweep counter (result)
- Outbound send counter (result)
- Realtime subscriber gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# Webhook processing outcome counter
# result: processed, ignored_event, unknown_connection, invalid_signature, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# source: poll, webhook; outcome: insert, replace, ignore, error
merge_decisions_total = Counter(
    "merge_decisions_total",
    "Merge engine decisions by producer",
    labelnames=["source", "outcome"]
)

# result: ok, partial, failed, timeout
poll_sweeps_total = Counter(
    "poll_sweeps_total",
    "Poll synchronizer sweeps per connection",
    labelnames=["result"]
)

# result: sent, failed, timeout
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound send attempts by outcome",
    labelnames=["result"]
)

realtime_subscribers = Gauge(
    "realtime_subscribers",
    "Currently connected realtime clients"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
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


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_merge_decision(source: str, outcome: str) -> None:
    merge_decisions_total.labels(source=source, outcome=outcome).inc()


def record_poll_sweep(result: str) -> None:
    poll_sweeps_total.labels(result=result).inc()


def record_outbound(result: str) -> None:
    outbound_messages_total.labels(result=result).inc()


def set_realtime_subscribers(count: int) -> None:
    realtime_subscribers.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
