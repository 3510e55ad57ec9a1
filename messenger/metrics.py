"""
Prometheus metrics for the messaging API.

This module provides:
- HTTP request counter (method, path, status)
- Message operation outcome counter (operation, result)
- Request latency histogram (method, path)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# operation: register, send, batch_send
# result: created, conflict, not_found
message_operations_total = Counter(
    "message_operations_total",
    "Total message store operation outcomes",
    labelnames=["operation", "result"]
)

# Request latency histogram in seconds, default buckets
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template (e.g. /users/{username}) or raw path
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


def record_message_operation(operation: str, result: str) -> None:
    """
    Record the outcome of a store write.

    Args:
        operation: "register", "send" or "batch_send"
        result: "created", "conflict" or "not_found"
    """
    message_operations_total.labels(operation=operation, result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
