"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Chat outcome counters (messages, conversation resolution)
- Store retry and summary-failure counters
- Active live subscription gauge

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

# result: created, duplicate, rejected
chat_messages_total = Counter(
    "chat_messages_total",
    "Total message send outcomes",
    labelnames=["result"]
)

# result: created, existing
conversations_resolved_total = Counter(
    "conversations_resolved_total",
    "Total get-or-create conversation outcomes",
    labelnames=["result"]
)

conversation_summary_failures_total = Counter(
    "conversation_summary_failures_total",
    "Summary/unread writes that failed after the message was appended"
)

store_retries_total = Counter(
    "store_retries_total",
    "Retried store reads",
    labelnames=["operation"]
)

# kind: messages, conversations
active_subscriptions = Gauge(
    "active_subscriptions",
    "Live subscriptions currently open",
    labelnames=["kind"]
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


def record_message_outcome(result: str) -> None:
    """
    Record a send outcome.

    Args:
        result: One of "created", "duplicate" (idempotency key reused)
            or "rejected" (validation/not-found failure)
    """
    chat_messages_total.labels(result=result).inc()


def record_conversation_outcome(result: str) -> None:
    """Record whether get-or-create found or created the conversation."""
    conversations_resolved_total.labels(result=result).inc()


def record_summary_failure() -> None:
    conversation_summary_failures_total.inc()


def record_store_retry(operation: str) -> None:
    store_retries_total.labels(operation=operation).inc()


def subscription_opened(kind: str) -> None:
    active_subscriptions.labels(kind=kind).inc()


def subscription_closed(kind: str) -> None:
    active_subscriptions.labels(kind=kind).dec()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.
    """
    return CONTENT_TYPE_LATEST
