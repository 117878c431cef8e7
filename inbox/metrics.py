"""
Prometheus metrics for the inbox service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook delivery and per-envelope outcome counters
- Reply send outcome counter
- Active storage mode gauge

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

# result: ok, invalid_signature, invalid_json
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook deliveries by outcome",
    labelnames=["result"]
)

# result: created, duplicate, skipped
webhook_messages_total = Counter(
    "webhook_messages_total",
    "Inbound message envelopes by ingestion outcome",
    labelnames=["result"]
)

# result: sent, failed
replies_total = Counter(
    "replies_total",
    "Outbound reply sends by outcome",
    labelnames=["result"]
)

storage_mode = Gauge(
    "storage_mode",
    "1 for the currently active storage backend, 0 otherwise",
    labelnames=["mode"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """Count one request and observe its latency, keyed by a low-cardinality path."""
    normalized_path = path.split("?")[0]
    # Collapse per-message paths to avoid high-cardinality labels
    if normalized_path.startswith("/api/messages/"):
        normalized_path = "/api/messages/{id}"

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


def record_ingest_counts(created: int, duplicates: int, skipped: int) -> None:
    """Add one delivery's per-envelope outcomes."""
    if created:
        webhook_messages_total.labels(result="created").inc(created)
    if duplicates:
        webhook_messages_total.labels(result="duplicate").inc(duplicates)
    if skipped:
        webhook_messages_total.labels(result="skipped").inc(skipped)


def record_reply_outcome(result: str) -> None:
    replies_total.labels(result=result).inc()


def record_storage_mode(active: str) -> None:
    for mode in ("durable", "volatile"):
        storage_mode.labels(mode=mode).set(1 if mode == active else 0)


def get_metrics() -> bytes:
    """Current registry in the Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
