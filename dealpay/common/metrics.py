"""Prometheus metric definitions for the payments service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Gateway notifications received, by reconciliation outcome",
    ["service", "provider", "outcome"],
)
webhook_latency_seconds = Histogram(
    "webhook_latency_seconds",
    "Time spent reconciling one gateway notification",
    ["service", "provider"],
)
status_persist_failures_total = Counter(
    "status_persist_failures_total",
    "Notifications whose status write failed and were escalated",
    ["service", "provider"],
)
fulfillment_aborts_total = Counter(
    "fulfillment_aborts_total",
    "First completions whose fulfillment aborted and rolled back the status write",
    ["service", "provider"],
)
duplicate_completions_skipped_total = Counter(
    "duplicate_completions_skipped_total",
    "Completed notifications for orders that were already fulfilled",
    ["service", "provider"],
)
fulfillments_total = Counter("fulfillments_total", "Orders fulfilled", ["service"])
fulfillment_item_failures_total = Counter(
    "fulfillment_item_failures_total",
    "Order items whose purchase or inventory update failed",
    ["service", "reason"],
)
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Checkout order creation requests",
    ["service", "provider", "result"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
dlq_published_total = Counter(
    "dlq_published_total",
    "Total DLQ events published",
    ["service", "topic", "error_type"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
