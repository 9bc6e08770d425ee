"""
Prometheus metrics for the billing service.

Metrics tracked:
- HTTP request latency and count per endpoint
- Quota decisions (allowed / denied) per tier and feature
- Usage recorded per feature
- Webhook outcomes and processing latency per event type
- Storage errors per operation
- Notification and downstream (Stripe, AI) failures

Exposed via the /metrics endpoint.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "cutglue_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.0, 2.5, 5.0, 10.0, 30.0),
)

http_requests_total = Counter(
    "cutglue_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "cutglue_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

errors_total = Counter(
    "cutglue_errors_total",
    "Unhandled errors by category",
    labelnames=["error_type", "endpoint"],
)

# ============================================================================
# QUOTA METRICS
# ============================================================================

quota_decisions_total = Counter(
    "cutglue_quota_decisions_total",
    "Quota decisions",
    labelnames=["tier", "feature", "decision"],  # decision: allowed, denied
)

usage_recorded_total = Counter(
    "cutglue_usage_recorded_total",
    "Units of usage recorded",
    labelnames=["tier", "feature"],
)

# ============================================================================
# WEBHOOK METRICS
# ============================================================================

webhook_events_total = Counter(
    "cutglue_webhook_events_total",
    "Stripe webhook deliveries by outcome",
    # outcome: processed, duplicate, ignored, invalid_signature, invalid_payload,
    # data_error, timeout, failed
    labelnames=["event_type", "outcome"],
)

webhook_processing_duration_seconds = Histogram(
    "cutglue_webhook_processing_duration_seconds",
    "Webhook processing latency (verification through commit)",
    labelnames=["event_type"],
    buckets=(0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.0, 2.5, 5.0, 10.0),
)

# ============================================================================
# DEPENDENCY METRICS
# ============================================================================

storage_errors_total = Counter(
    "cutglue_storage_errors_total",
    "Database errors surfaced as StorageError",
    labelnames=["operation"],
)

notification_failures_total = Counter(
    "cutglue_notification_failures_total",
    "Billing notifications that could not be delivered",
    labelnames=["kind"],
)

downstream_failures_total = Counter(
    "cutglue_downstream_failures_total",
    "Failed calls to external collaborators",
    labelnames=["service"],  # stripe, generation
)


# ============================================================================
# TRACKING FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, ...)
        endpoint: Normalized endpoint path
        status_code: HTTP status code
        duration_seconds: Request latency in seconds
    """
    status = str(status_code)
    http_request_duration_seconds.labels(
        method=method, endpoint=endpoint, status_code=status
    ).observe(duration_seconds)
    http_requests_total.labels(method=method, endpoint=endpoint, status_code=status).inc()


def track_error(error_type: str, endpoint: str) -> None:
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()


def track_quota_decision(tier: str, feature: str, allowed: bool) -> None:
    quota_decisions_total.labels(
        tier=tier, feature=feature, decision="allowed" if allowed else "denied"
    ).inc()


def track_usage_recorded(tier: str, feature: str, quantity: int = 1) -> None:
    usage_recorded_total.labels(tier=tier, feature=feature).inc(quantity)


def track_webhook_event(event_type: str, outcome: str, duration_seconds: float | None = None) -> None:
    """
    Track a webhook delivery.

    Args:
        event_type: Stripe event type, or "unknown" before the payload is decoded
        outcome: Processing outcome label
        duration_seconds: Processing latency, when the delivery got that far
    """
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
    if duration_seconds is not None:
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )


def track_storage_error(operation: str) -> None:
    storage_errors_total.labels(operation=operation).inc()


def track_notification_failure(kind: str) -> None:
    notification_failures_total.labels(kind=kind).inc()


def track_downstream_failure(service: str) -> None:
    downstream_failures_total.labels(service=service).inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format.

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
