"""
Prometheus metrics for the billing service.

Metrics tracked:
- Request latency (histogram) and count (counter) per endpoint
- Active requests (gauge)
- Webhook events by type and outcome (processed / idempotent / rejected)
- Usage records by category and outcome (recorded / deduplicated)
- Usage quantity and cost (counters)
- Credit adjustments by entry type
- Provider (Stripe) failures by operation
- Error rates (counter) by error type

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
- Labels never include organization ids (unbounded cardinality)
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
    "billing_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s (provider round trips)
        2.500,  # 2.5s
        5.000,  # 5s
    ),
)

http_requests_total = Counter(
    "billing_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "billing_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

# ============================================================================
# BILLING METRICS
# ============================================================================

webhook_events_total = Counter(
    "billing_webhook_events_total",
    "Stripe webhook deliveries by event type and outcome",
    labelnames=["event_type", "outcome"],
)

usage_records_total = Counter(
    "billing_usage_records_total",
    "Usage submissions by category and outcome",
    labelnames=["category", "outcome"],
)

usage_quantity_total = Counter(
    "billing_usage_quantity_total",
    "Recorded usage quantity",
    labelnames=["category"],
)

usage_cost_decimillicents_total = Counter(
    "billing_usage_cost_decimillicents_total",
    "Recorded usage cost in decimillicents",
    labelnames=["category"],
)

credit_adjustments_total = Counter(
    "billing_credit_adjustments_total",
    "Credit ledger entries by entry type",
    labelnames=["entry_type"],
)

provider_errors_total = Counter(
    "billing_provider_errors_total",
    "Billing provider failures by operation",
    labelnames=["operation"],
)

errors_total = Counter(
    "billing_errors_total",
    "Errors by type",
    labelnames=["error_type", "endpoint"],
)


# ============================================================================
# HELPER FUNCTIONS
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
        method: HTTP method (GET, POST, etc.)
        endpoint: Normalized endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_webhook_event(event_type: str, outcome: str) -> None:
    """Track a webhook delivery (outcome: processed, idempotent, rejected)."""
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def track_usage_record(category: str, quantity: int, total_cost: int, deduplicated: bool) -> None:
    """Track a usage submission. Duplicates are counted but add no quantity."""
    outcome = "deduplicated" if deduplicated else "recorded"
    usage_records_total.labels(category=category, outcome=outcome).inc()

    if not deduplicated:
        usage_quantity_total.labels(category=category).inc(quantity)
        usage_cost_decimillicents_total.labels(category=category).inc(total_cost)


def track_credit_adjustment(entry_type: str) -> None:
    credit_adjustments_total.labels(entry_type=entry_type).inc()


def track_provider_error(operation: str) -> None:
    provider_errors_total.labels(operation=operation).inc()


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error class or category
        endpoint: Normalized endpoint path
    """
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
