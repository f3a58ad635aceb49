"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- middleware.py: Request metrics with normalized endpoints
- logging.py: Structured JSON logging with request context
- logging_middleware.py: Request-scoped logging context for FastAPI
- request_limits.py: Request body size cap
"""

from src.observability.metrics import (
    track_credit_adjustment,
    track_error,
    track_provider_error,
    track_request,
    track_usage_record,
    track_webhook_event,
)

__all__ = [
    "track_request",
    "track_webhook_event",
    "track_usage_record",
    "track_credit_adjustment",
    "track_provider_error",
    "track_error",
]
