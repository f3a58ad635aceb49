"""
Observability middleware for automatic metric tracking.

Components:
- PrometheusMiddleware: Tracks all HTTP requests (latency, count, active)
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_ORGANIZATION_SEGMENT = re.compile(r"/organizations/[^/]+")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /api/v1/billing/organizations/org-123/usage -> /api/v1/billing/organizations/{org_id}/usage
        /api/v1/billing/webhooks/stripe -> unchanged
    """
    return _ORGANIZATION_SEGMENT.sub("/organizations/{org_id}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic Prometheus metric tracking.

    Tracks:
    - Request latency (histogram)
    - Request count (counter)
    - Active requests (gauge)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code

        except Exception as exc:
            logger.error(f"Request failed: {exc}", exc_info=True)
            track_error(error_type=type(exc).__name__, endpoint=endpoint)
            raise

        finally:
            duration_seconds = time.perf_counter() - start_time
            http_requests_active.labels(method=method, endpoint=endpoint).dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=duration_seconds,
            )

        return response
