"""
FastAPI middleware for structured logging with request context.

Automatically:
- Generates request_id for each request
- Extracts trace_id from X-Trace-ID header (distributed tracing)
- Injects organization_id from billing organization routes
- Logs request/response with latency
- Propagates context to all log calls
"""

import re
import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)

_ORGANIZATION_PATH = re.compile(r"/organizations/(?P<organization_id>[^/]+)")


def organization_id_from_path(path: str) -> str | None:
    match = _ORGANIZATION_PATH.search(path)
    return match.group("organization_id") if match else None


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic request logging with structured context.

    Headers:
    - X-Request-ID: Client-provided request ID (optional, auto-generated if missing)
    - X-Trace-ID: Distributed trace ID (optional, auto-generated if missing)
    - Returns X-Request-ID and X-Trace-ID in response headers

    Logging output:
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "HTTP request completed",
          "request_id": "req_abc123",
          "trace_id": "trace_xyz789",
          "organization_id": "org-acme",
          "method": "POST",
          "path": "/api/v1/billing/organizations/org-acme/checkout-session",
          "status_code": 200,
          "latency_ms": 182.4,
          "service": "billing-engine"
        }
    """

    EXCLUDED_PATHS = {"/health", "/metrics", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"
        path = request.url.path

        with RequestContext(
            request_id=request_id,
            trace_id=trace_id,
            organization_id=organization_id_from_path(path),
        ):
            should_log = path not in self.EXCLUDED_PATHS
            start_time = time.perf_counter()

            if should_log:
                logger.info("HTTP request started", method=request.method, path=path)

            try:
                response = await call_next(request)
            except Exception as exc:
                latency_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=path,
                    latency_ms=round(latency_ms, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            latency_ms = (time.perf_counter() - start_time) * 1000
            if should_log:
                logger.info(
                    "HTTP request completed",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    latency_ms=round(latency_ms, 2),
                )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id
            return response
