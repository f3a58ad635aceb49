"""
Request size limiting middleware for DoS protection.

Prevents memory exhaustion from oversized payloads. Webhook bodies are read
in full for signature verification, so they are capped before reading.
"""

import logging
from collections.abc import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce request body size limits.

    Configuration:
        max_body_size: Maximum request body size in bytes (default: 1MB)
    """

    def __init__(self, app, max_body_size: int = 1024 * 1024):
        super().__init__(app)
        self.max_body_size = max_body_size

        logger.info(
            f"Request size limit middleware enabled (max: {max_body_size / 1024:.0f}KB)"
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")

        if content_length and content_length.isdigit():
            content_length_int = int(content_length)

            if content_length_int > self.max_body_size:
                logger.warning(
                    "Request body too large",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "content_length": content_length_int,
                        "max_allowed": self.max_body_size,
                    },
                )

                return JSONResponse(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    content={
                        "detail": "Request body too large",
                        "max_size_bytes": self.max_body_size,
                        "received_size_bytes": content_length_int,
                    },
                )

        return await call_next(request)
