"""
FastAPI application for the billing service.

Provides REST API for:
- Stripe webhook ingestion
- Organization billing settings, checkout and portal sessions
- Usage summaries and credit ledger listings
- Health and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from src.billing.context import create_billing_provider
from src.billing.errors import BillingError, InternalError
from src.billing.ports import BillingProvider, Clock
from src.config import Settings, get_settings
from src.observability.logging import configure_logging, get_logger
from src.observability.logging_middleware import StructuredLoggingMiddleware
from src.observability.metrics import generate_metrics, track_error
from src.observability.middleware import PrometheusMiddleware, normalize_endpoint
from src.observability.request_limits import RequestSizeLimitMiddleware
from src.routers import billing_router
from src.storage.database import BillingDatabase, get_billing_db

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    database: BillingDatabase | None = None,
    provider: BillingProvider | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (None = environment)
        database: Billing database (None = file-backed database from settings,
            opened at startup)
        provider: Billing provider (None = selected from settings)
        clock: Time source (None = system clock)
    """
    settings = settings or get_settings()

    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown:
        - Open and migrate the billing database
        - Close the database connection on shutdown
        """
        logger.info("=== Billing Service Starting ===", environment=settings.logging.environment)

        if app.state.billing_db is None:
            app.state.billing_db = await get_billing_db()
        else:
            await app.state.billing_db.initialize()
        logger.info("✓ Billing database ready")

        try:
            yield  # Application runs here
        finally:
            logger.info("=== Shutting down ===")
            await app.state.billing_db.close()
            logger.info("=== Shutdown complete ===")

    app = FastAPI(
        title="Billing API",
        description="Subscription billing, usage metering and credit ledger",
        version=settings.logging.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.billing_db = database
    app.state.billing_provider = provider or create_billing_provider(settings)
    app.state.clock = clock

    # Order matters (processed in reverse order of registration):
    # 1. RequestSizeLimitMiddleware (innermost) - Rejects oversized requests first
    # 2. PrometheusMiddleware - Tracks metrics
    # 3. StructuredLoggingMiddleware (outermost) - Sets request context
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        RequestSizeLimitMiddleware,
        max_body_size=settings.service.max_webhook_body_size,
    )

    app.include_router(billing_router)

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        """Map the billing error taxonomy to HTTP status codes."""
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "Billing request rejected",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error=exc.message,
        )
        track_error(error_type=exc.code, endpoint=normalize_endpoint(request.url.path))
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled error",
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        error = InternalError("Internal server error")
        return JSONResponse(
            status_code=error.status_code,
            content={"detail": error.message, "code": error.code},
        )

    @app.get("/health", tags=["Health"])
    async def health():
        """Liveness check. Performs no I/O."""
        return {
            "status": "ok",
            "service": settings.logging.service_name,
            "provider": type(app.state.billing_provider).__name__,
        }

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Prometheus metrics endpoint (exposition format)."""
        metrics_data, content_type = generate_metrics()
        return Response(content=metrics_data, media_type=content_type)

    @app.get("/", status_code=status.HTTP_200_OK, include_in_schema=False)
    async def root():
        return {
            "service": "Billing API",
            "version": settings.logging.service_version,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        log_level=settings.service.log_level.lower(),
    )
