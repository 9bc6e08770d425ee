"""
FastAPI application for the CutGlue billing core.

Provides REST API for:
- Stripe webhook processing
- Quota checks and usage metering
- Subscription, usage and invoice reads
- Quota-guarded AI operations
- Health monitoring and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cutglue.billing.errors import BillingError, QuotaExceededError
from cutglue.billing.quota_middleware import quota_exceeded_response
from cutglue.config import get_settings
from cutglue.observability.health import (
    HealthCheckResponse,
    LivenessResponse,
    ReadinessResponse,
    get_health_checker,
)
from cutglue.observability.logging import configure_logging, get_logger
from cutglue.observability.logging_middleware import (
    SlowRequestLogger,
    StructuredLoggingMiddleware,
)
from cutglue.observability.metrics import generate_metrics
from cutglue.observability.middleware import ErrorTrackingMiddleware, PrometheusMiddleware
from cutglue.resilience.circuit_breakers import (
    get_email_breaker,
    get_generation_breaker,
    get_stripe_breaker,
)
from cutglue.routers import billing_router, generation_router
from cutglue.services import close_services, get_services, init_services

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup opens the billing database (creating the schema) and wires the
    services; shutdown flushes queued notifications and closes clients.
    """
    settings = get_settings()

    logger.info("=== CutGlue Billing Service Starting ===")

    try:
        services = await init_services(settings)
        logger.info(
            "Billing services ready",
            database=settings.database.path,
            billing_timezone=settings.billing.timezone,
            stripe_enabled=services.stripe.is_enabled,
            email_enabled=settings.email.is_configured,
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")
        await close_services()
        logger.info("=== Shutdown complete ===")


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map billing errors to {"error": code, "message": ...}."""
    if exc.status_code >= 500:
        logger.error(
            "Billing error",
            path=request.url.path,
            error_code=exc.error_code,
            error=str(exc),
        )
    else:
        logger.warning(
            "Billing request rejected",
            path=request.url.path,
            error_code=exc.error_code,
            error=str(exc),
        )

    headers = {"Retry-After": "5"} if exc.status_code == status.HTTP_503_SERVICE_UNAVAILABLE else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "message": str(exc)},
        headers=headers,
    )


async def quota_error_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
    logger.info(
        "Quota exceeded",
        path=request.url.path,
        feature=exc.feature,
        tier=exc.tier,
        window=exc.window,
    )
    return quota_exceeded_response(exc, get_settings().billing.upgrade_url)


def create_app() -> FastAPI:
    """Build the FastAPI application from current settings."""
    settings = get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
    )

    app = FastAPI(
        title="CutGlue Billing API",
        description="Usage metering and Stripe billing for CutGlueBuild",
        version=settings.logging.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    cors_origins = settings.cors.origins_list
    if "*" in cors_origins:
        logger.warning("CORS allows ALL origins (*) - configure CORS_ALLOWED_ORIGINS for production")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=settings.cors.methods_list,
        allow_headers=settings.cors.headers_list,
        max_age=settings.cors.max_age,
    )

    # Processed in reverse order of registration:
    # ErrorTracking (innermost) -> Prometheus -> SlowRequest -> StructuredLogging (outermost)
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(
        SlowRequestLogger,
        warning_threshold_ms=settings.logging.slow_request_warning_ms,
        error_threshold_ms=settings.logging.slow_request_error_ms,
    )
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(ErrorTrackingMiddleware)

    app.add_exception_handler(QuotaExceededError, quota_error_handler)
    app.add_exception_handler(BillingError, billing_error_handler)

    app.include_router(billing_router)
    app.include_router(generation_router)

    _register_system_routes(app)
    return app


def _register_system_routes(app: FastAPI) -> None:
    breakers = [get_stripe_breaker(), get_email_breaker(), get_generation_breaker()]

    @app.get("/health/liveness", response_model=LivenessResponse, tags=["Health"])
    async def liveness_probe():
        return await get_health_checker().check_liveness()

    @app.get(
        "/health/readiness",
        response_model=ReadinessResponse,
        tags=["Health"],
        responses={
            200: {"description": "Service is ready"},
            503: {"description": "Service is not ready"},
        },
    )
    async def readiness_probe(response: Response):
        """
        Readiness probe.

        HTTP 200 when the billing database answers (healthy or degraded),
        HTTP 503 otherwise.
        """
        services = get_services()
        readiness = await get_health_checker().check_readiness(
            billing_db=services.db,
            stripe_config=services.settings.stripe,
            email_config=services.settings.email,
            breakers=breakers,
        )
        if not readiness.ready:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

        logger.debug(
            "Readiness probe completed",
            ready=readiness.ready,
            status=readiness.status.value,
            num_components=len(readiness.components),
        )
        return readiness

    @app.get("/health", response_model=HealthCheckResponse, tags=["Health"])
    async def comprehensive_health_check():
        """Detailed health of all components (cached for 5 seconds)."""
        services = get_services()
        return await get_health_checker().check_health(
            billing_db=services.db,
            stripe_config=services.settings.stripe,
            email_config=services.settings.email,
            breakers=breakers,
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Prometheus metrics in exposition format."""
        metrics_data, content_type = generate_metrics()
        return Response(content=metrics_data, media_type=content_type)

    @app.get("/", tags=["System"])
    async def root():
        return {
            "service": "CutGlue Billing API",
            "version": app.version,
            "docs": "/docs",
            "health": "/health",
        }


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "cutglue.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        workers=settings.service.workers,
        log_level=settings.logging.level.lower(),
    )
