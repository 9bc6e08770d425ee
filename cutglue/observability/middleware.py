"""
Observability middleware for automatic metric tracking.

Components:
- PrometheusMiddleware: tracks all HTTP requests (latency, count, active)
- ErrorTrackingMiddleware: classifies unhandled errors
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from cutglue.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_FEATURE_SEGMENT = re.compile(r"/(quota|usage|ai)/[a-z_]+")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /api/v1/billing/quota/ai_generation/check -> /api/v1/billing/quota/{feature}/check
        /api/v1/billing/webhooks -> unchanged
    """
    return _FEATURE_SEGMENT.sub(lambda m: f"/{m.group(1)}/{{feature}}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Track request latency, count and in-flight requests."""

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
            raise
        finally:
            http_requests_active.labels(method=method, endpoint=endpoint).dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=time.perf_counter() - start_time,
            )

        return response


class ErrorTrackingMiddleware(BaseHTTPMiddleware):
    """
    Classify errors that escape the exception handlers.

    Categories: validation, storage, stripe, downstream, internal.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            track_error(
                error_type=self._classify_error(exc),
                endpoint=normalize_endpoint(request.url.path),
            )
            raise

    def _classify_error(self, exc: Exception) -> str:
        exc_name = type(exc).__name__

        if "ValidationError" in exc_name or "ValueError" in exc_name:
            return "validation"
        if "StorageError" in exc_name or "OperationalError" in exc_name:
            return "storage"
        if "Stripe" in exc_name:
            return "stripe"
        if "Downstream" in exc_name or "Timeout" in exc_name:
            return "downstream"
        return "internal"
