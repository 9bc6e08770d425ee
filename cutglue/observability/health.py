"""
Health checks for liveness and readiness probes.

Provides:
- Liveness probe: process is up (no I/O)
- Readiness probe: billing database answers (critical); Stripe, email and
  the AI worker breaker are reported but never block readiness
- Detailed health status with component breakdown, cached for 5 seconds

Quota checks fail closed when the database is unavailable, so the
database is the only critical dependency.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pybreaker import CircuitBreaker
from pydantic import BaseModel, Field

from cutglue.observability.logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# HEALTH STATUS MODELS
# ============================================================================


class HealthStatus(str, Enum):
    """Health status enumeration."""

    HEALTHY = "healthy"  # All checks passed
    DEGRADED = "degraded"  # Some non-critical checks failed
    UNHEALTHY = "unhealthy"  # Critical checks failed


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    name: str = Field(description="Component name")
    status: HealthStatus = Field(description="Component health status")
    message: str | None = Field(default=None, description="Status message")
    latency_ms: float | None = Field(
        default=None, description="Health check latency in milliseconds"
    )
    last_check: datetime = Field(description="Last health check timestamp")
    metadata: dict[str, Any] | None = Field(
        default=None, description="Additional component metadata"
    )


class HealthCheckResponse(BaseModel):
    """Comprehensive health check response."""

    status: HealthStatus = Field(description="Overall health status")
    timestamp: datetime = Field(description="Check timestamp")
    uptime_seconds: float = Field(description="Service uptime in seconds")
    version: str = Field(description="Service version")
    components: list[ComponentHealth] = Field(description="Individual component health statuses")


class LivenessResponse(BaseModel):
    """Minimal liveness probe response."""

    status: str = Field(default="alive", description="Liveness status")
    timestamp: datetime = Field(description="Check timestamp")


class ReadinessResponse(BaseModel):
    """Readiness probe response with dependency checks."""

    status: HealthStatus = Field(description="Readiness status")
    timestamp: datetime = Field(description="Check timestamp")
    ready: bool = Field(description="Whether service is ready to accept traffic")
    components: list[ComponentHealth] = Field(description="Component health statuses")


# ============================================================================
# HEALTH CHECKER
# ============================================================================


class HealthChecker:
    """
    Health check coordinator.

    Args:
        version: Service version reported by the detailed check
        cache_ttl_seconds: How long a detailed check result is reused
    """

    def __init__(self, version: str = "0.1.0", cache_ttl_seconds: float = 5.0):
        self.start_time = time.time()
        self.version = version

        self._health_cache: HealthCheckResponse | None = None
        self._health_cache_time: float = 0.0
        self._health_cache_ttl = cache_ttl_seconds

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    async def check_liveness(self) -> LivenessResponse:
        """Liveness probe. Never touches a dependency."""
        return LivenessResponse(status="alive", timestamp=datetime.now(UTC))

    async def _components(
        self,
        billing_db=None,
        stripe_config=None,
        email_config=None,
        breakers: list[CircuitBreaker] | None = None,
    ) -> tuple[HealthStatus, list[ComponentHealth]]:
        components: list[ComponentHealth] = []
        overall_status = HealthStatus.HEALTHY

        if billing_db is not None:
            db_health = await self._check_database_health(billing_db)
            components.append(db_health)
            if db_health.status == HealthStatus.UNHEALTHY:
                overall_status = HealthStatus.UNHEALTHY

        non_critical: list[ComponentHealth] = []
        if stripe_config is not None:
            non_critical.append(
                self._check_configured(
                    "stripe",
                    configured=stripe_config.is_configured and bool(stripe_config.webhook_secret),
                    ok_message="Stripe API key and webhook secret configured",
                    missing_message="Stripe not fully configured (checkout or webhooks disabled)",
                )
            )
        if email_config is not None:
            non_critical.append(
                self._check_configured(
                    "email",
                    configured=email_config.is_configured,
                    ok_message="MailerSend configured",
                    missing_message="MailerSend not configured (emails are only logged)",
                )
            )
        for breaker in breakers or []:
            non_critical.append(self._check_breaker(breaker))

        components.extend(non_critical)
        if overall_status == HealthStatus.HEALTHY and any(
            c.status != HealthStatus.HEALTHY for c in non_critical
        ):
            overall_status = HealthStatus.DEGRADED

        return overall_status, components

    async def check_readiness(
        self,
        billing_db=None,
        stripe_config=None,
        email_config=None,
        breakers: list[CircuitBreaker] | None = None,
    ) -> ReadinessResponse:
        """
        Readiness probe.

        Ready when the billing database answers; other components only
        degrade the status.
        """
        overall_status, components = await self._components(
            billing_db, stripe_config, email_config, breakers
        )
        return ReadinessResponse(
            status=overall_status,
            timestamp=datetime.now(UTC),
            ready=overall_status != HealthStatus.UNHEALTHY,
            components=components,
        )

    async def check_health(
        self,
        billing_db=None,
        stripe_config=None,
        email_config=None,
        breakers: list[CircuitBreaker] | None = None,
    ) -> HealthCheckResponse:
        """Detailed health check for dashboards, cached for a few seconds."""
        cache_age = time.time() - self._health_cache_time
        if self._health_cache and cache_age < self._health_cache_ttl:
            logger.debug("Health check cache hit", cache_age_ms=cache_age * 1000)
            return self._health_cache

        overall_status, components = await self._components(
            billing_db, stripe_config, email_config, breakers
        )
        response = HealthCheckResponse(
            status=overall_status,
            timestamp=datetime.now(UTC),
            uptime_seconds=self.get_uptime_seconds(),
            version=self.version,
            components=components,
        )

        self._health_cache = response
        self._health_cache_time = time.time()
        return response

    async def _check_database_health(self, billing_db) -> ComponentHealth:
        start_time = time.perf_counter()

        try:
            await billing_db.ping()
            latency_ms = (time.perf_counter() - start_time) * 1000
            return ComponentHealth(
                name="billing_database",
                status=HealthStatus.HEALTHY,
                message="Database responsive",
                latency_ms=round(latency_ms, 2),
                last_check=datetime.now(UTC),
            )

        except Exception as e:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.error("Database health check failed", error=str(e), exc_info=True)
            return ComponentHealth(
                name="billing_database",
                status=HealthStatus.UNHEALTHY,
                message=f"Database check failed: {str(e)}",
                latency_ms=round(latency_ms, 2),
                last_check=datetime.now(UTC),
            )

    @staticmethod
    def _check_configured(
        name: str, configured: bool, ok_message: str, missing_message: str
    ) -> ComponentHealth:
        return ComponentHealth(
            name=name,
            status=HealthStatus.HEALTHY if configured else HealthStatus.DEGRADED,
            message=ok_message if configured else missing_message,
            last_check=datetime.now(UTC),
            metadata={"configured": configured},
        )

    @staticmethod
    def _check_breaker(breaker: CircuitBreaker) -> ComponentHealth:
        state = breaker.current_state
        return ComponentHealth(
            name=f"circuit_{breaker.name}",
            status=HealthStatus.HEALTHY if state == "closed" else HealthStatus.DEGRADED,
            message=f"Circuit {state}",
            last_check=datetime.now(UTC),
            metadata={"state": state, "fail_counter": breaker.fail_counter},
        )


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_health_checker: HealthChecker | None = None


def get_health_checker() -> HealthChecker:
    global _health_checker
    if _health_checker is None:
        from cutglue.config import get_settings

        _health_checker = HealthChecker(version=get_settings().logging.service_version)
    return _health_checker
