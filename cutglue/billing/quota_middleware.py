"""
Quota enforcement.

Gates metered operations on the caller's effective tier and consumes quota
atomically before the operation is dispatched.

Policy:
- check and consume happen in one SQL statement (UsageLedger.try_increment),
  so concurrent requests can never push usage past a finite limit
- quota is charged before the guarded operation runs and is not refunded
  when that operation fails afterwards
- storage errors propagate, so callers fail closed
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from fastapi import status
from fastapi.responses import JSONResponse

from cutglue.billing.errors import BillingError, DownstreamServiceError, QuotaExceededError
from cutglue.billing.subscription_store import SubscriptionStore
from cutglue.billing.tiers import UNLIMITED, QuotaLimit, TierCatalog
from cutglue.billing.usage_ledger import UsageLedger
from cutglue.models.billing import Feature, SubscriptionTier, UsageRecord
from cutglue.observability.metrics import track_quota_decision, track_usage_recorded

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class QuotaAllowed:
    tier: SubscriptionTier
    feature: str
    limit: QuotaLimit
    usage: UsageRecord | None

    allowed = True


@dataclass(frozen=True)
class QuotaDenied:
    tier: SubscriptionTier
    feature: str
    limit: int
    used: int
    window: str  # "daily" or "monthly"
    reset_at: datetime

    allowed = False

    def to_error(self) -> QuotaExceededError:
        return QuotaExceededError(
            feature=self.feature,
            tier=self.tier.value,
            limit=self.limit,
            used=self.used,
            window=self.window,
            reset_at=self.reset_at,
        )


QuotaDecision = QuotaAllowed | QuotaDenied


class QuotaEnforcer:
    """
    Check and consume per-feature quota for a user.

    Args:
        ledger: Usage ledger
        store: Subscription store (effective tier lookup)
        catalog: Tier catalog
    """

    def __init__(self, ledger: UsageLedger, store: SubscriptionStore, catalog: TierCatalog):
        self.ledger = ledger
        self.store = store
        self.catalog = catalog

    async def resolve_tier(self, user_id: str) -> SubscriptionTier:
        """Effective tier: free unless the current subscription is trialing or active."""
        subscription = await self.store.get_subscription(user_id)
        return self.catalog.effective_tier(subscription)

    def _denial(
        self, tier: SubscriptionTier, feature: str, limit: QuotaLimit, usage: UsageRecord | None
    ) -> QuotaDenied | None:
        used_today = usage.used_today if usage else 0
        used_month = usage.used_this_month if usage else 0
        day = usage.usage_date if usage else None

        if limit.daily != UNLIMITED and used_today >= limit.daily:
            return QuotaDenied(
                tier=tier,
                feature=feature,
                limit=limit.daily,
                used=used_today,
                window="daily",
                reset_at=self.ledger.reset_at("daily", day),
            )
        if limit.monthly != UNLIMITED and used_month >= limit.monthly:
            return QuotaDenied(
                tier=tier,
                feature=feature,
                limit=limit.monthly,
                used=used_month,
                window="monthly",
                reset_at=self.ledger.reset_at("monthly", day),
            )
        return None

    async def check_quota(self, user_id: str, feature: "Feature | str") -> QuotaDecision:
        """
        Decide whether one more use would be allowed. Consumes nothing.

        Never allows when usage has reached a finite limit; always allows
        when both windows are unlimited.
        """
        tier = await self.resolve_tier(user_id)
        limit = self.catalog.limit_for(tier, feature)

        try:
            feature = Feature(feature)
        except ValueError:
            track_quota_decision(tier.value, "unknown", allowed=False)
            return self._denial(tier, str(feature), limit, None)

        if limit.is_unlimited:
            track_quota_decision(tier.value, feature.value, allowed=True)
            return QuotaAllowed(tier=tier, feature=feature.value, limit=limit, usage=None)

        usage = await self.ledger.get_usage(user_id, feature)
        denial = self._denial(tier, feature.value, limit, usage)
        track_quota_decision(tier.value, feature.value, allowed=denial is None)
        if denial:
            return denial
        return QuotaAllowed(tier=tier, feature=feature.value, limit=limit, usage=usage)

    async def record_usage(
        self,
        user_id: str,
        feature: Feature,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> UsageRecord:
        """
        Record uses unconditionally (for operations already performed).

        Limits are not applied; the counters and the audit row are written
        together.
        """
        feature = Feature(feature)
        tier = await self.resolve_tier(user_id)
        record = await self.ledger.increment_usage(
            user_id, feature, quantity=quantity, metadata=metadata
        )
        track_usage_recorded(tier.value, feature.value, quantity)
        return record

    async def enforce(self, user_id: str, feature: "Feature | str") -> UsageRecord:
        """
        Check and consume one use in a single atomic step.

        Returns:
            UsageRecord: post-increment counters

        Raises:
            QuotaExceededError: if a finite daily or monthly limit is reached
            StorageError: if the ledger is unavailable
        """
        tier = await self.resolve_tier(user_id)
        limit = self.catalog.limit_for(tier, feature)

        try:
            feature = Feature(feature)
        except ValueError:
            track_quota_decision(tier.value, "unknown", allowed=False)
            raise self._denial(tier, str(feature), limit, None).to_error()

        record = await self.ledger.try_increment(user_id, feature, limit)
        if record is None:
            usage = await self.ledger.get_usage(user_id, feature)
            # The row may have changed between the refused increment and this
            # read; fall back to the daily window.
            denial = self._denial(tier, feature.value, limit, usage) or QuotaDenied(
                tier=tier,
                feature=feature.value,
                limit=limit.daily,
                used=usage.used_today,
                window="daily",
                reset_at=self.ledger.reset_at("daily", usage.usage_date),
            )
            track_quota_decision(tier.value, feature.value, allowed=False)
            logger.warning(
                "Quota exceeded",
                extra={
                    "user_id": user_id,
                    "tier": tier.value,
                    "feature": feature.value,
                    "window": denial.window,
                    "limit": denial.limit,
                    "used": denial.used,
                },
            )
            raise denial.to_error()

        track_quota_decision(tier.value, feature.value, allowed=True)
        track_usage_recorded(tier.value, feature.value)
        return record

    async def guarded(
        self,
        user_id: str,
        feature: "Feature | str",
        operation: Callable[[], Awaitable[T]],
        validate: Callable[[], Any] | None = None,
    ) -> T:
        """
        Run a metered operation.

        Order: pre-flight validation (failure consumes nothing), then
        enforce(), then the operation.

        Raises:
            QuotaExceededError: quota exhausted (operation not run)
            DownstreamServiceError: operation failed after quota was consumed
        """
        if validate is not None:
            result = validate()
            if inspect.isawaitable(result):
                await result

        await self.enforce(user_id, feature)

        try:
            return await operation()
        except BillingError:
            raise
        except Exception as e:
            logger.error(
                "Metered operation failed after quota was consumed",
                extra={"user_id": user_id, "feature": str(feature), "error": str(e)},
            )
            raise DownstreamServiceError(f"Operation failed: {e}") from e


def quota_exceeded_response(exc: QuotaExceededError, upgrade_url: str) -> JSONResponse:
    """429 response for an exhausted quota."""
    retry_after = max(1, int((exc.reset_at - datetime.now(exc.reset_at.tzinfo)).total_seconds()))
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": exc.error_code,
            "message": str(exc),
            "usage": {
                "feature": exc.feature,
                "tier": exc.tier,
                "window": exc.window,
                "limit": exc.limit,
                "used": exc.used,
                "reset_at": exc.reset_at.isoformat(),
            },
            "upgrade_url": upgrade_url,
        },
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": exc.reset_at.isoformat(),
        },
    )
