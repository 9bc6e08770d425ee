"""
Stripe API call-throughs for self-service billing.

Features:
- Hosted checkout sessions for paid tiers (with optional trial)
- Customer billing portal sessions
- Subscription cancellation (at period end or immediately)

Local subscription state is never written here; it changes only when the
resulting Stripe events arrive at the webhook.
"""

import logging
from dataclasses import dataclass

import stripe

from cutglue.billing.errors import StripeServiceError
from cutglue.billing.subscription_store import SubscriptionStore
from cutglue.billing.tiers import TierCatalog
from cutglue.config import StripeConfig
from cutglue.models.billing import BillingInterval, SubscriptionStatus, SubscriptionTier
from cutglue.observability.metrics import track_downstream_failure
from cutglue.resilience.circuit_breakers import (
    CircuitOpenError,
    call_with_breaker_async,
    get_stripe_breaker,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSessionResult:
    session_id: str
    url: str


@dataclass(frozen=True)
class CancellationResult:
    stripe_subscription_id: str
    status: str
    cancel_at_period_end: bool


class StripeService:
    """
    Stripe integration service.

    All calls go through the Stripe circuit breaker; failures surface as
    StripeServiceError.
    """

    def __init__(self, config: StripeConfig, store: SubscriptionStore, catalog: TierCatalog):
        """
        Initialize Stripe service.

        Args:
            config: Stripe configuration
            store: Subscription store (existing customer lookup)
            catalog: Tier catalog (price ids)
        """
        self.config = config
        self.store = store
        self.catalog = catalog
        self.breaker = get_stripe_breaker()

        if config.api_key:
            stripe.api_key = config.api_key
            logger.info("Stripe service initialized")
        else:
            logger.warning("Stripe API key not configured - checkout disabled")

    @property
    def is_enabled(self) -> bool:
        return self.config.is_configured

    async def _call(self, operation: str, func, *args, **params):
        if not self.is_enabled:
            raise StripeServiceError("Stripe not configured")
        try:
            return await call_with_breaker_async(self.breaker, func, *args, **params)
        except (stripe.StripeError, CircuitOpenError) as e:
            track_downstream_failure("stripe")
            logger.error(
                f"Stripe {operation} failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StripeServiceError(f"Stripe {operation} failed: {e}") from e

    async def create_checkout_session(
        self,
        user_id: str,
        email: str | None,
        tier: SubscriptionTier,
        interval: BillingInterval = BillingInterval.MONTHLY,
    ) -> CheckoutSessionResult:
        """
        Create a hosted checkout session for a paid tier.

        The session metadata carries user_id, tier and price_id so the
        checkout.session.completed webhook can attach the subscription to
        the user.

        Raises:
            ValueError: for the free tier or a tier without a configured price
            StripeServiceError: Stripe unavailable or rejected the request
        """
        if tier == SubscriptionTier.FREE:
            raise ValueError("The free tier has no checkout")

        price_id = self.catalog.definition(tier).price_id(interval)
        if not price_id:
            raise ValueError(f"No {interval.value} price configured for tier {tier.value}")

        trial_days = self.config.trial_period_days
        metadata = {
            "user_id": user_id,
            "tier": tier.value,
            "price_id": price_id,
            "trial_days": str(trial_days),
        }
        subscription_data: dict = {"metadata": {"user_id": user_id, "tier": tier.value}}
        if trial_days > 0:
            subscription_data["trial_period_days"] = trial_days

        params: dict = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self.config.checkout_success_url,
            "cancel_url": self.config.checkout_cancel_url,
            "client_reference_id": user_id,
            "metadata": metadata,
            "subscription_data": subscription_data,
        }

        customer = await self.store.get_customer_by_user(user_id)
        if customer:
            params["customer"] = customer.stripe_customer_id
        elif email:
            params["customer_email"] = email

        session = await self._call("checkout", stripe.checkout.Session.create, **params)

        logger.info(
            "Created checkout session",
            extra={"user_id": user_id, "tier": tier.value, "session_id": session.id},
        )
        return CheckoutSessionResult(session_id=session.id, url=session.url)

    async def create_portal_session(self, user_id: str) -> str | None:
        """
        Create a billing portal session.

        Returns:
            Portal URL, or None if the user has no Stripe customer yet
        """
        customer = await self.store.get_customer_by_user(user_id)
        if customer is None:
            return None

        session = await self._call(
            "portal",
            stripe.billing_portal.Session.create,
            customer=customer.stripe_customer_id,
            return_url=self.config.portal_return_url,
        )
        return session.url

    async def cancel_subscription(
        self, user_id: str, immediately: bool = False
    ) -> CancellationResult | None:
        """
        Cancel the user's current subscription in Stripe.

        By default the subscription runs to the end of the paid period
        (cancel_at_period_end); immediately=True ends it now. The local row
        is updated by the customer.subscription.updated/deleted webhook that
        follows, not here.

        Returns:
            CancellationResult, or None if the user has no live subscription

        Raises:
            StripeServiceError: Stripe unavailable or rejected the request
        """
        subscription = await self.store.get_subscription(user_id)
        if subscription is None or subscription.status == SubscriptionStatus.CANCELED:
            return None

        stripe_id = subscription.stripe_subscription_id
        if immediately:
            result = await self._call("cancel", stripe.Subscription.cancel, stripe_id)
        else:
            result = await self._call(
                "cancel", stripe.Subscription.modify, stripe_id, cancel_at_period_end=True
            )

        logger.info(
            "Requested subscription cancellation",
            extra={
                "user_id": user_id,
                "stripe_subscription_id": stripe_id,
                "immediately": immediately,
                "status": result.status,
            },
        )
        return CancellationResult(
            stripe_subscription_id=stripe_id,
            status=result.status,
            cancel_at_period_end=bool(getattr(result, "cancel_at_period_end", False)),
        )
