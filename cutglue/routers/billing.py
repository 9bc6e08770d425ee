"""
Billing API endpoints.

Provides:
- Stripe webhook receiver (authenticated by the Stripe signature)
- Subscription, usage and invoice reads for the calling user
- Quota check and usage recording for metered features
- Checkout and billing portal sessions, subscription cancellation

Security:
- Every route except the webhook requires the service key and X-User-ID
- The user id always comes from the authenticated request, never the body
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from cutglue.auth.dependencies import get_current_user_id
from cutglue.billing.quota_middleware import QuotaDenied
from cutglue.models.billing import (
    BillingInterval,
    Capability,
    Feature,
    Invoice,
    Subscription,
    SubscriptionTier,
    UsageEvent,
    UsageRecord,
    UsageSummary,
)
from cutglue.services import BillingServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["Billing"])


# Response models
class WebhookResponse(BaseModel):
    received: bool = True
    event_id: str
    outcome: str
    message: str = ""


class SubscriptionResponse(BaseModel):
    """Effective tier plus the stored subscription (if any)."""

    user_id: str
    tier: SubscriptionTier = Field(description="Effective tier whose limits apply")
    display_name: str
    capabilities: list[Capability]
    subscription: Optional[Subscription]


class QuotaCheckResponse(BaseModel):
    allowed: bool
    tier: SubscriptionTier
    feature: str
    window: Optional[str] = None
    limit: Optional[int] = None
    used: Optional[int] = None
    reset_at: Optional[datetime] = None
    upgrade_url: Optional[str] = None


class RecordUsageRequest(BaseModel):
    quantity: int = Field(default=1, ge=1, le=10_000)
    metadata: Optional[dict[str, Any]] = None


class CancelSubscriptionRequest(BaseModel):
    immediately: bool = False


class CancelSubscriptionResponse(BaseModel):
    stripe_subscription_id: str
    status: str
    cancel_at_period_end: bool


class CheckoutRequest(BaseModel):
    tier: SubscriptionTier
    interval: BillingInterval = BillingInterval.MONTHLY
    email: Optional[str] = Field(default=None, max_length=254)


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class PortalResponse(BaseModel):
    url: str


# Webhook


@router.post("/webhooks", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: BillingServices = Depends(get_services),
) -> WebhookResponse:
    """
    Receive a Stripe event.

    Errors are raised as BillingError subclasses and mapped to HTTP by the
    application's exception handlers (400 bad signature or payload, 500/503
    so Stripe redelivers).
    """
    raw_body = await request.body()
    ack = await services.processor.handle_webhook(raw_body, stripe_signature)
    return WebhookResponse(event_id=ack.event_id, outcome=ack.outcome.value, message=ack.message)


# Caller-scoped resources


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> SubscriptionResponse:
    subscription = await services.store.get_subscription(user_id)
    tier = services.catalog.effective_tier(subscription)
    definition = services.catalog.definition(tier)
    return SubscriptionResponse(
        user_id=user_id,
        tier=tier,
        display_name=definition.display_name,
        capabilities=sorted(definition.capabilities, key=lambda c: c.value),
        subscription=subscription,
    )


@router.delete("/subscription", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    body: Optional[CancelSubscriptionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> CancelSubscriptionResponse:
    """
    Cancel the caller's subscription (at period end unless immediately).

    Local state follows once Stripe delivers the resulting webhook.

    Raises:
        404: no live subscription
        502: Stripe unavailable
    """
    body = body or CancelSubscriptionRequest()
    result = await services.stripe.cancel_subscription(user_id, immediately=body.immediately)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active subscription for this user",
        )
    return CancelSubscriptionResponse(
        stripe_subscription_id=result.stripe_subscription_id,
        status=result.status,
        cancel_at_period_end=result.cancel_at_period_end,
    )


@router.get("/usage", response_model=UsageSummary)
async def get_usage(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> UsageSummary:
    """Usage snapshot for dashboards. Enforcement does not read this."""
    tier = await services.enforcer.resolve_tier(user_id)
    return await services.ledger.usage_summary(user_id, tier)


@router.get("/invoices", response_model=list[Invoice])
async def list_invoices(
    limit: int = 24,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> list[Invoice]:
    return await services.store.list_invoices(user_id, limit=max(1, min(limit, 100)))


# Metering


@router.post("/quota/{feature}/check", response_model=QuotaCheckResponse)
async def check_quota(
    feature: str,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> QuotaCheckResponse:
    """
    Would one more use be allowed? Consumes nothing.

    Always 200; a denial is reported in the body.
    """
    decision = await services.enforcer.check_quota(user_id, feature)
    if isinstance(decision, QuotaDenied):
        return QuotaCheckResponse(
            allowed=False,
            tier=decision.tier,
            feature=decision.feature,
            window=decision.window,
            limit=decision.limit,
            used=decision.used,
            reset_at=decision.reset_at,
            upgrade_url=services.settings.billing.upgrade_url,
        )
    return QuotaCheckResponse(allowed=True, tier=decision.tier, feature=decision.feature)


@router.post("/usage/{feature}", response_model=UsageRecord)
async def record_usage(
    feature: Feature,
    body: Optional[RecordUsageRequest] = None,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> UsageRecord:
    """Record uses of a feature the caller has already performed (default one)."""
    body = body or RecordUsageRequest()
    return await services.enforcer.record_usage(
        user_id, feature, quantity=body.quantity, metadata=body.metadata
    )


@router.get("/usage/{feature}/records", response_model=list[UsageEvent])
async def list_usage_records(
    feature: Feature,
    limit: int = 50,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> list[UsageEvent]:
    """Recent per-use audit rows for the caller, newest first."""
    return await services.ledger.list_usage_events(
        user_id, feature, limit=max(1, min(limit, 500))
    )


# Stripe sessions


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> CheckoutResponse:
    """
    Start a hosted checkout for a paid tier.

    Raises:
        400: free tier or no price configured for the tier and interval
        502: Stripe unavailable
    """
    try:
        session = await services.stripe.create_checkout_session(
            user_id, body.email, body.tier, body.interval
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return CheckoutResponse(session_id=session.session_id, url=session.url)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> PortalResponse:
    url = await services.stripe.create_portal_session(user_id)
    if url is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No billing account for this user",
        )
    return PortalResponse(url=url)
