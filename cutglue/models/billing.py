"""
Billing domain models: tiers, features, usage and local subscription state.

Subscription, customer and invoice rows mirror Stripe objects; the usage
ledger is owned locally.
"""

from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SubscriptionTier(str, Enum):
    """Subscription tier for quota management."""

    FREE = "free"
    STARTER = "starter"
    MAKER = "maker"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Local subscription status (a reduced set of Stripe's statuses)."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE})


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    FAILED = "failed"
    UNCOLLECTIBLE = "uncollectible"
    VOID = "void"


class Feature(str, Enum):
    """Metered features."""

    AI_GENERATION = "ai_generation"
    AI_ANALYSIS = "ai_analysis"
    TEMPLATE_DOWNLOAD = "template_download"
    EXPORT_OPERATION = "export_operation"
    PROJECT_CREATION = "project_creation"


class Capability(str, Enum):
    """Boolean entitlements that are not metered."""

    PREMIUM_TEMPLATES = "premium_templates"
    GCODE_GENERATION = "gcode_generation"
    API_ACCESS = "api_access"
    COMMERCIAL_LICENSE = "commercial_license"
    ADVANCED_EXPORT = "advanced_export"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class UsageRecord(BaseModel):
    """
    Usage counters for one user, feature and calendar day.

    used_this_month includes used_today.
    """

    user_id: str
    feature: Feature
    usage_date: date = Field(description="Calendar day in the billing timezone")
    used_today: int = Field(default=0, ge=0)
    used_this_month: int = Field(default=0, ge=0)
    last_reset_at: datetime | None = Field(default=None)


class UsageEvent(BaseModel):
    """One recorded use, kept for auditing and dispute handling."""

    id: int
    user_id: str
    feature: Feature
    quantity: int = Field(default=1, ge=1)
    usage_date: date
    recorded_at: datetime
    metadata: dict[str, Any] | None = None


class Subscription(BaseModel):
    """Local mirror of a Stripe subscription."""

    id: int
    user_id: str | None = Field(default=None, description="Unknown until checkout attaches it")
    stripe_customer_id: str
    stripe_subscription_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None
    canceled_at: datetime | None = None
    last_event_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES


class BillingCustomer(BaseModel):
    """Mapping between an application user and a Stripe customer."""

    stripe_customer_id: str
    user_id: str
    email: str | None = None
    name: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Invoice(BaseModel):
    stripe_invoice_id: str
    user_id: str | None = None
    stripe_customer_id: str
    stripe_subscription_id: str | None = None
    amount_due: int = Field(default=0, ge=0, description="Cents")
    amount_paid: int = Field(default=0, ge=0, description="Cents")
    currency: str = "usd"
    status: InvoiceStatus
    period_start: datetime | None = None
    period_end: datetime | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None


class WebhookEventRecord(BaseModel):
    """Idempotency log entry for a Stripe event."""

    event_id: str
    event_type: str
    received_at: datetime
    processed: bool = False
    processed_at: datetime | None = None
    error_message: str | None = None
    attempts: int = 0


class FeatureUsage(BaseModel):
    """Dashboard snapshot of one feature. -1 limits mean unlimited."""

    feature: Feature
    used_today: int
    used_this_month: int
    daily_limit: int
    monthly_limit: int
    remaining_today: int | None = Field(description="None when unlimited")
    remaining_this_month: int | None = Field(description="None when unlimited")


class UsageSummary(BaseModel):
    user_id: str
    tier: SubscriptionTier
    usage_date: date
    features: list[FeatureUsage]
