"""
Billing and subscription management.

- tiers: static quota limits, prices and capabilities per tier
- usage_ledger: per-user, per-feature, per-day usage counters
- quota_middleware: check-and-consume gate for metered operations
- subscription_store: local mirror of Stripe state and the event log
- webhooks: Stripe webhook event processor
- stripe_service: checkout and billing portal sessions

Only the leaf modules are re-exported here; the storage layer imports
cutglue.billing.errors.
"""

from cutglue.billing.errors import (
    BillingError,
    DownstreamServiceError,
    EventDataError,
    InvalidPayloadError,
    InvalidSignatureError,
    QuotaExceededError,
    StorageError,
    StripeServiceError,
    WebhookConfigurationError,
    WebhookProcessingError,
    WebhookTimeoutError,
)
from cutglue.billing.tiers import UNLIMITED, QuotaLimit, TierCatalog, get_tier_catalog

__all__ = [
    "BillingError",
    "DownstreamServiceError",
    "EventDataError",
    "InvalidPayloadError",
    "InvalidSignatureError",
    "QuotaExceededError",
    "StorageError",
    "StripeServiceError",
    "WebhookConfigurationError",
    "WebhookProcessingError",
    "WebhookTimeoutError",
    "UNLIMITED",
    "QuotaLimit",
    "TierCatalog",
    "get_tier_catalog",
]
