"""
Billing exception hierarchy.

Each error carries the HTTP status and machine-readable code the API layer
maps it to.
"""

from datetime import datetime


class BillingError(Exception):
    """Base class for billing errors."""

    status_code = 500
    error_code = "billing_error"


class InvalidSignatureError(BillingError):
    """Webhook signature missing, malformed, stale or not matching the secret."""

    status_code = 400
    error_code = "invalid_signature"


class InvalidPayloadError(BillingError):
    """Webhook body passed verification but is not a decodable event."""

    status_code = 400
    error_code = "invalid_payload"


class WebhookConfigurationError(BillingError):
    """No webhook signing secret configured."""

    status_code = 500
    error_code = "webhook_not_configured"


class EventDataError(BillingError):
    """Event lacks data needed to apply it. Recorded and acknowledged."""

    status_code = 200
    error_code = "event_data_error"


class WebhookProcessingError(BillingError):
    """Applying an event failed; Stripe will redeliver."""

    status_code = 500
    error_code = "webhook_processing_failed"


class WebhookTimeoutError(BillingError):
    """Processing exceeded the webhook budget."""

    status_code = 503
    error_code = "webhook_timeout"


class StorageError(BillingError):
    """Persistence layer failure. Quota checks fail closed on this."""

    status_code = 503
    error_code = "storage_unavailable"

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class QuotaExceededError(BillingError):
    """A finite daily or monthly limit has been reached."""

    status_code = 429
    error_code = "quota_exceeded"

    def __init__(
        self,
        feature: str,
        tier: str,
        limit: int,
        used: int,
        window: str,
        reset_at: datetime,
    ):
        self.feature = feature
        self.tier = tier
        self.limit = limit
        self.used = used
        self.window = window
        self.reset_at = reset_at
        super().__init__(
            f"{window.capitalize()} limit of {limit} reached for {feature} on the {tier} plan"
        )


class DownstreamServiceError(BillingError):
    """The operation guarded by a quota failed after quota was consumed."""

    status_code = 502
    error_code = "downstream_failed"


class StripeServiceError(BillingError):
    """Stripe API call failed or the Stripe circuit is open."""

    status_code = 502
    error_code = "stripe_unavailable"
