"""
Pytest configuration and fixtures for the billing core.

Provides shared fixtures for:
- Temporary SQLite billing database
- Tier catalog with test price ids
- Usage ledger, subscription store and quota enforcer
- Webhook processor with a recording notifier
- Signed Stripe event builders
"""

import json
import time
import uuid
from datetime import date
from typing import Any

import pytest
import pytest_asyncio

from cutglue.billing.quota_middleware import QuotaEnforcer
from cutglue.billing.subscription_store import SubscriptionStore
from cutglue.billing.tiers import TierCatalog
from cutglue.billing.usage_ledger import UsageLedger
from cutglue.billing.webhooks import BillingEventProcessor
from cutglue.config import BillingConfig, StripeConfig
from cutglue.notifications.email import Notification, NotificationDispatcher
from cutglue.resilience.circuit_breakers import reset_all_breakers
from cutglue.storage.database import BillingDatabase
from cutglue.webhooks.signing import WebhookSigner

WEBHOOK_SECRET = "whsec_test_signing_secret_0123456789"

PRICE_IDS = {
    "starter": ("price_starter_m", "price_starter_y"),
    "maker": ("price_maker_m", "price_maker_y"),
    "pro": ("price_pro_m", "price_pro_y"),
}


class RecordingNotifier:
    """Notifier that keeps every notification instead of sending it."""

    def __init__(self, fail: bool = False):
        self.sent: list[Notification] = []
        self.fail = fail

    async def notify(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("mail provider down")
        self.sent.append(notification)


@pytest.fixture(autouse=True)
def _reset_breakers():
    reset_all_breakers()
    yield
    reset_all_breakers()


@pytest.fixture
def catalog() -> TierCatalog:
    return TierCatalog(price_ids=PRICE_IDS)


@pytest_asyncio.fixture
async def billing_db(tmp_path):
    db = BillingDatabase(str(tmp_path / "billing.db"), busy_timeout_seconds=2.0)
    await db.initialize()
    yield db
    db.close()


@pytest.fixture
def ledger(billing_db, catalog) -> UsageLedger:
    return UsageLedger(billing_db, catalog)


@pytest.fixture
def store(billing_db) -> SubscriptionStore:
    return SubscriptionStore(billing_db)


@pytest.fixture
def enforcer(ledger, store, catalog) -> QuotaEnforcer:
    return QuotaEnforcer(ledger, store, catalog)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier)


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(webhook_secret=WEBHOOK_SECRET, api_key="")


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(timezone="UTC", webhook_timeout_seconds=5.0)


@pytest.fixture
def processor(store, catalog, dispatcher, stripe_config, billing_config) -> BillingEventProcessor:
    return BillingEventProcessor(store, catalog, dispatcher, stripe_config, billing_config)


@pytest.fixture
def signer() -> WebhookSigner:
    return WebhookSigner(WEBHOOK_SECRET)


@pytest.fixture
def today() -> date:
    return date(2025, 3, 14)


# ============================================================================
# EVENT BUILDERS
# ============================================================================


def make_event(event_type: str, obj: dict[str, Any], event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def checkout_completed(
    user_id: str | None = "user_1",
    tier: str | None = "maker",
    customer: str = "cus_1",
    subscription: str = "sub_1",
    trial_days: int = 0,
    email: str = "maker@example.com",
    event_id: str | None = None,
) -> dict:
    metadata = {"trial_days": str(trial_days)}
    if user_id is not None:
        metadata["user_id"] = user_id
    if tier is not None:
        metadata["tier"] = tier
    return make_event(
        "checkout.session.completed",
        {
            "id": f"cs_{uuid.uuid4().hex[:10]}",
            "object": "checkout.session",
            "mode": "subscription",
            "customer": customer,
            "subscription": subscription,
            "customer_details": {"email": email, "name": "Test Maker"},
            "metadata": metadata,
        },
        event_id,
    )


def subscription_event(
    event_type: str = "customer.subscription.updated",
    subscription: str = "sub_1",
    customer: str = "cus_1",
    status: str = "active",
    price_id: str | None = "price_maker_m",
    period_start: int = 1_740_000_000,
    period_end: int = 1_742_592_000,
    cancel_at_period_end: bool = False,
    metadata: dict | None = None,
    trial_end: int | None = None,
    event_id: str | None = None,
) -> dict:
    items = [{"price": {"id": price_id}}] if price_id else []
    return make_event(
        event_type,
        {
            "id": subscription,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "trial_end": trial_end,
            "items": {"object": "list", "data": items},
            "metadata": metadata or {},
        },
        event_id,
    )


def invoice_event(
    event_type: str = "invoice.payment_failed",
    invoice: str = "in_1",
    customer: str = "cus_1",
    subscription: str | None = "sub_1",
    status: str = "open",
    amount_due: int = 1900,
    amount_paid: int = 0,
    event_id: str | None = None,
) -> dict:
    return make_event(
        event_type,
        {
            "id": invoice,
            "object": "invoice",
            "customer": customer,
            "subscription": subscription,
            "status": status,
            "amount_due": amount_due,
            "amount_paid": amount_paid,
            "currency": "usd",
            "period_start": 1_740_000_000,
            "period_end": 1_742_592_000,
            "hosted_invoice_url": f"https://invoice.stripe.com/i/{invoice}",
        },
        event_id,
    )


def signed(signer: WebhookSigner, event: dict, timestamp: int | None = None) -> tuple[bytes, str]:
    """Serialize an event and sign the exact bytes."""
    body = json.dumps(event)
    return body.encode("utf-8"), signer.sign_payload(body, timestamp)


async def deliver(processor: BillingEventProcessor, signer: WebhookSigner, event: dict):
    body, header = signed(signer, event)
    return await processor.handle_webhook(body, header)
