"""
Service wiring for the billing API.

Services are built once in the application lifespan and shared by all
requests through get_services().
"""

import logging
from dataclasses import dataclass

from fastapi import HTTPException, status

from cutglue.billing.quota_middleware import QuotaEnforcer
from cutglue.billing.stripe_service import StripeService
from cutglue.billing.subscription_store import SubscriptionStore
from cutglue.billing.tiers import TierCatalog
from cutglue.billing.usage_ledger import UsageLedger
from cutglue.billing.webhooks import BillingEventProcessor
from cutglue.config import Settings
from cutglue.generation.client import GenerationClient
from cutglue.notifications.email import NotificationDispatcher, build_notifier
from cutglue.storage.database import BillingDatabase, get_billing_db, reset_billing_db

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: Settings
    db: BillingDatabase
    catalog: TierCatalog
    ledger: UsageLedger
    store: SubscriptionStore
    enforcer: QuotaEnforcer
    dispatcher: NotificationDispatcher
    processor: BillingEventProcessor
    stripe: StripeService
    generation: GenerationClient


_services: BillingServices | None = None


async def init_services(settings: Settings) -> BillingServices:
    """Build and register the global service container."""
    global _services

    db = await get_billing_db()
    catalog = TierCatalog(price_ids=settings.stripe.price_map)
    ledger = UsageLedger(db, catalog, billing_tz=settings.billing.tzinfo)
    store = SubscriptionStore(db)
    dispatcher = NotificationDispatcher(build_notifier(settings.email))

    _services = BillingServices(
        settings=settings,
        db=db,
        catalog=catalog,
        ledger=ledger,
        store=store,
        enforcer=QuotaEnforcer(ledger, store, catalog),
        dispatcher=dispatcher,
        processor=BillingEventProcessor(
            store, catalog, dispatcher, settings.stripe, settings.billing
        ),
        stripe=StripeService(settings.stripe, store, catalog),
        generation=GenerationClient(settings.generation),
    )
    return _services


async def close_services() -> None:
    """Flush queued notifications and release clients and the database."""
    global _services
    if _services is None:
        return

    await _services.dispatcher.drain()
    notifier_close = getattr(_services.dispatcher.notifier, "close", None)
    if notifier_close is not None:
        notifier_close()
    _services.generation.close()
    reset_billing_db()
    _services = None


def get_services() -> BillingServices:
    """FastAPI dependency returning the service container."""
    if _services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing services not initialized",
        )
    return _services
