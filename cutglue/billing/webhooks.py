"""
Stripe webhook event processor.

Pipeline per delivery:
1. verify the Stripe-Signature header against the raw body
2. decode the event into the BillingEvent union
3. record receipt in the idempotency log
4. in one transaction: skip if already processed, else apply the handler
   and mark the event processed
5. after commit, queue notifications

Handled events:
- checkout.session.completed
- customer.subscription.created / updated / deleted / trial_will_end
- invoice.created / updated / finalized / paid / payment_succeeded / payment_failed
- customer.created / updated / deleted

Anything else is marked processed and acknowledged as ignored.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import stripe
from pydantic import ValidationError

from cutglue.billing.errors import (
    EventDataError,
    InvalidPayloadError,
    InvalidSignatureError,
    StorageError,
    WebhookConfigurationError,
    WebhookProcessingError,
    WebhookTimeoutError,
)
from cutglue.billing.subscription_store import SubscriptionStore, SubscriptionWriter
from cutglue.billing.tiers import TierCatalog
from cutglue.config import BillingConfig, StripeConfig
from cutglue.models.billing import (
    ENTITLED_STATUSES,
    Invoice,
    InvoiceStatus,
    SubscriptionStatus,
    SubscriptionTier,
)
from cutglue.models.events import (
    BillingEvent,
    CheckoutSessionCompleted,
    CustomerChanged,
    CustomerDeleted,
    InvoiceEvent,
    StripeSubscription,
    SubscriptionChanged,
    SubscriptionDeleted,
    SubscriptionTrialWillEnd,
    UnrecognizedEvent,
    parse_event,
)
from cutglue.notifications.email import Notification, NotificationDispatcher, NotificationKind
from cutglue.observability.logging import WebhookContext
from cutglue.observability.metrics import track_webhook_event
from cutglue.webhooks.signing import parse_signature_header

logger = logging.getLogger(__name__)


# Stripe statuses outside the local set collapse onto the nearest local one
_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

_INVOICE_STATUS_BY_EVENT = {
    "invoice.paid": InvoiceStatus.PAID,
    "invoice.payment_succeeded": InvoiceStatus.PAID,
    "invoice.payment_failed": InvoiceStatus.FAILED,
}


def map_subscription_status(stripe_status: str) -> SubscriptionStatus:
    """Map a Stripe subscription status; unknown statuses are not entitled."""
    status = _STATUS_MAP.get(stripe_status)
    if status is None:
        logger.warning(
            "Unknown Stripe subscription status", extra={"stripe_status": stripe_status}
        )
        return SubscriptionStatus.INCOMPLETE
    return status


def map_invoice_status(event_type: str, stripe_status: str | None) -> InvoiceStatus:
    if event_type in _INVOICE_STATUS_BY_EVENT:
        return _INVOICE_STATUS_BY_EVENT[event_type]
    try:
        return InvoiceStatus(stripe_status)
    except ValueError:
        return InvoiceStatus.OPEN


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DATA_ERROR = "data_error"


@dataclass(frozen=True)
class WebhookAck:
    """Result returned to Stripe. Every ack is a 2xx."""

    event_id: str
    event_type: str
    outcome: WebhookOutcome
    message: str = ""


@dataclass
class _Applied:
    outcome: WebhookOutcome
    message: str
    notifications: list[Notification] = field(default_factory=list)


class BillingEventProcessor:
    """
    Verify, deduplicate and apply Stripe webhook events.

    Args:
        store: Subscription store
        catalog: Tier catalog (price id -> tier)
        dispatcher: Notification dispatcher (used after commit)
        stripe_config: Webhook secret and signature tolerance
        billing_config: Processing timeout
    """

    def __init__(
        self,
        store: SubscriptionStore,
        catalog: TierCatalog,
        dispatcher: NotificationDispatcher,
        stripe_config: StripeConfig,
        billing_config: BillingConfig,
    ):
        self.store = store
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.stripe_config = stripe_config
        self.billing_config = billing_config

        self._handlers: dict[type, Callable[[SubscriptionWriter, BillingEvent], _Applied]] = {
            CheckoutSessionCompleted: self._on_checkout_completed,
            SubscriptionChanged: self._on_subscription_changed,
            SubscriptionDeleted: self._on_subscription_deleted,
            SubscriptionTrialWillEnd: self._on_trial_will_end,
            InvoiceEvent: self._on_invoice,
            CustomerChanged: self._on_customer_changed,
            CustomerDeleted: self._on_customer_deleted,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def verify(self, raw_body: bytes, signature_header: str | None) -> dict:
        """
        Verify the signature and decode the JSON envelope.

        Returns:
            dict: Event payload with at least "id" and "type"

        Raises:
            WebhookConfigurationError: no signing secret configured
            InvalidSignatureError: header missing, malformed, stale or wrong
            InvalidPayloadError: body is not a JSON event envelope
        """
        secret = self.stripe_config.webhook_secret
        if not secret:
            raise WebhookConfigurationError("Webhook secret not configured")
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignatureError("Webhook body is not UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                secret,
                tolerance=self.stripe_config.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            timestamp, signatures = parse_signature_header(signature_header)
            logger.warning(
                "Webhook signature verification failed",
                extra={
                    "error": str(e),
                    "signature_timestamp": timestamp,
                    "signature_count": len(signatures),
                },
            )
            raise InvalidSignatureError("Invalid signature") from e

        try:
            data = json.loads(payload)
        except ValueError as e:
            raise InvalidPayloadError("Webhook body is not valid JSON") from e

        if not isinstance(data, dict) or not data.get("id") or not data.get("type"):
            raise InvalidPayloadError("Webhook body is not a Stripe event")
        return data

    async def handle_webhook(self, raw_body: bytes, signature_header: str | None) -> WebhookAck:
        """
        Process one webhook delivery.

        Returns:
            WebhookAck: processed, duplicate, ignored or data_error

        Raises:
            InvalidSignatureError, InvalidPayloadError: 400, nothing recorded
            WebhookConfigurationError: 500
            StorageError: 503, event left unprocessed
            WebhookTimeoutError: 503; a transaction already running may still
                commit, in which case its notifications are sent and the
                redelivery is acknowledged as a duplicate
            WebhookProcessingError: 500, error recorded, event left unprocessed
        """
        start_time = time.perf_counter()
        try:
            data = self.verify(raw_body, signature_header)
        except InvalidSignatureError:
            track_webhook_event("unknown", "invalid_signature")
            raise
        except InvalidPayloadError:
            track_webhook_event("unknown", "invalid_payload")
            raise
        event_id, event_type = str(data["id"]), str(data["type"])

        with WebhookContext(event_id):
            logger.info(
                "Processing Stripe webhook event",
                extra={"event_type": event_type, "event_id": event_id},
            )
            try:
                ack = await asyncio.wait_for(
                    self._process(event_id, event_type, data),
                    timeout=self.billing_config.webhook_timeout_seconds,
                )
            except TimeoutError as e:
                track_webhook_event(event_type, "timeout", time.perf_counter() - start_time)
                logger.error(
                    "Webhook processing timed out",
                    extra={
                        "event_type": event_type,
                        "timeout_seconds": self.billing_config.webhook_timeout_seconds,
                    },
                )
                raise WebhookTimeoutError("Webhook processing timed out") from e
            except StorageError:
                track_webhook_event(event_type, "storage_error", time.perf_counter() - start_time)
                raise
            except WebhookProcessingError:
                track_webhook_event(event_type, "failed", time.perf_counter() - start_time)
                raise

            track_webhook_event(event_type, ack.outcome.value, time.perf_counter() - start_time)
            logger.info(
                "Webhook event handled",
                extra={
                    "event_type": event_type,
                    "outcome": ack.outcome.value,
                    "detail": ack.message,
                },
            )
            return ack

    async def _process(self, event_id: str, event_type: str, data: dict) -> WebhookAck:
        await self.store.record_event_received(event_id, event_type)

        try:
            event = parse_event(data)
        except ValidationError as e:
            message = f"Malformed {event_type} event: {e.error_count()} invalid field(s)"
            logger.warning(
                "Webhook event failed validation",
                extra={"event_type": event_type, "errors": e.errors(include_url=False)},
            )

            def reject(writer: SubscriptionWriter) -> _Applied:
                raise EventDataError(message)

            applied = await self.store.apply(
                "apply_event", lambda writer: self._apply(writer, event_id, reject)
            )
            return WebhookAck(event_id, event_type, applied.outcome, applied.message)

        # The transaction runs in a worker thread and may commit after a
        # timeout cancels this coroutine. Notifications are sent from the
        # task's done callback so a late commit still delivers them.
        apply_task = asyncio.ensure_future(
            self.store.apply(
                "apply_event",
                lambda writer: self._apply(writer, event_id, lambda w: self._route(w, event)),
            )
        )
        apply_task.add_done_callback(self._dispatch_committed)

        try:
            applied = await asyncio.shield(apply_task)
        except StorageError:
            raise
        except Exception as e:
            logger.error(
                "Webhook event processing failed",
                extra={"event_type": event_type, "error": str(e)},
                exc_info=True,
            )
            await self.store.record_event_error(event_id, f"{type(e).__name__}: {e}")
            raise WebhookProcessingError(f"Event processing failed: {e}") from e

        return WebhookAck(event_id, event_type, applied.outcome, applied.message)

    def _dispatch_committed(self, task: "asyncio.Future[_Applied]") -> None:
        if task.cancelled() or task.exception() is not None:
            return
        applied = task.result()
        if applied.notifications:
            self.dispatcher.dispatch(applied.notifications)

    def _apply(
        self,
        writer: SubscriptionWriter,
        event_id: str,
        handler: Callable[[SubscriptionWriter], _Applied],
    ) -> _Applied:
        # Runs inside the BEGIN IMMEDIATE transaction
        if writer.is_event_processed(event_id):
            return _Applied(WebhookOutcome.DUPLICATE, "Event already processed")

        try:
            applied = handler(writer)
        except EventDataError as e:
            logger.warning("Webhook event lacks required data", extra={"error": str(e)})
            writer.mark_event_processed(event_id, error_message=str(e))
            return _Applied(WebhookOutcome.DATA_ERROR, str(e))

        writer.mark_event_processed(event_id)
        return applied

    def _route(self, writer: SubscriptionWriter, event: BillingEvent) -> _Applied:
        handler = self._handlers.get(type(event))
        if handler is None:
            if not isinstance(event, UnrecognizedEvent):
                logger.warning("No handler for event model", extra={"model": type(event).__name__})
            return _Applied(WebhookOutcome.IGNORED, f"Unhandled event: {event.type}")
        return handler(writer, event)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _subscription_tier(self, sub: StripeSubscription) -> SubscriptionTier:
        """Tier from the first item's price, falling back to metadata."""
        metadata_tier = sub.metadata.get("tier")
        if sub.price_id:
            tier = self.catalog.tier_for_price(sub.price_id)
            if tier != SubscriptionTier.FREE or not metadata_tier:
                return tier
        return self.catalog.resolve_tier(metadata_tier)

    @staticmethod
    def _email_for(writer: SubscriptionWriter, stripe_customer_id: str | None) -> str | None:
        if not stripe_customer_id:
            return None
        customer = writer.get_customer_by_stripe_id(stripe_customer_id)
        return customer.email if customer else None

    # ------------------------------------------------------------------
    # Handlers (synchronous, inside the event transaction)
    # ------------------------------------------------------------------

    def _on_checkout_completed(
        self, writer: SubscriptionWriter, event: CheckoutSessionCompleted
    ) -> _Applied:
        session = event.data.object
        if session.mode != "subscription":
            return _Applied(WebhookOutcome.IGNORED, f"Checkout mode {session.mode} not handled")

        user_id = session.metadata.get("user_id")
        if not user_id:
            raise EventDataError("Checkout session has no metadata.user_id")
        if not session.customer or not session.subscription:
            raise EventDataError("Checkout session has no customer or subscription")

        metadata_tier = session.metadata.get("tier")
        if metadata_tier:
            tier = self.catalog.resolve_tier(metadata_tier)
        else:
            tier = self.catalog.tier_for_price(session.metadata.get("price_id"))

        try:
            trial_days = int(session.metadata.get("trial_days") or 0)
        except ValueError:
            trial_days = 0
        status = SubscriptionStatus.TRIALING if trial_days > 0 else SubscriptionStatus.ACTIVE

        name = session.customer_details.name if session.customer_details else None
        writer.upsert_customer(session.customer, user_id, email=session.email, name=name)

        existing = writer.get_by_stripe_id(session.subscription)
        if existing is not None:
            # An earlier subscription event already created the row
            writer.update_subscription(
                session.subscription,
                event_id=event.id,
                user_id=user_id,
                stripe_customer_id=session.customer,
            )
            tier, status = existing.tier, existing.status
            message = f"Attached subscription {session.subscription} to user"
        else:
            writer.create_subscription(
                stripe_subscription_id=session.subscription,
                stripe_customer_id=session.customer,
                tier=tier,
                status=status,
                user_id=user_id,
                event_id=event.id,
            )
            message = f"Subscription {session.subscription} started on {tier.value}"

        notification = Notification(
            kind=NotificationKind.SUBSCRIPTION_CHANGED,
            user_id=user_id,
            to_email=session.email,
            variables={"action": "started", "tier": tier.value, "status": status.value},
        )
        return _Applied(WebhookOutcome.PROCESSED, message, [notification])

    def _on_subscription_changed(
        self, writer: SubscriptionWriter, event: SubscriptionChanged
    ) -> _Applied:
        sub = event.data.object
        tier = self._subscription_tier(sub)
        status = map_subscription_status(sub.status)
        user_id = sub.metadata.get("user_id") or writer.user_for_customer(sub.customer)

        existing = writer.get_by_stripe_id(sub.id)
        if existing is None:
            writer.create_subscription(
                stripe_subscription_id=sub.id,
                stripe_customer_id=sub.customer,
                tier=tier,
                status=status,
                user_id=user_id,
                current_period_start=sub.period_start,
                current_period_end=sub.period_end,
                cancel_at_period_end=sub.cancel_at_period_end,
                trial_end=sub.trial_end,
                event_id=event.id,
            )
            return _Applied(WebhookOutcome.PROCESSED, f"Subscription {sub.id} recorded")

        if existing.status == SubscriptionStatus.CANCELED:
            logger.info(
                "Ignoring update to canceled subscription",
                extra={"stripe_subscription_id": sub.id},
            )
            return _Applied(WebhookOutcome.IGNORED, "Subscription already canceled")

        if (
            existing.current_period_end is not None
            and sub.period_end is not None
            and sub.period_end < existing.current_period_end
        ):
            logger.warning(
                "Rejecting stale subscription update",
                extra={
                    "stripe_subscription_id": sub.id,
                    "stored_period_end": existing.current_period_end.isoformat(),
                    "event_period_end": sub.period_end.isoformat(),
                },
            )
            return _Applied(WebhookOutcome.IGNORED, "Stale subscription update")

        fields: dict = {
            "tier": tier,
            "status": status,
            "cancel_at_period_end": sub.cancel_at_period_end,
            "trial_end": sub.trial_end,
        }
        if sub.period_start is not None:
            fields["current_period_start"] = sub.period_start
        if sub.period_end is not None:
            fields["current_period_end"] = sub.period_end
        if existing.user_id is None and user_id:
            fields["user_id"] = user_id
        if status == SubscriptionStatus.CANCELED:
            fields["canceled_at"] = sub.canceled_at or datetime.now(UTC)

        writer.update_subscription(sub.id, event_id=event.id, **fields)

        notifications = []
        if tier != existing.tier or status != existing.status:
            logger.info(
                "Subscription changed",
                extra={
                    "stripe_subscription_id": sub.id,
                    "tier": tier.value,
                    "previous_tier": existing.tier.value,
                    "status": status.value,
                    "previous_status": existing.status.value,
                },
            )
            notifications.append(
                Notification(
                    kind=NotificationKind.SUBSCRIPTION_CHANGED,
                    user_id=existing.user_id or user_id,
                    to_email=self._email_for(writer, sub.customer),
                    variables={"action": "updated", "tier": tier.value, "status": status.value},
                )
            )
        return _Applied(WebhookOutcome.PROCESSED, f"Subscription {sub.id} updated", notifications)

    def _on_subscription_deleted(
        self, writer: SubscriptionWriter, event: SubscriptionDeleted
    ) -> _Applied:
        sub = event.data.object
        existing = writer.get_by_stripe_id(sub.id)
        if existing is None:
            raise EventDataError(f"Unknown subscription {sub.id}")
        if existing.status == SubscriptionStatus.CANCELED:
            return _Applied(WebhookOutcome.PROCESSED, f"Subscription {sub.id} already canceled")

        writer.set_status(sub.id, SubscriptionStatus.CANCELED, event_id=event.id)
        logger.warning(
            "Subscription canceled, user falls back to free",
            extra={"stripe_subscription_id": sub.id, "user_id": existing.user_id},
        )
        notification = Notification(
            kind=NotificationKind.SUBSCRIPTION_CHANGED,
            user_id=existing.user_id,
            to_email=self._email_for(writer, sub.customer),
            variables={"action": "canceled", "tier": SubscriptionTier.FREE.value, "status": "canceled"},
        )
        return _Applied(WebhookOutcome.PROCESSED, f"Subscription {sub.id} canceled", [notification])

    def _on_trial_will_end(
        self, writer: SubscriptionWriter, event: SubscriptionTrialWillEnd
    ) -> _Applied:
        sub = event.data.object
        existing = writer.get_by_stripe_id(sub.id)
        user_id = existing.user_id if existing else writer.user_for_customer(sub.customer)
        tier = existing.tier if existing else self._subscription_tier(sub)
        trial_end = sub.trial_end.date().isoformat() if sub.trial_end else None

        notification = Notification(
            kind=NotificationKind.TRIAL_ENDING,
            user_id=user_id,
            to_email=self._email_for(writer, sub.customer),
            variables={"tier": tier.value, "trial_end": trial_end},
        )
        return _Applied(WebhookOutcome.PROCESSED, "Trial ending notification queued", [notification])

    def _on_invoice(self, writer: SubscriptionWriter, event: InvoiceEvent) -> _Applied:
        inv = event.data.object
        subscription_id = inv.subscription_id
        subscription = writer.get_by_stripe_id(subscription_id) if subscription_id else None

        user_id = writer.user_for_customer(inv.customer)
        if user_id is None and subscription is not None:
            user_id = subscription.user_id

        status = map_invoice_status(event.type, inv.status)
        writer.upsert_invoice(
            Invoice(
                stripe_invoice_id=inv.id,
                user_id=user_id,
                stripe_customer_id=inv.customer,
                stripe_subscription_id=subscription_id,
                amount_due=inv.amount_due,
                amount_paid=inv.amount_paid,
                currency=inv.currency,
                status=status,
                period_start=inv.period_start,
                period_end=inv.period_end,
                hosted_invoice_url=inv.hosted_invoice_url,
                invoice_pdf=inv.invoice_pdf,
            )
        )

        email = inv.customer_email or self._email_for(writer, inv.customer)
        notifications = []

        if event.type == "invoice.payment_failed":
            if subscription is not None and subscription.status in ENTITLED_STATUSES:
                writer.set_status(subscription_id, SubscriptionStatus.PAST_DUE, event_id=event.id)
            logger.error(
                "Payment failed for customer",
                extra={
                    "user_id": user_id,
                    "stripe_invoice_id": inv.id,
                    "amount_due": inv.amount_due,
                },
            )
            notifications.append(
                Notification(
                    kind=NotificationKind.PAYMENT_FAILED,
                    user_id=user_id,
                    to_email=email,
                    variables={
                        "amount_due": inv.amount_due,
                        "currency": inv.currency,
                        "hosted_invoice_url": inv.hosted_invoice_url,
                    },
                )
            )

        elif status == InvoiceStatus.PAID:
            if subscription is not None and subscription.status == SubscriptionStatus.PAST_DUE:
                writer.set_status(subscription_id, SubscriptionStatus.ACTIVE, event_id=event.id)
                logger.info(
                    "Payment recovered, subscription reactivated",
                    extra={"user_id": user_id, "stripe_subscription_id": subscription_id},
                )
            # Stripe sends both invoice.paid and invoice.payment_succeeded
            if event.type == "invoice.payment_succeeded" and inv.amount_paid > 0:
                notifications.append(
                    Notification(
                        kind=NotificationKind.INVOICE_RECEIPT,
                        user_id=user_id,
                        to_email=email,
                        variables={
                            "amount_paid": inv.amount_paid,
                            "currency": inv.currency,
                            "hosted_invoice_url": inv.hosted_invoice_url,
                            "invoice_id": inv.id,
                        },
                    )
                )

        return _Applied(
            WebhookOutcome.PROCESSED, f"Invoice {inv.id} recorded as {status.value}", notifications
        )

    def _on_customer_changed(self, writer: SubscriptionWriter, event: CustomerChanged) -> _Applied:
        customer = event.data.object
        user_id = customer.metadata.get("user_id") or writer.user_for_customer(customer.id)
        if not user_id:
            return _Applied(WebhookOutcome.IGNORED, f"Customer {customer.id} not linked to a user")

        writer.upsert_customer(customer.id, user_id, email=customer.email, name=customer.name)
        return _Applied(WebhookOutcome.PROCESSED, f"Customer {customer.id} synchronized")

    def _on_customer_deleted(self, writer: SubscriptionWriter, event: CustomerDeleted) -> _Applied:
        customer = event.data.object
        canceled = writer.cancel_customer_subscriptions(customer.id, event_id=event.id)
        if canceled:
            logger.warning(
                "Customer deleted, subscriptions canceled",
                extra={"stripe_customer_id": customer.id, "canceled": canceled},
            )
        return _Applied(
            WebhookOutcome.PROCESSED, f"Canceled {canceled} subscription(s) of {customer.id}"
        )
