"""
Tests for the Stripe webhook event processor.

Tests:
- Signature and payload verification (nothing recorded on rejection)
- Checkout, subscription, invoice and customer event handling
- Idempotency across redeliveries
- Out-of-order and stale subscription updates
- Data errors acknowledged, handler failures left for redelivery
- Notifications sent after commit, failures never roll back state
- Processing timeout
"""

import asyncio
import json
import time

import pytest
from conftest import (
    RecordingNotifier,
    checkout_completed,
    deliver,
    invoice_event,
    make_event,
    signed,
    subscription_event,
)

from cutglue.billing.errors import (
    InvalidPayloadError,
    InvalidSignatureError,
    WebhookConfigurationError,
    WebhookProcessingError,
    WebhookTimeoutError,
)
from cutglue.billing.webhooks import (
    BillingEventProcessor,
    WebhookOutcome,
    map_invoice_status,
    map_subscription_status,
)
from cutglue.config import BillingConfig, StripeConfig
from cutglue.models.billing import InvoiceStatus, SubscriptionStatus, SubscriptionTier
from cutglue.models.events import InvoiceEvent
from cutglue.notifications.email import NotificationDispatcher, NotificationKind
from cutglue.webhooks.signing import WebhookSigner


# ============================================================================
# VERIFICATION
# ============================================================================


class TestVerification:
    @pytest.mark.asyncio
    async def test_wrong_secret_rejected_and_nothing_recorded(self, processor, store):
        event = checkout_completed()
        body, header = signed(WebhookSigner("whsec_someone_else_entirely_000"), event)

        with pytest.raises(InvalidSignatureError):
            await processor.handle_webhook(body, header)

        assert await store.get_event(event["id"]) is None
        assert await store.get_subscription("user_1") is None

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, processor, signer):
        event = checkout_completed(tier="maker")
        body, header = signed(signer, event)
        tampered = body.replace(b'"maker"', b'"pro"')

        with pytest.raises(InvalidSignatureError):
            await processor.handle_webhook(tampered, header)

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, processor, signer):
        body, header = signed(signer, checkout_completed(), timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidSignatureError):
            await processor.handle_webhook(body, header)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=def"])
    async def test_missing_or_malformed_header_rejected(self, processor, header):
        body = json.dumps(checkout_completed()).encode()

        with pytest.raises(InvalidSignatureError):
            await processor.handle_webhook(body, header)

    @pytest.mark.asyncio
    async def test_missing_secret_is_configuration_error(
        self, store, catalog, dispatcher, billing_config, signer
    ):
        processor = BillingEventProcessor(
            store, catalog, dispatcher, StripeConfig(webhook_secret=""), billing_config
        )
        body, header = signed(signer, checkout_completed())

        with pytest.raises(WebhookConfigurationError):
            await processor.handle_webhook(body, header)

    @pytest.mark.asyncio
    async def test_non_json_body_is_invalid_payload(self, processor, signer):
        header = signer.sign_payload("not json at all")

        with pytest.raises(InvalidPayloadError):
            await processor.handle_webhook(b"not json at all", header)

    @pytest.mark.asyncio
    async def test_envelope_without_id_is_invalid_payload(self, processor, signer):
        body = json.dumps({"type": "invoice.paid", "data": {}})
        header = signer.sign_payload(body)

        with pytest.raises(InvalidPayloadError):
            await processor.handle_webhook(body.encode(), header)


# ============================================================================
# CHECKOUT AND SUBSCRIPTIONS
# ============================================================================


class TestCheckout:
    @pytest.mark.asyncio
    async def test_checkout_starts_active_subscription(self, processor, signer, store, catalog):
        ack = await deliver(processor, signer, checkout_completed(tier="maker"))

        assert ack.outcome == WebhookOutcome.PROCESSED
        subscription = await store.get_subscription("user_1")
        assert subscription.tier == SubscriptionTier.MAKER
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.stripe_customer_id == "cus_1"
        assert catalog.effective_tier(subscription) == SubscriptionTier.MAKER

        customer = await store.get_customer_by_user("user_1")
        assert customer.email == "maker@example.com"

        event = await store.get_event(ack.event_id)
        assert event.processed
        assert event.error_message is None

    @pytest.mark.asyncio
    async def test_checkout_with_trial_starts_trialing(self, processor, signer, store, catalog):
        await deliver(processor, signer, checkout_completed(tier="pro", trial_days=14))

        subscription = await store.get_subscription("user_1")
        assert subscription.status == SubscriptionStatus.TRIALING
        assert catalog.effective_tier(subscription) == SubscriptionTier.PRO

    @pytest.mark.asyncio
    async def test_checkout_sends_notification_after_commit(
        self, processor, signer, dispatcher, notifier
    ):
        await deliver(processor, signer, checkout_completed())
        await dispatcher.drain()

        assert len(notifier.sent) == 1
        sent = notifier.sent[0]
        assert sent.kind == NotificationKind.SUBSCRIPTION_CHANGED
        assert sent.to_email == "maker@example.com"
        assert sent.variables["action"] == "started"

    @pytest.mark.asyncio
    async def test_checkout_without_user_id_is_data_error(self, processor, signer, store):
        event = checkout_completed(user_id=None)

        ack = await deliver(processor, signer, event)

        assert ack.outcome == WebhookOutcome.DATA_ERROR
        assert await store.get_by_stripe_id("sub_1") is None
        record = await store.get_event(event["id"])
        assert record.processed
        assert "user_id" in record.error_message

    @pytest.mark.asyncio
    async def test_payment_mode_checkout_ignored(self, processor, signer, store):
        event = checkout_completed()
        event["data"]["object"]["mode"] = "payment"

        ack = await deliver(processor, signer, event)

        assert ack.outcome == WebhookOutcome.IGNORED
        assert await store.get_subscription("user_1") is None

    @pytest.mark.asyncio
    async def test_subscription_created_before_checkout_is_attached(
        self, processor, signer, store
    ):
        await deliver(
            processor, signer, subscription_event("customer.subscription.created", status="active")
        )
        orphan = await store.get_by_stripe_id("sub_1")
        assert orphan.user_id is None

        await deliver(processor, signer, checkout_completed())

        subscription = await store.get_subscription("user_1")
        assert subscription.stripe_subscription_id == "sub_1"
        assert subscription.tier == SubscriptionTier.MAKER


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, processor, signer, store, dispatcher, notifier):
        event = checkout_completed()

        first = await deliver(processor, signer, event)
        second = await deliver(processor, signer, event)
        await dispatcher.drain()

        assert first.outcome == WebhookOutcome.PROCESSED
        assert second.outcome == WebhookOutcome.DUPLICATE
        assert len(notifier.sent) == 1

        record = await store.get_event(event["id"])
        assert record.attempts == 2

    @pytest.mark.asyncio
    async def test_concurrent_redeliveries_apply_once(self, processor, signer, dispatcher, notifier):
        event = checkout_completed()

        acks = await asyncio.gather(*(deliver(processor, signer, event) for _ in range(5)))
        await dispatcher.drain()

        outcomes = [ack.outcome for ack in acks]
        assert outcomes.count(WebhookOutcome.PROCESSED) == 1
        assert outcomes.count(WebhookOutcome.DUPLICATE) == 4
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_event_type_ignored_and_marked(self, processor, signer, store):
        event = make_event("product.created", {"id": "prod_1", "object": "product"})

        ack = await deliver(processor, signer, event)
        again = await deliver(processor, signer, event)

        assert ack.outcome == WebhookOutcome.IGNORED
        assert again.outcome == WebhookOutcome.DUPLICATE
        assert (await store.get_event(event["id"])).processed


class TestSubscriptionUpdates:
    @pytest.mark.asyncio
    async def test_upgrade_changes_tier_and_notifies(
        self, processor, signer, store, dispatcher, notifier
    ):
        await deliver(processor, signer, checkout_completed())
        await deliver(processor, signer, subscription_event(price_id="price_pro_y"))
        await dispatcher.drain()

        subscription = await store.get_subscription("user_1")
        assert subscription.tier == SubscriptionTier.PRO
        assert subscription.current_period_end is not None
        assert notifier.sent[-1].variables == {
            "action": "updated",
            "tier": "pro",
            "status": "active",
        }

    @pytest.mark.asyncio
    async def test_unchanged_update_sends_nothing(self, processor, signer, dispatcher, notifier):
        await deliver(processor, signer, checkout_completed())
        await deliver(processor, signer, subscription_event(cancel_at_period_end=True))
        await dispatcher.drain()

        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_stale_update_is_ignored(self, processor, signer, store):
        await deliver(processor, signer, checkout_completed())
        await deliver(
            processor,
            signer,
            subscription_event(price_id="price_pro_m", period_end=1_745_000_000),
        )

        stale = subscription_event(
            price_id="price_starter_m", period_start=1_737_000_000, period_end=1_740_000_000
        )
        ack = await deliver(processor, signer, stale)

        assert ack.outcome == WebhookOutcome.IGNORED
        subscription = await store.get_subscription("user_1")
        assert subscription.tier == SubscriptionTier.PRO
        assert (await store.get_event(stale["id"])).processed

    @pytest.mark.asyncio
    async def test_unknown_price_falls_back_to_metadata_tier(self, processor, signer, store):
        await deliver(processor, signer, checkout_completed())
        await deliver(
            processor,
            signer,
            subscription_event(price_id="price_legacy", metadata={"tier": "starter"}),
        )

        subscription = await store.get_subscription("user_1")
        assert subscription.tier == SubscriptionTier.STARTER

    @pytest.mark.asyncio
    async def test_unpaid_status_maps_to_past_due(self, processor, signer, store, catalog):
        await deliver(processor, signer, checkout_completed())
        await deliver(processor, signer, subscription_event(status="unpaid"))

        subscription = await store.get_subscription("user_1")
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert catalog.effective_tier(subscription) == SubscriptionTier.FREE

    @pytest.mark.asyncio
    async def test_malformed_subscription_event_is_data_error(self, processor, signer, store):
        event = subscription_event()
        del event["data"]["object"]["customer"]

        ack = await deliver(processor, signer, event)

        assert ack.outcome == WebhookOutcome.DATA_ERROR
        record = await store.get_event(event["id"])
        assert record.processed
        assert record.error_message.startswith("Malformed")

    @pytest.mark.asyncio
    async def test_deletion_cancels_and_drops_to_free(self, processor, signer, store, catalog):
        await deliver(processor, signer, checkout_completed())

        ack = await deliver(
            processor,
            signer,
            subscription_event("customer.subscription.deleted", status="canceled"),
        )

        assert ack.outcome == WebhookOutcome.PROCESSED
        subscription = await store.get_subscription("user_1")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.canceled_at is not None
        assert catalog.effective_tier(subscription) == SubscriptionTier.FREE

    @pytest.mark.asyncio
    async def test_update_after_cancel_is_ignored(self, processor, signer, store):
        await deliver(processor, signer, checkout_completed())
        await deliver(
            processor,
            signer,
            subscription_event("customer.subscription.deleted", status="canceled"),
        )

        ack = await deliver(processor, signer, subscription_event(status="active"))

        assert ack.outcome == WebhookOutcome.IGNORED
        subscription = await store.get_subscription("user_1")
        assert subscription.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_deleting_unknown_subscription_is_data_error(self, processor, signer):
        ack = await deliver(
            processor,
            signer,
            subscription_event("customer.subscription.deleted", subscription="sub_missing"),
        )

        assert ack.outcome == WebhookOutcome.DATA_ERROR

    @pytest.mark.asyncio
    async def test_trial_will_end_notifies(self, processor, signer, dispatcher, notifier):
        await deliver(processor, signer, checkout_completed(trial_days=7))
        await deliver(
            processor,
            signer,
            subscription_event(
                "customer.subscription.trial_will_end", status="trialing", trial_end=1_742_000_000
            ),
        )
        await dispatcher.drain()

        kinds = [n.kind for n in notifier.sent]
        assert NotificationKind.TRIAL_ENDING in kinds
        trial = next(n for n in notifier.sent if n.kind == NotificationKind.TRIAL_ENDING)
        assert trial.variables["trial_end"] == "2025-03-15"
        assert trial.to_email == "maker@example.com"


# ============================================================================
# INVOICES AND CUSTOMERS
# ============================================================================


class TestInvoices:
    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due_and_notifies(
        self, processor, signer, store, catalog, dispatcher, notifier
    ):
        await deliver(processor, signer, checkout_completed())
        await deliver(processor, signer, invoice_event("invoice.payment_failed"))
        await dispatcher.drain()

        subscription = await store.get_subscription("user_1")
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert catalog.effective_tier(subscription) == SubscriptionTier.FREE

        invoices = await store.list_invoices("user_1")
        assert [i.status for i in invoices] == [InvoiceStatus.FAILED]

        failed = notifier.sent[-1]
        assert failed.kind == NotificationKind.PAYMENT_FAILED
        assert failed.variables["amount_due"] == 1900

    @pytest.mark.asyncio
    async def test_payment_succeeded_restores_access_and_sends_receipt(
        self, processor, signer, store, catalog, dispatcher, notifier
    ):
        await deliver(processor, signer, checkout_completed())
        await deliver(processor, signer, invoice_event("invoice.payment_failed"))
        await deliver(
            processor,
            signer,
            invoice_event("invoice.payment_succeeded", status="paid", amount_paid=1900),
        )
        await dispatcher.drain()

        subscription = await store.get_subscription("user_1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert catalog.effective_tier(subscription) == SubscriptionTier.MAKER

        invoices = await store.list_invoices("user_1")
        assert len(invoices) == 1
        assert invoices[0].status == InvoiceStatus.PAID
        assert invoices[0].amount_paid == 1900
        assert notifier.sent[-1].kind == NotificationKind.INVOICE_RECEIPT

    @pytest.mark.asyncio
    async def test_invoice_paid_sends_no_receipt(self, processor, signer, dispatcher, notifier):
        await deliver(processor, signer, checkout_completed())
        await deliver(
            processor, signer, invoice_event("invoice.paid", status="paid", amount_paid=1900)
        )
        await dispatcher.drain()

        assert all(n.kind != NotificationKind.INVOICE_RECEIPT for n in notifier.sent)

    @pytest.mark.asyncio
    async def test_payment_failed_does_not_revive_canceled(self, processor, signer, store):
        await deliver(processor, signer, checkout_completed())
        await deliver(
            processor,
            signer,
            subscription_event("customer.subscription.deleted", status="canceled"),
        )
        await deliver(processor, signer, invoice_event("invoice.payment_failed"))

        subscription = await store.get_subscription("user_1")
        assert subscription.status == SubscriptionStatus.CANCELED


class TestCustomers:
    @pytest.mark.asyncio
    async def test_customer_updated_syncs_email(self, processor, signer, store):
        await deliver(processor, signer, checkout_completed())
        await deliver(
            processor,
            signer,
            make_event(
                "customer.updated",
                {"id": "cus_1", "object": "customer", "email": "new@example.com", "name": "New"},
            ),
        )

        customer = await store.get_customer_by_user("user_1")
        assert customer.email == "new@example.com"

    @pytest.mark.asyncio
    async def test_unlinked_customer_ignored(self, processor, signer):
        ack = await deliver(
            processor,
            signer,
            make_event("customer.created", {"id": "cus_new", "object": "customer"}),
        )

        assert ack.outcome == WebhookOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_customer_deleted_cancels_subscriptions(self, processor, signer, store, catalog):
        await deliver(processor, signer, checkout_completed())
        await deliver(
            processor,
            signer,
            make_event("customer.deleted", {"id": "cus_1", "object": "customer", "deleted": True}),
        )

        subscription = await store.get_subscription("user_1")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert catalog.effective_tier(subscription) == SubscriptionTier.FREE


# ============================================================================
# FAILURES
# ============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_notifier_failure_keeps_state(
        self, store, catalog, stripe_config, billing_config, signer
    ):
        dispatcher = NotificationDispatcher(RecordingNotifier(fail=True))
        processor = BillingEventProcessor(store, catalog, dispatcher, stripe_config, billing_config)

        ack = await deliver(processor, signer, checkout_completed())
        await dispatcher.drain()

        assert ack.outcome == WebhookOutcome.PROCESSED
        subscription = await store.get_subscription("user_1")
        assert subscription.tier == SubscriptionTier.MAKER

    @pytest.mark.asyncio
    async def test_handler_crash_rolls_back_and_allows_redelivery(
        self, processor, signer, store, monkeypatch
    ):
        await deliver(processor, signer, checkout_completed())
        event = invoice_event("invoice.payment_failed")

        def explode(writer, event):
            writer.set_status("sub_1", SubscriptionStatus.PAST_DUE)
            raise RuntimeError("boom")

        original = processor._handlers[InvoiceEvent]
        monkeypatch.setitem(processor._handlers, InvoiceEvent, explode)

        with pytest.raises(WebhookProcessingError):
            await deliver(processor, signer, event)

        record = await store.get_event(event["id"])
        assert not record.processed
        assert "boom" in record.error_message
        # The partial write was rolled back
        assert (await store.get_subscription("user_1")).status == SubscriptionStatus.ACTIVE

        monkeypatch.setitem(processor._handlers, InvoiceEvent, original)
        ack = await deliver(processor, signer, event)

        assert ack.outcome == WebhookOutcome.PROCESSED
        assert (await store.get_subscription("user_1")).status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_timeout_raises_webhook_timeout(
        self, store, catalog, dispatcher, stripe_config, signer, monkeypatch
    ):
        processor = BillingEventProcessor(
            store,
            catalog,
            dispatcher,
            stripe_config,
            BillingConfig(webhook_timeout_seconds=0.5),
        )

        async def slow_record(event_id, event_type):
            await asyncio.sleep(5)

        monkeypatch.setattr(store, "record_event_received", slow_record)

        with pytest.raises(WebhookTimeoutError):
            await deliver(processor, signer, checkout_completed())

    @pytest.mark.asyncio
    async def test_commit_after_timeout_still_notifies(
        self, store, catalog, dispatcher, notifier, stripe_config, signer, monkeypatch
    ):
        processor = BillingEventProcessor(
            store,
            catalog,
            dispatcher,
            stripe_config,
            BillingConfig(webhook_timeout_seconds=0.3),
        )
        await deliver(processor, signer, checkout_completed())

        apply_invoice = processor._handlers[InvoiceEvent]

        def slow_invoice(writer, event):
            time.sleep(1.0)
            return apply_invoice(writer, event)

        monkeypatch.setitem(processor._handlers, InvoiceEvent, slow_invoice)
        event = invoice_event("invoice.payment_failed")

        with pytest.raises(WebhookTimeoutError):
            await deliver(processor, signer, event)

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            await dispatcher.drain()
            if any(n.kind == NotificationKind.PAYMENT_FAILED for n in notifier.sent):
                break
            await asyncio.sleep(0.05)

        assert await store.is_event_processed(event["id"])
        assert [n.kind for n in notifier.sent].count(NotificationKind.PAYMENT_FAILED) == 1

        redelivered = await deliver(processor, signer, event)
        await dispatcher.drain()

        assert redelivered.outcome == WebhookOutcome.DUPLICATE
        assert [n.kind for n in notifier.sent].count(NotificationKind.PAYMENT_FAILED) == 1


@pytest.mark.parametrize(
    "stripe_status,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.TRIALING),
        ("paused", SubscriptionStatus.PAST_DUE),
        ("incomplete_expired", SubscriptionStatus.CANCELED),
        ("something_new", SubscriptionStatus.INCOMPLETE),
    ],
)
def test_map_subscription_status(stripe_status, expected):
    assert map_subscription_status(stripe_status) == expected


def test_map_invoice_status_prefers_event_type():
    assert map_invoice_status("invoice.payment_failed", "open") == InvoiceStatus.FAILED
    assert map_invoice_status("invoice.finalized", "open") == InvoiceStatus.OPEN
    assert map_invoice_status("invoice.updated", "weird") == InvoiceStatus.OPEN
