"""
Tests for decoding Stripe events into the BillingEvent union.
"""

from datetime import UTC, datetime

import pytest
from conftest import checkout_completed, invoice_event, make_event, subscription_event
from pydantic import ValidationError

from cutglue.models.events import (
    HANDLED_EVENT_TYPES,
    CheckoutSessionCompleted,
    CustomerDeleted,
    InvoiceEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnrecognizedEvent,
    parse_event,
)


def test_checkout_session_decodes():
    event = parse_event(checkout_completed(user_id="user_9", tier="pro"))

    assert isinstance(event, CheckoutSessionCompleted)
    session = event.data.object
    assert session.metadata["user_id"] == "user_9"
    assert session.email == "maker@example.com"


def test_checkout_email_falls_back_to_customer_email():
    payload = checkout_completed()
    payload["data"]["object"]["customer_details"] = None
    payload["data"]["object"]["customer_email"] = "fallback@example.com"

    assert parse_event(payload).data.object.email == "fallback@example.com"


@pytest.mark.parametrize(
    "event_type,model",
    [
        ("customer.subscription.created", SubscriptionChanged),
        ("customer.subscription.updated", SubscriptionChanged),
        ("customer.subscription.deleted", SubscriptionDeleted),
    ],
)
def test_subscription_events_pick_their_variant(event_type, model):
    assert isinstance(parse_event(subscription_event(event_type)), model)


def test_subscription_timestamps_are_utc_datetimes():
    sub = parse_event(subscription_event(period_end=1_742_592_000)).data.object

    assert sub.period_end == datetime.fromtimestamp(1_742_592_000, tz=UTC)
    assert sub.price_id == "price_maker_m"


def test_period_falls_back_to_first_item():
    payload = subscription_event()
    obj = payload["data"]["object"]
    del obj["current_period_start"]
    del obj["current_period_end"]
    obj["items"]["data"][0]["current_period_end"] = 1_750_000_000

    sub = parse_event(payload).data.object

    assert sub.period_start is None
    assert sub.period_end == datetime.fromtimestamp(1_750_000_000, tz=UTC)


def test_invoice_subscription_from_parent_details():
    payload = invoice_event(subscription=None)
    payload["data"]["object"]["parent"] = {
        "subscription_details": {"subscription": "sub_from_parent"}
    }

    event = parse_event(payload)

    assert isinstance(event, InvoiceEvent)
    assert event.data.object.subscription_id == "sub_from_parent"


def test_customer_deleted_decodes():
    event = parse_event(make_event("customer.deleted", {"id": "cus_1", "deleted": True}))

    assert isinstance(event, CustomerDeleted)
    assert event.data.object.deleted


def test_unknown_type_is_unrecognized():
    event = parse_event(make_event("payout.paid", {"id": "po_1", "amount": 100}))

    assert isinstance(event, UnrecognizedEvent)
    assert event.type == "payout.paid"


def test_extra_fields_are_ignored():
    payload = subscription_event()
    payload["data"]["object"]["plan"] = {"nickname": "legacy"}
    payload["api_version"] = "2024-06-20"

    assert isinstance(parse_event(payload), SubscriptionChanged)


def test_handled_event_with_bad_object_fails_validation():
    payload = invoice_event()
    payload["data"]["object"]["amount_due"] = "lots"

    with pytest.raises(ValidationError):
        parse_event(payload)


def test_handled_types_cover_processor_events():
    assert {
        "checkout.session.completed",
        "customer.subscription.trial_will_end",
        "invoice.payment_failed",
        "customer.updated",
    } <= HANDLED_EVENT_TYPES
    assert "payout.paid" not in HANDLED_EVENT_TYPES
