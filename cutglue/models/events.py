"""
Stripe webhook event schema.

Incoming events decode into the closed BillingEvent union. The variant is
chosen from the event "type"; any type this service does not handle decodes
into UnrecognizedEvent instead of failing, so unknown events can be
acknowledged.

Only the fields the processor reads are modeled; everything else Stripe
sends is ignored. Unix timestamps are parsed into UTC datetimes.
"""

from datetime import datetime
from typing import Annotated, Any, Generic, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter

T = TypeVar("T")


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ============================================================================
# STRIPE OBJECTS
# ============================================================================


class Price(StripeObject):
    id: str


class SubscriptionItem(StripeObject):
    price: Price | None = None
    # Newer API versions report billing periods per item
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None


class SubscriptionItemList(StripeObject):
    data: list[SubscriptionItem] = Field(default_factory=list)


class StripeSubscription(StripeObject):
    id: str
    customer: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_end: datetime | None = None
    canceled_at: datetime | None = None
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def first_item(self) -> SubscriptionItem | None:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> str | None:
        item = self.first_item
        return item.price.id if item and item.price else None

    @property
    def period_start(self) -> datetime | None:
        if self.current_period_start is not None:
            return self.current_period_start
        item = self.first_item
        return item.current_period_start if item else None

    @property
    def period_end(self) -> datetime | None:
        if self.current_period_end is not None:
            return self.current_period_end
        item = self.first_item
        return item.current_period_end if item else None


class CustomerDetails(StripeObject):
    email: str | None = None
    name: str | None = None


class CheckoutSession(StripeObject):
    id: str
    mode: str | None = None
    customer: str | None = None
    subscription: str | None = None
    customer_email: str | None = None
    customer_details: CustomerDetails | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def email(self) -> str | None:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


class InvoiceSubscriptionDetails(StripeObject):
    subscription: str | None = None


class InvoiceParent(StripeObject):
    subscription_details: InvoiceSubscriptionDetails | None = None


class StripeInvoice(StripeObject):
    id: str
    customer: str
    subscription: str | None = None
    parent: InvoiceParent | None = None
    status: str | None = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "usd"
    period_start: datetime | None = None
    period_end: datetime | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None

    @property
    def subscription_id(self) -> str | None:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


class StripeCustomer(StripeObject):
    id: str
    email: str | None = None
    name: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    deleted: bool = False


class EventData(StripeObject, Generic[T]):
    object: T


# ============================================================================
# EVENTS
# ============================================================================


class EventEnvelope(StripeObject):
    """Fields every Stripe event carries."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: datetime | None = None
    livemode: bool = False


class CheckoutSessionCompleted(EventEnvelope):
    type: Literal["checkout.session.completed"]
    data: EventData[CheckoutSession]


class SubscriptionChanged(EventEnvelope):
    type: Literal["customer.subscription.created", "customer.subscription.updated"]
    data: EventData[StripeSubscription]


class SubscriptionDeleted(EventEnvelope):
    type: Literal["customer.subscription.deleted"]
    data: EventData[StripeSubscription]


class SubscriptionTrialWillEnd(EventEnvelope):
    type: Literal["customer.subscription.trial_will_end"]
    data: EventData[StripeSubscription]


class InvoiceEvent(EventEnvelope):
    type: Literal[
        "invoice.created",
        "invoice.updated",
        "invoice.finalized",
        "invoice.paid",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
    ]
    data: EventData[StripeInvoice]


class CustomerChanged(EventEnvelope):
    type: Literal["customer.created", "customer.updated"]
    data: EventData[StripeCustomer]


class CustomerDeleted(EventEnvelope):
    type: Literal["customer.deleted"]
    data: EventData[StripeCustomer]


class UnrecognizedEvent(EventEnvelope):
    """Any event type without a handler. Acknowledged and ignored."""

    data: dict[str, Any] = Field(default_factory=dict)


_TAG_BY_TYPE: dict[str, str] = {}
for _model, _tag in (
    (CheckoutSessionCompleted, "checkout_completed"),
    (SubscriptionChanged, "subscription_changed"),
    (SubscriptionDeleted, "subscription_deleted"),
    (SubscriptionTrialWillEnd, "trial_will_end"),
    (InvoiceEvent, "invoice"),
    (CustomerChanged, "customer_changed"),
    (CustomerDeleted, "customer_deleted"),
):
    for _event_type in _model.model_fields["type"].annotation.__args__:
        _TAG_BY_TYPE[_event_type] = _tag

HANDLED_EVENT_TYPES = frozenset(_TAG_BY_TYPE)


def _event_tag(value: Any) -> str:
    event_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return _TAG_BY_TYPE.get(event_type, "unrecognized")


BillingEvent = Annotated[
    Union[
        Annotated[CheckoutSessionCompleted, Tag("checkout_completed")],
        Annotated[SubscriptionChanged, Tag("subscription_changed")],
        Annotated[SubscriptionDeleted, Tag("subscription_deleted")],
        Annotated[SubscriptionTrialWillEnd, Tag("trial_will_end")],
        Annotated[InvoiceEvent, Tag("invoice")],
        Annotated[CustomerChanged, Tag("customer_changed")],
        Annotated[CustomerDeleted, Tag("customer_deleted")],
        Annotated[UnrecognizedEvent, Tag("unrecognized")],
    ],
    Discriminator(_event_tag),
]

_billing_event_adapter: TypeAdapter[BillingEvent] = TypeAdapter(BillingEvent)


def parse_event(payload: dict[str, Any]) -> BillingEvent:
    """
    Decode a Stripe event payload into its BillingEvent variant.

    Raises:
        pydantic.ValidationError: if a handled event type has a malformed object
    """
    return _billing_event_adapter.validate_python(payload)
