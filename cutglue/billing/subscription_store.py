"""
Subscription store: local mirror of Stripe subscriptions, customers and
invoices, plus the webhook idempotency log.

Reads are available to any caller. Writes to subscriptions, customers and
invoices only happen through SubscriptionWriter, which is bound to the
transaction the billing event processor opens for each event.
"""

import logging
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeVar

from cutglue.models.billing import (
    BillingCustomer,
    Invoice,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookEventRecord,
)
from cutglue.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UPDATABLE_COLUMNS = frozenset(
    {
        "user_id",
        "stripe_customer_id",
        "tier",
        "status",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "trial_end",
        "canceled_at",
    }
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _to_db(value):
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat()
    if isinstance(value, bool):
        return int(value)
    if hasattr(value, "value"):
        return value.value
    return value


def _from_db(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        stripe_customer_id=row["stripe_customer_id"],
        stripe_subscription_id=row["stripe_subscription_id"],
        tier=SubscriptionTier(row["tier"]),
        status=SubscriptionStatus(row["status"]),
        current_period_start=_from_db(row["current_period_start"]),
        current_period_end=_from_db(row["current_period_end"]),
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        trial_end=_from_db(row["trial_end"]),
        canceled_at=_from_db(row["canceled_at"]),
        last_event_id=row["last_event_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_customer(row: sqlite3.Row) -> BillingCustomer:
    return BillingCustomer(
        stripe_customer_id=row["stripe_customer_id"],
        user_id=row["user_id"],
        email=row["email"],
        name=row["name"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        stripe_invoice_id=row["stripe_invoice_id"],
        user_id=row["user_id"],
        stripe_customer_id=row["stripe_customer_id"],
        stripe_subscription_id=row["stripe_subscription_id"],
        amount_due=row["amount_due"],
        amount_paid=row["amount_paid"],
        currency=row["currency"],
        status=InvoiceStatus(row["status"]),
        period_start=_from_db(row["period_start"]),
        period_end=_from_db(row["period_end"]),
        hosted_invoice_url=row["hosted_invoice_url"],
        invoice_pdf=row["invoice_pdf"],
    )


def _row_to_event(row: sqlite3.Row) -> WebhookEventRecord:
    return WebhookEventRecord(
        event_id=row["event_id"],
        event_type=row["event_type"],
        received_at=datetime.fromisoformat(row["received_at"]),
        processed=bool(row["processed"]),
        processed_at=_from_db(row["processed_at"]),
        error_message=row["error_message"],
        attempts=row["attempts"],
    )


# Entitled (trialing, active) rows first, then other live rows, then
# canceled; newest first within each group
_CURRENT_SUBSCRIPTION_SQL = """
    SELECT * FROM billing_subscriptions
    WHERE user_id = ?
    ORDER BY
        CASE
            WHEN status IN ('trialing', 'active') THEN 0
            WHEN status = 'canceled' THEN 2
            ELSE 1
        END,
        created_at DESC,
        id DESC
    LIMIT 1
"""


class SubscriptionWriter:
    """
    Write operations bound to an open transaction.

    Instances are created by SubscriptionStore.apply() and must not outlive
    the callback they are passed to.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ------------------------------------------------------------------
    # Reads inside the transaction
    # ------------------------------------------------------------------

    def get_by_stripe_id(self, stripe_subscription_id: str) -> Subscription | None:
        row = self.conn.execute(
            "SELECT * FROM billing_subscriptions WHERE stripe_subscription_id = ?",
            (stripe_subscription_id,),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def get_subscription(self, user_id: str) -> Subscription | None:
        row = self.conn.execute(_CURRENT_SUBSCRIPTION_SQL, (user_id,)).fetchone()
        return _row_to_subscription(row) if row else None

    def get_customer_by_stripe_id(self, stripe_customer_id: str) -> BillingCustomer | None:
        row = self.conn.execute(
            "SELECT * FROM billing_customers WHERE stripe_customer_id = ?",
            (stripe_customer_id,),
        ).fetchone()
        return _row_to_customer(row) if row else None

    def user_for_customer(self, stripe_customer_id: str | None) -> str | None:
        """Resolve the application user behind a Stripe customer, if known."""
        if not stripe_customer_id:
            return None
        customer = self.get_customer_by_stripe_id(stripe_customer_id)
        if customer:
            return customer.user_id
        row = self.conn.execute(
            """
            SELECT user_id FROM billing_subscriptions
            WHERE stripe_customer_id = ? AND user_id IS NOT NULL
            ORDER BY created_at DESC LIMIT 1
            """,
            (stripe_customer_id,),
        ).fetchone()
        return row["user_id"] if row else None

    def is_event_processed(self, event_id: str) -> bool:
        row = self.conn.execute(
            "SELECT processed FROM billing_webhook_events WHERE event_id = ?", (event_id,)
        ).fetchone()
        return bool(row and row["processed"])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_customer(
        self,
        stripe_customer_id: str,
        user_id: str,
        email: str | None = None,
        name: str | None = None,
    ) -> BillingCustomer:
        now = _now()
        self.conn.execute(
            """
            INSERT INTO billing_customers (
                stripe_customer_id, user_id, email, name, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (stripe_customer_id) DO UPDATE SET
                user_id = excluded.user_id,
                email = COALESCE(excluded.email, billing_customers.email),
                name = COALESCE(excluded.name, billing_customers.name),
                updated_at = excluded.updated_at
            """,
            (stripe_customer_id, user_id, email, name, now, now),
        )
        return self.get_customer_by_stripe_id(stripe_customer_id)

    def create_subscription(
        self,
        stripe_subscription_id: str,
        stripe_customer_id: str,
        tier: SubscriptionTier,
        status: SubscriptionStatus,
        user_id: str | None = None,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
        trial_end: datetime | None = None,
        event_id: str | None = None,
    ) -> Subscription:
        now = _now()
        self.conn.execute(
            """
            INSERT INTO billing_subscriptions (
                user_id, stripe_customer_id, stripe_subscription_id, tier, status,
                current_period_start, current_period_end, cancel_at_period_end,
                trial_end, last_event_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                stripe_customer_id,
                stripe_subscription_id,
                tier.value,
                status.value,
                _to_db(current_period_start),
                _to_db(current_period_end),
                int(cancel_at_period_end),
                _to_db(trial_end),
                event_id,
                now,
                now,
            ),
        )
        logger.info(
            "Subscription created",
            extra={
                "user_id": user_id,
                "stripe_subscription_id": stripe_subscription_id,
                "tier": tier.value,
                "status": status.value,
            },
        )
        return self.get_by_stripe_id(stripe_subscription_id)

    def update_subscription(
        self, stripe_subscription_id: str, event_id: str | None = None, **fields
    ) -> Subscription | None:
        """
        Update selected columns of a subscription.

        Args:
            stripe_subscription_id: Stripe subscription id (sub_...)
            event_id: Event that caused the change
            **fields: Column values; None values are written as NULL

        Returns:
            Updated subscription, or None if no such row
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update subscription columns: {sorted(unknown)}")

        assignments = [f"{column} = ?" for column in fields]
        values = [_to_db(value) for value in fields.values()]
        assignments += ["last_event_id = COALESCE(?, last_event_id)", "updated_at = ?"]
        values += [event_id, _now(), stripe_subscription_id]

        cursor = self.conn.execute(
            f"UPDATE billing_subscriptions SET {', '.join(assignments)} "
            "WHERE stripe_subscription_id = ?",
            values,
        )
        if cursor.rowcount == 0:
            return None
        return self.get_by_stripe_id(stripe_subscription_id)

    def set_status(
        self,
        stripe_subscription_id: str,
        status: SubscriptionStatus,
        event_id: str | None = None,
    ) -> Subscription | None:
        fields: dict = {"status": status}
        if status == SubscriptionStatus.CANCELED:
            fields["canceled_at"] = datetime.now(UTC)
        return self.update_subscription(stripe_subscription_id, event_id=event_id, **fields)

    def cancel_customer_subscriptions(
        self, stripe_customer_id: str, event_id: str | None = None
    ) -> int:
        """Soft-cancel every live subscription of a Stripe customer."""
        now = _now()
        cursor = self.conn.execute(
            """
            UPDATE billing_subscriptions
            SET status = 'canceled',
                canceled_at = COALESCE(canceled_at, ?),
                last_event_id = COALESCE(?, last_event_id),
                updated_at = ?
            WHERE stripe_customer_id = ? AND status != 'canceled'
            """,
            (now, event_id, now, stripe_customer_id),
        )
        return cursor.rowcount

    def upsert_invoice(self, invoice: Invoice) -> None:
        now = _now()
        self.conn.execute(
            """
            INSERT INTO billing_invoices (
                stripe_invoice_id, user_id, stripe_customer_id, stripe_subscription_id,
                amount_due, amount_paid, currency, status, period_start, period_end,
                hosted_invoice_url, invoice_pdf, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (stripe_invoice_id) DO UPDATE SET
                user_id = COALESCE(excluded.user_id, billing_invoices.user_id),
                stripe_subscription_id = COALESCE(
                    excluded.stripe_subscription_id, billing_invoices.stripe_subscription_id
                ),
                amount_due = excluded.amount_due,
                amount_paid = excluded.amount_paid,
                currency = excluded.currency,
                status = excluded.status,
                period_start = excluded.period_start,
                period_end = excluded.period_end,
                hosted_invoice_url = COALESCE(
                    excluded.hosted_invoice_url, billing_invoices.hosted_invoice_url
                ),
                invoice_pdf = COALESCE(excluded.invoice_pdf, billing_invoices.invoice_pdf),
                updated_at = excluded.updated_at
            """,
            (
                invoice.stripe_invoice_id,
                invoice.user_id,
                invoice.stripe_customer_id,
                invoice.stripe_subscription_id,
                invoice.amount_due,
                invoice.amount_paid,
                invoice.currency,
                invoice.status.value,
                _to_db(invoice.period_start),
                _to_db(invoice.period_end),
                invoice.hosted_invoice_url,
                invoice.invoice_pdf,
                now,
                now,
            ),
        )

    def mark_event_processed(self, event_id: str, error_message: str | None = None) -> None:
        self.conn.execute(
            """
            UPDATE billing_webhook_events
            SET processed = 1, processed_at = ?, error_message = ?
            WHERE event_id = ?
            """,
            (_now(), error_message, event_id),
        )


class SubscriptionStore:
    """
    Async access to subscription state and the webhook event log.

    Args:
        db: Billing database
    """

    def __init__(self, db: BillingDatabase):
        self.db = db

    async def apply(self, operation: str, fn: Callable[[SubscriptionWriter], T]) -> T:
        """
        Run fn inside one BEGIN IMMEDIATE transaction.

        Everything fn writes commits together or not at all.

        Raises:
            StorageError: on database failure (the transaction is rolled back)
        """
        return await self.db.run_in_transaction(
            operation, lambda conn: fn(SubscriptionWriter(conn))
        )

    async def _read(self, operation: str, fn: Callable[[SubscriptionWriter], T]) -> T:
        return await self.db.run(operation, lambda conn: fn(SubscriptionWriter(conn)))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_subscription(self, user_id: str) -> Subscription | None:
        """
        Current subscription for a user.

        Prefers the newest trialing or active subscription, then the newest
        other non-canceled one, then the newest canceled one. None if the
        user has never subscribed.
        """
        return await self._read("get_subscription", lambda w: w.get_subscription(user_id))

    async def get_by_stripe_id(self, stripe_subscription_id: str) -> Subscription | None:
        return await self._read(
            "get_subscription", lambda w: w.get_by_stripe_id(stripe_subscription_id)
        )

    async def get_customer_by_user(self, user_id: str) -> BillingCustomer | None:
        def select(conn: sqlite3.Connection) -> BillingCustomer | None:
            row = conn.execute(
                """
                SELECT * FROM billing_customers WHERE user_id = ?
                ORDER BY updated_at DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
            return _row_to_customer(row) if row else None

        return await self.db.run("get_customer", select)

    async def get_customer_by_stripe_id(self, stripe_customer_id: str) -> BillingCustomer | None:
        return await self._read(
            "get_customer", lambda w: w.get_customer_by_stripe_id(stripe_customer_id)
        )

    async def list_invoices(self, user_id: str, limit: int = 24) -> list[Invoice]:
        def select(conn: sqlite3.Connection) -> list[Invoice]:
            rows = conn.execute(
                """
                SELECT * FROM billing_invoices WHERE user_id = ?
                ORDER BY COALESCE(period_start, created_at) DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
            return [_row_to_invoice(row) for row in rows]

        return await self.db.run("list_invoices", select)

    # ------------------------------------------------------------------
    # Webhook event log
    # ------------------------------------------------------------------

    async def get_event(self, event_id: str) -> WebhookEventRecord | None:
        def select(conn: sqlite3.Connection) -> WebhookEventRecord | None:
            row = conn.execute(
                "SELECT * FROM billing_webhook_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            return _row_to_event(row) if row else None

        return await self.db.run("get_event", select)

    async def record_event_received(self, event_id: str, event_type: str) -> None:
        """Insert the event if new and count the delivery attempt."""

        def upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO billing_webhook_events (event_id, event_type, received_at, attempts)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (event_id) DO UPDATE SET attempts = attempts + 1
                """,
                (event_id, event_type, _now()),
            )

        await self.db.run("record_event", upsert)

    async def is_event_processed(self, event_id: str) -> bool:
        return await self._read("get_event", lambda w: w.is_event_processed(event_id))

    async def record_event_error(self, event_id: str, error_message: str) -> None:
        """Keep the latest failure on an unprocessed event for operators."""

        def update(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE billing_webhook_events SET error_message = ? WHERE event_id = ?",
                (error_message[:1000], event_id),
            )

        await self.db.run("record_event_error", update)
