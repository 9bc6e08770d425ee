#!/usr/bin/env python3
"""
Send a signed Stripe-style event to a local webhook endpoint.

Usage:
    python scripts/send_test_webhook.py checkout --user-id u_123 --tier maker
    python scripts/send_test_webhook.py payment_failed --subscription sub_test_1
    python scripts/send_test_webhook.py --file event.json

Options:
    --url URL         Webhook URL (default: http://localhost:8000/api/v1/billing/webhooks)
    --secret SECRET   Signing secret (default: STRIPE_WEBHOOK_SECRET)
    --event-id ID     Event id (default: random; reuse one to test deduplication)

The body is signed exactly as sent, using the Stripe-Signature scheme.
"""

import argparse
import json
import logging
import sys
import time
import uuid
from pathlib import Path

import httpx

from cutglue.config import get_settings
from cutglue.webhooks.signing import WebhookSigner

logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def build_event(kind: str, args: argparse.Namespace) -> dict:
    now = int(time.time())
    customer = args.customer
    subscription = args.subscription

    if kind == "checkout":
        event_type = "checkout.session.completed"
        obj = {
            "id": f"cs_test_{uuid.uuid4().hex[:12]}",
            "object": "checkout.session",
            "mode": "subscription",
            "customer": customer,
            "subscription": subscription,
            "customer_details": {"email": args.email},
            "metadata": {
                "user_id": args.user_id,
                "tier": args.tier,
                "trial_days": str(args.trial_days),
            },
        }
    elif kind in ("subscription_updated", "subscription_deleted"):
        event_type = (
            "customer.subscription.updated"
            if kind == "subscription_updated"
            else "customer.subscription.deleted"
        )
        obj = {
            "id": subscription,
            "object": "subscription",
            "customer": customer,
            "status": args.status if kind == "subscription_updated" else "canceled",
            "current_period_start": now,
            "current_period_end": now + 30 * 86400,
            "cancel_at_period_end": False,
            "items": {"data": [{"price": {"id": args.price_id}}]} if args.price_id else {"data": []},
            "metadata": {"user_id": args.user_id, "tier": args.tier},
        }
    elif kind in ("payment_failed", "payment_succeeded"):
        event_type = f"invoice.{kind}"
        obj = {
            "id": f"in_test_{uuid.uuid4().hex[:12]}",
            "object": "invoice",
            "customer": customer,
            "subscription": subscription,
            "status": "open" if kind == "payment_failed" else "paid",
            "amount_due": args.amount,
            "amount_paid": 0 if kind == "payment_failed" else args.amount,
            "currency": "usd",
            "period_start": now,
            "period_end": now + 30 * 86400,
            "customer_email": args.email,
        }
    else:
        raise ValueError(f"Unknown event kind: {kind}")

    return {
        "id": args.event_id or f"evt_test_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": now,
        "livemode": False,
        "data": {"object": obj},
    }


def main():
    parser = argparse.ArgumentParser(description="Send a signed test webhook")
    parser.add_argument(
        "kind",
        nargs="?",
        choices=[
            "checkout",
            "subscription_updated",
            "subscription_deleted",
            "payment_failed",
            "payment_succeeded",
        ],
    )
    parser.add_argument("--file", type=Path, help="Send this JSON event instead")
    parser.add_argument("--url", default="http://localhost:8000/api/v1/billing/webhooks")
    parser.add_argument("--secret", default=None)
    parser.add_argument("--event-id", default=None)
    parser.add_argument("--user-id", default="user_test")
    parser.add_argument("--email", default="test@example.com")
    parser.add_argument("--tier", default="maker")
    parser.add_argument("--status", default="active")
    parser.add_argument("--price-id", default=None)
    parser.add_argument("--customer", default="cus_test_1")
    parser.add_argument("--subscription", default="sub_test_1")
    parser.add_argument("--trial-days", type=int, default=0)
    parser.add_argument("--amount", type=int, default=1900, help="Invoice amount in cents")
    args = parser.parse_args()

    if args.file:
        payload = args.file.read_text(encoding="utf-8")
    elif args.kind:
        payload = json.dumps(build_event(args.kind, args))
    else:
        parser.error("give an event kind or --file")

    secret = args.secret or get_settings().stripe.webhook_secret
    if not secret:
        logger.error("No signing secret: pass --secret or set STRIPE_WEBHOOK_SECRET")
        sys.exit(1)

    headers = WebhookSigner(secret).create_headers(payload)
    try:
        response = httpx.post(args.url, content=payload.encode("utf-8"), headers=headers, timeout=10)
    except httpx.HTTPError as e:
        logger.error(f"Delivery failed: {e}")
        sys.exit(1)

    logger.info(f"HTTP {response.status_code}: {response.text}")
    sys.exit(0 if response.is_success else 1)


if __name__ == "__main__":
    main()
