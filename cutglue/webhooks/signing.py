"""
Stripe-style webhook signature codec.

Header format:
    Stripe-Signature: t=<unix timestamp>,v1=<hex hmac>[,v1=<hex hmac>...]

The signed payload is "<timestamp>.<raw body>" and the MAC is HMAC-SHA256
keyed with the endpoint secret. Verification of inbound Stripe deliveries
goes through the stripe library; this module signs payloads for local
delivery (scripts, tests) and parses headers for logging.
"""

import hashlib
import hmac
import logging
import secrets
import time

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"
SIGNATURE_SCHEME = "v1"


class WebhookSigner:
    """
    Signs webhook payloads the way Stripe does.

    Args:
        secret: Endpoint signing secret (whsec_...)
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Webhook secret must not be empty")
        self.secret = secret.encode("utf-8")

    def compute_signature(self, payload: str, timestamp: int) -> str:
        signed_payload = f"{timestamp}.{payload}"
        return hmac.new(
            self.secret,
            signed_payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def sign_payload(self, payload: str, timestamp: int | None = None) -> str:
        """
        Build a Stripe-Signature header value.

        Args:
            payload: Raw JSON body (exact bytes that will be sent, as str)
            timestamp: Unix timestamp (None = use current time)

        Returns:
            str: "t=...,v1=..."
        """
        if timestamp is None:
            timestamp = int(time.time())
        signature = self.compute_signature(payload, timestamp)
        return f"t={timestamp},{SIGNATURE_SCHEME}={signature}"

    def create_headers(self, payload: str, timestamp: int | None = None) -> dict[str, str]:
        """Headers for POSTing a signed event to the webhook endpoint."""
        return {
            SIGNATURE_HEADER: self.sign_payload(payload, timestamp),
            "Content-Type": "application/json",
            "User-Agent": "CutGlue-Webhook/1.0",
        }


def parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    """
    Split a Stripe-Signature header into (timestamp, v1 signatures).

    Unknown schemes (e.g. v0) are skipped. A missing or non-numeric
    timestamp yields None.
    """
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    return timestamp, signatures


def generate_webhook_secret() -> str:
    """Random signing secret in Stripe's whsec_ format."""
    return f"whsec_{secrets.token_hex(24)}"
