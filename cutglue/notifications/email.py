"""
Billing email notifications via MailerSend.

Notifications are best effort: the billing event processor queues them after
its transaction commits, and a failed send is logged and counted but never
affects billing state.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from cutglue.config import EmailConfig
from cutglue.observability.metrics import track_notification_failure
from cutglue.resilience.circuit_breakers import (
    call_with_breaker_async,
    get_email_breaker,
    with_retry,
)

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    TRIAL_ENDING = "trial_ending"
    PAYMENT_FAILED = "payment_failed"
    INVOICE_RECEIPT = "invoice_receipt"
    SUBSCRIPTION_CHANGED = "subscription_changed"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    user_id: str | None
    to_email: str | None
    variables: dict[str, Any] = field(default_factory=dict)


class TransientEmailError(Exception):
    """MailerSend answered 429 or 5xx; worth retrying."""

    pass


def _money(cents: Any, currency: str = "usd") -> str:
    try:
        return f"{int(cents) / 100:.2f} {currency.upper()}"
    except (TypeError, ValueError):
        return str(cents)


def render(notification: Notification) -> tuple[str, str]:
    """
    Subject and plain-text body for a notification.

    Returns:
        tuple: (subject, text)
    """
    v = notification.variables
    kind = notification.kind

    if kind == NotificationKind.TRIAL_ENDING:
        return (
            "Your CutGlueBuild trial is ending soon",
            f"Your {v.get('tier', 'CutGlueBuild')} trial ends on {v.get('trial_end', 'soon')}. "
            "Add a payment method to keep your plan.",
        )
    if kind == NotificationKind.PAYMENT_FAILED:
        return (
            "Payment failed - action required",
            f"We could not collect {_money(v.get('amount_due', 0), v.get('currency', 'usd'))}. "
            f"Update your payment method: {v.get('hosted_invoice_url') or 'your billing page'}.",
        )
    if kind == NotificationKind.INVOICE_RECEIPT:
        return (
            "Your CutGlueBuild receipt",
            f"Thanks! We received {_money(v.get('amount_paid', 0), v.get('currency', 'usd'))}. "
            f"Invoice: {v.get('hosted_invoice_url') or v.get('invoice_id', '')}",
        )
    return (
        f"Your CutGlueBuild subscription has been {v.get('action', 'updated')}",
        f"Your plan is now {v.get('tier', 'free')} ({v.get('status', 'active')}).",
    )


class LoggingNotifier:
    """Notifier used when no MailerSend key is configured."""

    async def notify(self, notification: Notification) -> None:
        subject, _ = render(notification)
        logger.info(
            "Billing notification (email disabled)",
            extra={
                "kind": notification.kind.value,
                "user_id": notification.user_id,
                "subject": subject,
            },
        )


class EmailNotifier:
    """
    Send billing notifications through the MailerSend HTTP API.

    Transport errors and 429/5xx answers are retried with exponential
    backoff; repeated failures open the MailerSend circuit breaker.
    """

    def __init__(
        self,
        config: EmailConfig,
        client: httpx.Client | None = None,
        retry_min_wait: float = 0.5,
        retry_max_wait: float = 4.0,
    ):
        self.config = config
        self.breaker = get_email_breaker()
        self._client = client or httpx.Client(
            base_url=config.api_base_url,
            timeout=config.timeout_seconds,
        )
        self._send_with_retry = with_retry(
            max_attempts=config.max_attempts,
            min_wait=retry_min_wait,
            max_wait=retry_max_wait,
            exceptions=(httpx.TransportError, TransientEmailError),
        )(self._post)

    def _payload(self, notification: Notification) -> dict[str, Any]:
        subject, text = render(notification)
        return {
            "from": {"email": self.config.from_address, "name": self.config.from_name},
            "to": [{"email": notification.to_email}],
            "subject": subject,
            "text": text,
            "tags": ["billing", notification.kind.value],
        }

    def _post(self, payload: dict[str, Any]) -> None:
        response = self._client.post(
            "/email",
            json=payload,
            headers={"Authorization": f"Bearer {self.config.mailersend_api_key}"},
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientEmailError(f"MailerSend returned {response.status_code}")
        response.raise_for_status()

    async def notify(self, notification: Notification) -> None:
        """
        Send one notification.

        Raises:
            httpx.HTTPError, TransientEmailError, CircuitOpenError: when delivery fails
        """
        if not notification.to_email:
            logger.warning(
                "Skipping billing email without recipient",
                extra={"kind": notification.kind.value, "user_id": notification.user_id},
            )
            return

        await call_with_breaker_async(
            self.breaker, self._send_with_retry, self._payload(notification)
        )
        logger.info(
            "Billing email sent",
            extra={"kind": notification.kind.value, "user_id": notification.user_id},
        )

    def close(self) -> None:
        self._client.close()


class NotificationDispatcher:
    """
    Fire-and-forget delivery of notifications as background tasks.

    Failures are logged and counted and never propagate to the caller.
    """

    def __init__(self, notifier: "EmailNotifier | LoggingNotifier"):
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            task = asyncio.create_task(self._deliver(notification))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self.notifier.notify(notification)
        except Exception as e:
            track_notification_failure(notification.kind.value)
            logger.error(
                "Billing notification failed",
                extra={
                    "kind": notification.kind.value,
                    "user_id": notification.user_id,
                    "error": str(e),
                },
            )

    async def drain(self) -> None:
        """Wait for queued notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_notifier(config: EmailConfig) -> "EmailNotifier | LoggingNotifier":
    if config.is_configured:
        return EmailNotifier(config)
    return LoggingNotifier()
