"""
Billing notifications (trial ending, payment failed, receipts).
"""

from cutglue.notifications.email import (
    EmailNotifier,
    LoggingNotifier,
    Notification,
    NotificationDispatcher,
    NotificationKind,
    build_notifier,
)

__all__ = [
    "EmailNotifier",
    "LoggingNotifier",
    "Notification",
    "NotificationDispatcher",
    "NotificationKind",
    "build_notifier",
]
