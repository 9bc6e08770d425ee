"""
CutGlue billing core.

Usage metering and Stripe billing-webhook service for CutGlueBuild.

Tracks per-user, per-feature quota consumption against subscription tiers,
keeps local subscription, customer and invoice state in sync with Stripe
through idempotent webhook processing, and exposes a narrow HTTP API to the
web application.

Example:
    >>> from cutglue import get_settings
    >>> settings = get_settings()
    >>> print(settings.billing.timezone)
"""

from cutglue.config import get_settings

__all__ = ["get_settings"]
