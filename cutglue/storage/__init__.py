"""
Storage layer for usage counters and billing state.

Uses SQLite (embedded, one file per deployment).
"""

from cutglue.storage.database import BillingDatabase, get_billing_db, reset_billing_db

__all__ = ["BillingDatabase", "get_billing_db", "reset_billing_db"]
