#!/usr/bin/env python3
"""
Usage ledger retention job.

Deletes per-use audit rows older than the record retention window and
counter rows older than the counter retention window. Counter rows of the
month the cutoff falls in are always kept, so monthly counters stay correct.

Usage:
    python scripts/purge_usage.py [--record-days N] [--days N] [--db-path PATH]

Options:
    --record-days N   Audit row retention (default: DATABASE_USAGE_RECORD_RETENTION_DAYS)
    --days N          Counter retention in days (default: DATABASE_USAGE_RETENTION_DAYS)
    --db-path PATH    Path to SQLite database file (default: DATABASE_PATH)

Run daily from cron.
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

from cutglue.billing.errors import StorageError
from cutglue.billing.tiers import TierCatalog
from cutglue.billing.usage_ledger import UsageLedger
from cutglue.config import get_settings
from cutglue.storage.database import BillingDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def purge(db_path: str, record_days: int, counter_days: int) -> tuple[int, int]:
    settings = get_settings()
    db = BillingDatabase(db_path, settings.database.busy_timeout_seconds)
    try:
        await db.initialize()
        ledger = UsageLedger(db, TierCatalog(), billing_tz=settings.billing.tzinfo)
        today = ledger.today()

        record_cutoff = today - timedelta(days=record_days)
        logger.info(f"Purging usage records before {record_cutoff.isoformat()}")
        records = await ledger.purge_before(record_cutoff)

        counter_cutoff = today - timedelta(days=counter_days)
        logger.info(f"Purging usage counters before {counter_cutoff.replace(day=1).isoformat()}")
        counters = await ledger.purge_counters_before(counter_cutoff)
        return records, counters
    finally:
        db.close()


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Purge old usage ledger rows")
    parser.add_argument(
        "--record-days",
        type=int,
        default=settings.database.usage_record_retention_days,
        help="Retention window for per-use audit rows, in days",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=settings.database.usage_retention_days,
        help="Retention window for counter rows, in days",
    )
    parser.add_argument("--db-path", default=settings.database.path)
    args = parser.parse_args()

    if args.days < 1 or args.record_days < 1:
        parser.error("--days and --record-days must be at least 1")

    try:
        records, counters = asyncio.run(purge(args.db_path, args.record_days, args.days))
    except StorageError as e:
        logger.error(f"Usage purge failed: {e}")
        sys.exit(1)

    logger.info(f"Deleted {records} usage records and {counters} counter rows")


if __name__ == "__main__":
    main()
