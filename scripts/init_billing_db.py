#!/usr/bin/env python3
"""
Database initialization script for the billing core.

Creates the SQLite schema (usage ledger, customers, subscriptions,
invoices, webhook event log) and reports row counts.

Usage:
    python scripts/init_billing_db.py [--db-path PATH]

Options:
    --db-path PATH    Path to SQLite database file (default: DATABASE_PATH)

This script is idempotent - safe to run multiple times.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from cutglue.config import get_settings
from cutglue.storage.database import TABLES, BillingDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def init_database(db_path: str) -> bool:
    """
    Initialize billing database schema.

    Returns:
        bool: True if initialization succeeded
    """
    db = None
    try:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing billing database at {db_path}")

        db = BillingDatabase(db_path=db_path)
        await db.initialize()

        counts = await db.table_counts()
        missing = set(TABLES) - set(counts)
        if missing:
            logger.error(f"Missing tables: {missing}")
            return False

        logger.info(f"Found tables: {', '.join(sorted(counts))}")
        for table, count in counts.items():
            logger.info(f"  {table}: {count} rows")

        logger.info("Database initialization complete")
        return True

    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        return False

    finally:
        if db is not None:
            db.close()


def main():
    parser = argparse.ArgumentParser(description="Initialize billing database schema")
    parser.add_argument(
        "--db-path",
        default=None,
        help="Path to SQLite database file (default: DATABASE_PATH setting)",
    )
    args = parser.parse_args()
    db_path = args.db_path or get_settings().database.path

    if not asyncio.run(init_database(db_path)):
        logger.error("Database initialization failed")
        sys.exit(1)

    logger.info("=== Database Ready ===")
    logger.info(f"Database path: {Path(db_path).absolute()}")


if __name__ == "__main__":
    main()
