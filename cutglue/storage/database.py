"""
Billing storage using SQLite.

Tables:
- usage_quotas: per user/feature/day counters (the usage ledger)
- usage_records: one audit row per recorded use, with quantity and metadata
- billing_customers: user <-> Stripe customer mapping
- billing_subscriptions: local mirror of Stripe subscriptions
- billing_invoices: local mirror of Stripe invoices
- billing_webhook_events: idempotency log for Stripe events

Concurrency:
- One connection per process in autocommit mode, WAL journal
- Calls are serialized by a lock and run in a worker thread so the event
  loop never blocks
- Multi-statement writes use explicit BEGIN IMMEDIATE transactions
- busy_timeout bounds how long a writer waits on another process's lock
"""

import asyncio
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from cutglue.billing.errors import StorageError
from cutglue.observability.metrics import track_storage_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS usage_quotas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        feature TEXT NOT NULL,
        usage_date TEXT NOT NULL,
        usage_month TEXT NOT NULL,
        used_today INTEGER NOT NULL DEFAULT 0,
        used_this_month INTEGER NOT NULL DEFAULT 0,
        last_reset_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        UNIQUE (user_id, feature, usage_date),
        CHECK (used_today >= 0),
        CHECK (used_this_month >= used_today)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        feature TEXT NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 1,
        usage_date TEXT NOT NULL,
        recorded_at TEXT NOT NULL,
        metadata TEXT,

        CHECK (quantity > 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_customers (
        stripe_customer_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        email TEXT,
        name TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_subscriptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        stripe_customer_id TEXT NOT NULL,
        stripe_subscription_id TEXT NOT NULL UNIQUE,
        tier TEXT NOT NULL,
        status TEXT NOT NULL,
        current_period_start TEXT,
        current_period_end TEXT,
        cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
        trial_end TEXT,
        canceled_at TEXT,
        last_event_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        CHECK (tier IN ('free', 'starter', 'maker', 'pro')),
        CHECK (status IN ('trialing', 'active', 'past_due', 'canceled', 'incomplete')),
        CHECK (cancel_at_period_end IN (0, 1))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_invoices (
        stripe_invoice_id TEXT PRIMARY KEY,
        user_id TEXT,
        stripe_customer_id TEXT NOT NULL,
        stripe_subscription_id TEXT,
        amount_due INTEGER NOT NULL DEFAULT 0,
        amount_paid INTEGER NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'usd',
        status TEXT NOT NULL,
        period_start TEXT,
        period_end TEXT,
        hosted_invoice_url TEXT,
        invoice_pdf TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        CHECK (status IN ('draft', 'open', 'paid', 'failed', 'uncollectible', 'void'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_webhook_events (
        event_id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        received_at TEXT NOT NULL,
        processed INTEGER NOT NULL DEFAULT 0,
        processed_at TEXT,
        error_message TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,

        CHECK (processed IN (0, 1))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_user_month ON usage_quotas(user_id, feature, usage_month)",
    "CREATE INDEX IF NOT EXISTS idx_usage_date ON usage_quotas(usage_date)",
    "CREATE INDEX IF NOT EXISTS idx_usage_records_user ON usage_records(user_id, feature, recorded_at)",
    "CREATE INDEX IF NOT EXISTS idx_usage_records_recorded ON usage_records(recorded_at)",
    "CREATE INDEX IF NOT EXISTS idx_customers_user ON billing_customers(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON billing_subscriptions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_customer ON billing_subscriptions(stripe_customer_id)",
    "CREATE INDEX IF NOT EXISTS idx_invoices_user ON billing_invoices(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_webhook_events_processed ON billing_webhook_events(processed)",
)

TABLES = (
    "usage_quotas",
    "usage_records",
    "billing_customers",
    "billing_subscriptions",
    "billing_invoices",
    "billing_webhook_events",
)


class BillingDatabase:
    """
    SQLite-backed billing storage.

    Repositories (usage ledger, subscription store) hold a reference to this
    object and submit work through run() and run_in_transaction(); they never
    open their own connections.
    """

    def __init__(self, db_path: str = "./data/billing.db", busy_timeout_seconds: float = 5.0):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a write waits for a competing lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds

        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._initialized = False

    async def initialize(self) -> None:
        """
        Create tables and indexes. Idempotent.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")

        def create_schema(conn: sqlite3.Connection) -> None:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

        await self.run_in_transaction("initialize", create_schema)
        self._initialized = True
        logger.info("Billing database initialized successfully")

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed). Caller holds the lock."""
        if self._conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_seconds * 1000)}")
            self._conn = conn
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside BEGIN IMMEDIATE ... COMMIT.

        The write lock is taken up front, so a read-then-write inside the
        block cannot interleave with another writer. Any exception rolls
        back and propagates.
        """
        with self._lock:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    async def run(self, operation: str, fn: Callable[..., T], *args) -> T:
        """
        Run fn(conn, *args) in a worker thread under the connection lock.

        Each statement commits on its own (autocommit mode).

        Raises:
            StorageError: on any sqlite3 error
        """

        def call() -> T:
            with self._lock:
                return fn(self._get_connection(), *args)

        return await self._execute(operation, call)

    async def run_in_transaction(self, operation: str, fn: Callable[..., T], *args) -> T:
        """
        Run fn(conn, *args) in a worker thread inside one transaction.

        Raises:
            StorageError: on any sqlite3 error (the transaction is rolled back)
        """

        def call() -> T:
            with self.transaction() as conn:
                return fn(conn, *args)

        return await self._execute(operation, call)

    async def _execute(self, operation: str, call: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(call)
        except sqlite3.Error as e:
            track_storage_error(operation)
            logger.error(
                "Billing storage operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StorageError(f"Storage operation '{operation}' failed: {e}", operation) from e

    async def ping(self) -> bool:
        """Verify the database answers a trivial query."""

        def select_one(conn: sqlite3.Connection) -> bool:
            return conn.execute("SELECT 1").fetchone()[0] == 1

        return await self.run("ping", select_one)

    async def table_counts(self) -> dict[str, int]:
        """Row counts per billing table (used by the init script)."""

        def count(conn: sqlite3.Connection) -> dict[str, int]:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in TABLES
            }

        return await self.run("table_counts", count)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


# Global instance
_db: BillingDatabase | None = None


async def get_billing_db() -> BillingDatabase:
    """
    Get global billing database instance.

    Returns:
        BillingDatabase: Initialized database
    """
    global _db
    if _db is None:
        from cutglue.config import get_settings

        settings = get_settings().database
        _db = BillingDatabase(settings.path, settings.busy_timeout_seconds)
        await _db.initialize()
    return _db


def reset_billing_db() -> None:
    """Close and drop the global instance (tests, shutdown)."""
    global _db
    if _db is not None:
        _db.close()
        _db = None
