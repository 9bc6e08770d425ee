"""
Usage ledger: per user, feature and calendar day counters.

Calendar days and months are taken in the billing timezone (BILLING_TIMEZONE).
One row exists per (user, feature, day). A new day's row starts its monthly
counter from the latest earlier row of the same month, so yesterday's row is
never rewritten and a month boundary starts from zero.

Every counter write is one SQL statement, which makes the limit check and
the increment atomic:
- increment_usage(): unconditional upsert
- try_increment(): the same upsert guarded by the limit, used for
  check-and-consume so two concurrent requests cannot both take the last unit

Each successful increment also appends a usage_records row (quantity and
optional metadata) in the same transaction. Those rows are an audit trail;
limits are always read from the counters.
"""

import json
import logging
import sqlite3
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any

from cutglue.billing.errors import StorageError
from cutglue.billing.tiers import UNLIMITED, QuotaLimit, TierCatalog
from cutglue.models.billing import (
    Feature,
    FeatureUsage,
    SubscriptionTier,
    UsageEvent,
    UsageRecord,
    UsageSummary,
)
from cutglue.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

# Month-to-date usage before today comes from the latest earlier row of the
# same month. The SELECT needs a WHERE clause so SQLite does not parse
# ON CONFLICT as a join constraint.
_UPSERT_SQL = """
    INSERT INTO usage_quotas (
        user_id, feature, usage_date, usage_month,
        used_today, used_this_month, last_reset_at, created_at, updated_at
    )
    SELECT :user_id, :feature, :usage_date, :usage_month,
           :quantity, prior.used + :quantity, :now, :now, :now
    FROM (
        SELECT COALESCE(
            (SELECT used_this_month FROM usage_quotas
             WHERE user_id = :user_id AND feature = :feature
               AND usage_month = :usage_month AND usage_date < :usage_date
             ORDER BY usage_date DESC LIMIT 1),
            0
        ) AS used
    ) AS prior
    WHERE (:daily_limit < 0 OR :quantity <= :daily_limit)
      AND (:monthly_limit < 0 OR prior.used + :quantity <= :monthly_limit)
    ON CONFLICT (user_id, feature, usage_date) DO UPDATE SET
        used_today = usage_quotas.used_today + :quantity,
        used_this_month = usage_quotas.used_this_month + :quantity,
        updated_at = excluded.updated_at
    WHERE (:daily_limit < 0 OR usage_quotas.used_today + :quantity <= :daily_limit)
      AND (:monthly_limit < 0 OR usage_quotas.used_this_month + :quantity <= :monthly_limit)
    RETURNING user_id, feature, usage_date, used_today, used_this_month, last_reset_at
"""

_AUDIT_SQL = """
    INSERT INTO usage_records (user_id, feature, quantity, usage_date, recorded_at, metadata)
    VALUES (:user_id, :feature, :quantity, :usage_date, :now, :metadata)
"""

DEFAULT_RECORD_RETENTION_DAYS = 90


UNLIMITED_LIMIT = QuotaLimit(UNLIMITED, UNLIMITED)


def _month_key(day: date) -> str:
    return day.strftime("%Y-%m")


def _row_to_record(row: sqlite3.Row) -> UsageRecord:
    return UsageRecord(
        user_id=row["user_id"],
        feature=Feature(row["feature"]),
        usage_date=date.fromisoformat(row["usage_date"]),
        used_today=row["used_today"],
        used_this_month=row["used_this_month"],
        last_reset_at=datetime.fromisoformat(row["last_reset_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        id=row["id"],
        user_id=row["user_id"],
        feature=Feature(row["feature"]),
        quantity=row["quantity"],
        usage_date=date.fromisoformat(row["usage_date"]),
        recorded_at=datetime.fromisoformat(row["recorded_at"]),
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
    )


def _reset_if_new_day(record: UsageRecord, today: date) -> UsageRecord:
    """
    Project a stored record onto today.

    The daily counter is zeroed when the stored day differs; the monthly
    counter only when the month differs.
    """
    if record.usage_date == today:
        return record

    same_month = (record.usage_date.year, record.usage_date.month) == (today.year, today.month)
    return record.model_copy(
        update={
            "usage_date": today,
            "used_today": 0,
            "used_this_month": record.used_this_month if same_month else 0,
        }
    )


def _remaining(limit: int, used: int) -> int | None:
    if limit == UNLIMITED:
        return None
    return max(0, limit - used)


class UsageLedger:
    """
    Per-user usage counters backed by the billing database.

    Args:
        db: Billing database
        catalog: Tier catalog (limits for summaries)
        billing_tz: Timezone whose calendar days bound the daily window
    """

    def __init__(self, db: BillingDatabase, catalog: TierCatalog, billing_tz: tzinfo = UTC):
        self.db = db
        self.catalog = catalog
        self.billing_tz = billing_tz

    def today(self) -> date:
        return datetime.now(self.billing_tz).date()

    def reset_at(self, window: str, day: date | None = None) -> datetime:
        """
        Next reset instant (UTC) for the daily or monthly window containing day.
        """
        day = day or self.today()
        if window == "daily":
            boundary = day + timedelta(days=1)
        else:
            boundary = (day.replace(day=1) + timedelta(days=32)).replace(day=1)
        return datetime.combine(boundary, time.min, tzinfo=self.billing_tz).astimezone(UTC)

    async def get_usage(
        self, user_id: str, feature: Feature, day: date | None = None
    ) -> UsageRecord:
        """
        Current counters for a user and feature.

        Reading never creates a row. A user with no history gets a zeroed record.
        """
        day = day or self.today()
        feature = Feature(feature)

        def select_latest(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute(
                """
                SELECT user_id, feature, usage_date, used_today, used_this_month, last_reset_at
                FROM usage_quotas
                WHERE user_id = ? AND feature = ? AND usage_date <= ?
                ORDER BY usage_date DESC
                LIMIT 1
                """,
                (user_id, feature.value, day.isoformat()),
            ).fetchone()

        row = await self.db.run("get_usage", select_latest)
        if row is None:
            return UsageRecord(user_id=user_id, feature=feature, usage_date=day)
        return _reset_if_new_day(_row_to_record(row), day)

    async def increment_usage(
        self,
        user_id: str,
        feature: Feature,
        day: date | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> UsageRecord:
        """
        Atomically add quantity uses to today's daily and monthly counters.

        Returns:
            UsageRecord: post-increment counters
        """
        record = await self._upsert(
            user_id, Feature(feature), UNLIMITED_LIMIT, day, quantity, metadata
        )
        if record is None:
            raise StorageError("Unconditional usage increment returned no row", "increment_usage")
        return record

    async def try_increment(
        self,
        user_id: str,
        feature: Feature,
        limit: QuotaLimit,
        day: date | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> UsageRecord | None:
        """
        Consume quantity uses only if the result stays within limit.

        Returns:
            UsageRecord with post-increment counters, or None when the daily or
            monthly limit would be exceeded (nothing is written)
        """
        return await self._upsert(user_id, Feature(feature), limit, day, quantity, metadata)

    async def _upsert(
        self,
        user_id: str,
        feature: Feature,
        limit: QuotaLimit,
        day: date | None,
        quantity: int,
        metadata: dict[str, Any] | None,
    ) -> UsageRecord | None:
        if quantity < 1:
            raise ValueError(f"quantity must be at least 1, got {quantity}")

        day = day or self.today()
        params = {
            "user_id": user_id,
            "feature": feature.value,
            "usage_date": day.isoformat(),
            "usage_month": _month_key(day),
            "now": datetime.now(UTC).isoformat(),
            "daily_limit": limit.daily,
            "monthly_limit": limit.monthly,
            "quantity": quantity,
            "metadata": json.dumps(metadata, default=str) if metadata else None,
        }

        def upsert(conn: sqlite3.Connection) -> sqlite3.Row | None:
            # Drain RETURNING before the next statement on this connection
            rows = conn.execute(_UPSERT_SQL, params).fetchall()
            if not rows:
                return None
            conn.execute(_AUDIT_SQL, params)
            return rows[0]

        row = await self.db.run_in_transaction("increment_usage", upsert)
        if row is None:
            logger.info(
                "Usage increment refused at limit",
                extra={
                    "user_id": user_id,
                    "feature": feature.value,
                    "quantity": quantity,
                    "daily_limit": limit.daily,
                    "monthly_limit": limit.monthly,
                },
            )
            return None

        record = _row_to_record(row)
        logger.debug(
            "Usage incremented",
            extra={
                "user_id": user_id,
                "feature": feature.value,
                "quantity": quantity,
                "used_today": record.used_today,
                "used_this_month": record.used_this_month,
            },
        )
        return record

    async def list_usage_events(
        self, user_id: str, feature: Feature | None = None, limit: int = 100
    ) -> list[UsageEvent]:
        """Most recent audit rows for a user, newest first."""

        def select(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            if feature is None:
                return conn.execute(
                    "SELECT * FROM usage_records WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
            return conn.execute(
                """
                SELECT * FROM usage_records
                WHERE user_id = ? AND feature = ?
                ORDER BY id DESC LIMIT ?
                """,
                (user_id, Feature(feature).value, limit),
            ).fetchall()

        return [_row_to_event(row) for row in await self.db.run("list_usage_events", select)]

    async def usage_summary(
        self, user_id: str, tier: SubscriptionTier, day: date | None = None
    ) -> UsageSummary:
        """
        Per-feature usage with limits for dashboards.

        Not authoritative: enforcement always goes through try_increment().
        """
        day = day or self.today()

        def select_month(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(
                """
                SELECT user_id, feature, usage_date, used_today, used_this_month, last_reset_at
                FROM usage_quotas
                WHERE user_id = ? AND usage_month = ? AND usage_date <= ?
                ORDER BY usage_date DESC
                """,
                (user_id, _month_key(day), day.isoformat()),
            ).fetchall()

        latest: dict[str, UsageRecord] = {}
        for row in await self.db.run("usage_summary", select_month):
            if row["feature"] in latest:
                continue
            try:
                latest[row["feature"]] = _reset_if_new_day(_row_to_record(row), day)
            except ValueError:
                logger.warning(
                    "Skipping usage row with unknown feature",
                    extra={"user_id": user_id, "feature": row["feature"]},
                )

        features = []
        for feature in Feature:
            record = latest.get(feature.value) or UsageRecord(
                user_id=user_id, feature=feature, usage_date=day
            )
            limit = self.catalog.limit_for(tier, feature)
            features.append(
                FeatureUsage(
                    feature=feature,
                    used_today=record.used_today,
                    used_this_month=record.used_this_month,
                    daily_limit=limit.daily,
                    monthly_limit=limit.monthly,
                    remaining_today=_remaining(limit.daily, record.used_today),
                    remaining_this_month=_remaining(limit.monthly, record.used_this_month),
                )
            )

        return UsageSummary(user_id=user_id, tier=tier, usage_date=day, features=features)

    async def purge_before(self, cutoff: date | None = None) -> int:
        """
        Delete usage audit rows recorded before cutoff.

        Args:
            cutoff: First day to keep (default: 90 days before today)

        Returns:
            int: Rows deleted
        """
        cutoff = cutoff or self.today() - timedelta(days=DEFAULT_RECORD_RETENTION_DAYS)

        def delete(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "DELETE FROM usage_records WHERE usage_date < ?", (cutoff.isoformat(),)
            ).rowcount

        deleted = await self.db.run("purge_usage_records", delete)
        logger.info(
            "Purged usage records",
            extra={"cutoff": cutoff.isoformat(), "deleted": deleted},
        )
        return deleted

    async def purge_counters_before(self, cutoff: date) -> int:
        """
        Delete counter rows older than cutoff.

        The cutoff is moved back to the first day of its month; rows of that
        month are kept because new days roll their monthly counter forward
        from them.

        Returns:
            int: Rows deleted
        """
        effective = cutoff.replace(day=1)

        def delete(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "DELETE FROM usage_quotas WHERE usage_date < ?", (effective.isoformat(),)
            ).rowcount

        deleted = await self.db.run("purge_usage", delete)
        logger.info(
            "Purged usage counters",
            extra={"cutoff": effective.isoformat(), "deleted": deleted},
        )
        return deleted
