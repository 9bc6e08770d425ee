"""
Tests for quota enforcement.

Tests:
- check_quota allows and denies without consuming
- enforce consumes atomically and raises QuotaExceededError at the limit
- Effective tier follows subscription status
- guarded(): validation failures consume nothing, downstream failures keep the charge
- Storage failures fail closed
- record_usage quantities, audit rows and concurrent counting
- Effective tier driven by webhook events (unfinished upgrades, payment failure)
- 429 response shape
"""

import asyncio
import json
import sqlite3
from datetime import UTC, datetime, timedelta

import pytest
from conftest import checkout_completed, deliver, invoice_event, subscription_event

from cutglue.billing.errors import (
    DownstreamServiceError,
    QuotaExceededError,
    StorageError,
)
from cutglue.billing.quota_middleware import QuotaAllowed, QuotaDenied, quota_exceeded_response
from cutglue.models.billing import Feature, SubscriptionStatus, SubscriptionTier


async def _subscribe(store, user_id: str, tier: SubscriptionTier, status: SubscriptionStatus):
    await store.apply(
        "seed_subscription",
        lambda w: w.create_subscription(
            stripe_subscription_id=f"sub_{user_id}",
            stripe_customer_id=f"cus_{user_id}",
            tier=tier,
            status=status,
            user_id=user_id,
        ),
    )


class TestCheckQuota:
    @pytest.mark.asyncio
    async def test_free_user_allowed_until_daily_limit(self, enforcer):
        decision = await enforcer.check_quota("user_1", Feature.AI_GENERATION)
        assert isinstance(decision, QuotaAllowed)
        assert decision.tier == SubscriptionTier.FREE

        await enforcer.enforce("user_1", Feature.AI_GENERATION)
        await enforcer.enforce("user_1", Feature.AI_GENERATION)

        decision = await enforcer.check_quota("user_1", Feature.AI_GENERATION)
        assert isinstance(decision, QuotaDenied)
        assert decision.window == "daily"
        assert decision.limit == 2
        assert decision.used == 2
        assert decision.reset_at > datetime.now(UTC)

    @pytest.mark.asyncio
    async def test_check_consumes_nothing(self, enforcer, ledger):
        for _ in range(5):
            await enforcer.check_quota("user_1", Feature.AI_GENERATION)

        usage = await ledger.get_usage("user_1", Feature.AI_GENERATION)
        assert usage.used_today == 0

    @pytest.mark.asyncio
    async def test_unknown_feature_is_denied(self, enforcer):
        decision = await enforcer.check_quota("user_1", "teleportation")

        assert isinstance(decision, QuotaDenied)
        assert decision.limit == 0
        assert decision.feature == "teleportation"

    @pytest.mark.asyncio
    async def test_unlimited_feature_always_allowed(self, enforcer, store):
        await _subscribe(store, "user_1", SubscriptionTier.PRO, SubscriptionStatus.ACTIVE)

        decision = await enforcer.check_quota("user_1", Feature.AI_GENERATION)

        assert isinstance(decision, QuotaAllowed)
        assert decision.tier == SubscriptionTier.PRO
        assert decision.limit.is_unlimited


class TestEffectiveTier:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected",
        [
            (SubscriptionStatus.ACTIVE, SubscriptionTier.MAKER),
            (SubscriptionStatus.TRIALING, SubscriptionTier.MAKER),
            (SubscriptionStatus.PAST_DUE, SubscriptionTier.FREE),
            (SubscriptionStatus.CANCELED, SubscriptionTier.FREE),
            (SubscriptionStatus.INCOMPLETE, SubscriptionTier.FREE),
        ],
    )
    async def test_resolve_tier_by_status(self, enforcer, store, status, expected):
        await _subscribe(store, "user_1", SubscriptionTier.MAKER, status)

        assert await enforcer.resolve_tier("user_1") == expected

    @pytest.mark.asyncio
    async def test_user_without_subscription_is_free(self, enforcer):
        assert await enforcer.resolve_tier("nobody") == SubscriptionTier.FREE


class TestEnforce:
    @pytest.mark.asyncio
    async def test_enforce_returns_post_increment_usage(self, enforcer):
        record = await enforcer.enforce("user_1", Feature.TEMPLATE_DOWNLOAD)

        assert record.used_today == 1
        assert record.used_this_month == 1

    @pytest.mark.asyncio
    async def test_enforce_raises_at_limit(self, enforcer, ledger):
        await enforcer.enforce("user_1", Feature.PROJECT_CREATION)

        with pytest.raises(QuotaExceededError) as exc_info:
            await enforcer.enforce("user_1", Feature.PROJECT_CREATION)

        error = exc_info.value
        assert error.feature == "project_creation"
        assert error.tier == "free"
        assert error.limit == 1
        assert error.used == 1
        assert error.window == "daily"
        assert error.status_code == 429

        usage = await ledger.get_usage("user_1", Feature.PROJECT_CREATION)
        assert usage.used_today == 1

    @pytest.mark.asyncio
    async def test_enforce_unknown_feature_raises(self, enforcer):
        with pytest.raises(QuotaExceededError) as exc_info:
            await enforcer.enforce("user_1", "teleportation")

        assert exc_info.value.limit == 0

    @pytest.mark.asyncio
    async def test_concurrent_enforce_grants_exactly_the_limit(self, enforcer, ledger):
        async def attempt():
            try:
                await enforcer.enforce("user_1", Feature.AI_GENERATION)
                return True
            except QuotaExceededError:
                return False

        results = await asyncio.gather(*(attempt() for _ in range(12)))

        assert results.count(True) == 2
        usage = await ledger.get_usage("user_1", Feature.AI_GENERATION)
        assert usage.used_today == 2

    @pytest.mark.asyncio
    async def test_upgrade_raises_limits_immediately(self, enforcer, store):
        await enforcer.enforce("user_1", Feature.AI_GENERATION)
        await enforcer.enforce("user_1", Feature.AI_GENERATION)
        with pytest.raises(QuotaExceededError):
            await enforcer.enforce("user_1", Feature.AI_GENERATION)

        await _subscribe(store, "user_1", SubscriptionTier.MAKER, SubscriptionStatus.ACTIVE)

        record = await enforcer.enforce("user_1", Feature.AI_GENERATION)
        assert record.used_today == 3

    @pytest.mark.asyncio
    async def test_storage_error_fails_closed(self, enforcer, billing_db, monkeypatch):
        def broken_connection():
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(billing_db, "_get_connection", broken_connection)

        with pytest.raises(StorageError):
            await enforcer.enforce("user_1", Feature.AI_GENERATION)

    @pytest.mark.asyncio
    async def test_record_usage_ignores_limits(self, enforcer):
        for _ in range(3):
            record = await enforcer.record_usage("user_1", Feature.PROJECT_CREATION)

        assert record.used_today == 3


class TestGuarded:
    @pytest.mark.asyncio
    async def test_runs_operation_after_consuming(self, enforcer, ledger):
        calls = []

        async def operation():
            calls.append("ran")
            return {"ok": True}

        result = await enforcer.guarded("user_1", Feature.AI_ANALYSIS, operation)

        assert result == {"ok": True}
        assert calls == ["ran"]
        usage = await ledger.get_usage("user_1", Feature.AI_ANALYSIS)
        assert usage.used_today == 1

    @pytest.mark.asyncio
    async def test_validation_failure_consumes_nothing(self, enforcer, ledger):
        async def operation():
            raise AssertionError("must not run")

        def validate():
            raise ValueError("blank prompt")

        with pytest.raises(ValueError):
            await enforcer.guarded("user_1", Feature.AI_ANALYSIS, operation, validate=validate)

        usage = await ledger.get_usage("user_1", Feature.AI_ANALYSIS)
        assert usage.used_today == 0

    @pytest.mark.asyncio
    async def test_async_validation_is_awaited(self, enforcer, ledger):
        async def validate():
            raise ValueError("bad options")

        async def operation():
            return None

        with pytest.raises(ValueError):
            await enforcer.guarded("user_1", Feature.AI_ANALYSIS, operation, validate=validate)

        usage = await ledger.get_usage("user_1", Feature.AI_ANALYSIS)
        assert usage.used_today == 0

    @pytest.mark.asyncio
    async def test_downstream_failure_keeps_charge(self, enforcer, ledger):
        async def operation():
            raise ConnectionError("worker unreachable")

        with pytest.raises(DownstreamServiceError):
            await enforcer.guarded("user_1", Feature.AI_ANALYSIS, operation)

        usage = await ledger.get_usage("user_1", Feature.AI_ANALYSIS)
        assert usage.used_today == 1

    @pytest.mark.asyncio
    async def test_quota_exhausted_skips_operation(self, enforcer):
        calls = []

        async def operation():
            calls.append("ran")

        await enforcer.guarded("user_1", Feature.PROJECT_CREATION, operation)
        with pytest.raises(QuotaExceededError):
            await enforcer.guarded("user_1", Feature.PROJECT_CREATION, operation)

        assert calls == ["ran"]


def test_quota_exceeded_response_shape():
    reset_at = datetime.now(UTC) + timedelta(hours=3)
    error = QuotaExceededError(
        feature="ai_generation",
        tier="free",
        limit=2,
        used=2,
        window="daily",
        reset_at=reset_at,
    )

    response = quota_exceeded_response(error, "https://cutglue.build/pricing")

    assert response.status_code == 429
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert 0 < int(response.headers["Retry-After"]) <= 3 * 3600

    body = json.loads(response.body)
    assert body["error"] == "quota_exceeded"
    assert body["upgrade_url"] == "https://cutglue.build/pricing"
    assert body["usage"]["window"] == "daily"
    assert body["usage"]["used"] == 2


@pytest.mark.asyncio
async def test_starter_check_and_record_until_denied(enforcer, store):
    await _subscribe(store, "user_1", SubscriptionTier.STARTER, SubscriptionStatus.ACTIVE)

    for _ in range(5):
        decision = await enforcer.check_quota("user_1", Feature.AI_GENERATION)
        assert decision.allowed
        await enforcer.record_usage("user_1", Feature.AI_GENERATION)

    decision = await enforcer.check_quota("user_1", Feature.AI_GENERATION)

    assert not decision.allowed
    assert decision.limit == 5


class TestRecordUsage:
    @pytest.mark.asyncio
    async def test_concurrent_records_all_count(self, enforcer, billing_db):
        await asyncio.gather(
            *(enforcer.record_usage("user_1", Feature.TEMPLATE_DOWNLOAD) for _ in range(30))
        )

        usage = await enforcer.ledger.get_usage("user_1", Feature.TEMPLATE_DOWNLOAD)
        assert usage.used_today == 30
        assert usage.used_this_month == 30
        assert (await billing_db.table_counts())["usage_records"] == 30

    @pytest.mark.asyncio
    async def test_quantity_and_metadata_recorded(self, enforcer):
        record = await enforcer.record_usage(
            "user_1", Feature.EXPORT_OPERATION, quantity=3, metadata={"format": "svg"}
        )

        assert record.used_today == 3
        events = await enforcer.ledger.list_usage_events("user_1", Feature.EXPORT_OPERATION)
        assert [(e.quantity, e.metadata) for e in events] == [(3, {"format": "svg"})]

    @pytest.mark.asyncio
    async def test_recorded_quantity_counts_toward_quota(self, enforcer):
        # Free export_operation allows 5 a day
        await enforcer.record_usage("user_1", Feature.EXPORT_OPERATION, quantity=5)

        decision = await enforcer.check_quota("user_1", Feature.EXPORT_OPERATION)

        assert not decision.allowed
        assert decision.used == 5


class TestTierFromWebhooks:
    @pytest.mark.asyncio
    async def test_unfinished_upgrade_keeps_paid_tier(self, enforcer, processor, signer, store):
        await deliver(processor, signer, checkout_completed(tier="maker"))
        await deliver(
            processor,
            signer,
            subscription_event(
                "customer.subscription.created",
                subscription="sub_2",
                status="incomplete",
                price_id="price_pro_m",
                metadata={"user_id": "user_1"},
            ),
        )

        current = await store.get_subscription("user_1")
        assert current.stripe_subscription_id == "sub_1"
        assert await enforcer.resolve_tier("user_1") == SubscriptionTier.MAKER

    @pytest.mark.asyncio
    async def test_completed_upgrade_takes_over(self, enforcer, processor, signer):
        await deliver(processor, signer, checkout_completed(tier="maker"))
        await deliver(
            processor,
            signer,
            subscription_event(
                "customer.subscription.created",
                subscription="sub_2",
                status="incomplete",
                price_id="price_pro_m",
                metadata={"user_id": "user_1"},
            ),
        )
        await deliver(
            processor,
            signer,
            subscription_event(subscription="sub_2", status="active", price_id="price_pro_m"),
        )

        assert await enforcer.resolve_tier("user_1") == SubscriptionTier.PRO

    @pytest.mark.asyncio
    async def test_payment_failure_drops_to_free_limits(self, enforcer, processor, signer):
        await deliver(processor, signer, checkout_completed(tier="maker"))
        for _ in range(3):
            await enforcer.record_usage("user_1", Feature.AI_GENERATION)

        assert (await enforcer.check_quota("user_1", Feature.AI_GENERATION)).allowed

        await deliver(processor, signer, invoice_event("invoice.payment_failed"))

        decision = await enforcer.check_quota("user_1", Feature.AI_GENERATION)
        assert isinstance(decision, QuotaDenied)
        assert decision.tier == SubscriptionTier.FREE
        assert decision.window == "daily"
        assert decision.limit == 2
        assert decision.used == 3
