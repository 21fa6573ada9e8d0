"""
Tests for the entitlement checker.

Covers free-tier quota boundaries, unlimited paid tiers, calendar-month
scoping in the metering time zone, period-end reversion and best-effort
increments.
"""

from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st

from farmbook.exceptions import PersistenceError
from farmbook.models.api import BillingStatus, Feature, PlanTier
from farmbook.models.domain import UNLIMITED, EntitlementDecision, SubscriptionState, is_unlimited

MAY = date(2024, 5, 1)


def _subscribe(subscriptions, user_id, tier=PlanTier.PREMIUM, **fields) -> None:
    subscriptions.rows[user_id] = SubscriptionState(user_id=user_id, plan_tier=tier, **fields)


class TestFreeTier:
    """Free-tier quota arithmetic."""

    async def test_new_user_is_free_and_allowed(self, checker, ledger, user_id):
        decision = await checker.check(user_id, Feature.EXPORT)

        assert decision.tier == PlanTier.FREE
        assert decision.allowed is True
        assert decision.used == 0
        assert decision.limit == 3
        assert decision.remaining == 3
        assert decision.period_start == MAY
        assert ledger.get_or_create_calls == 1

    async def test_fourth_export_denied(self, checker, user_id):
        """Three successful exports, then the fourth check is denied."""
        for _ in range(3):
            decision = await checker.check(user_id, Feature.EXPORT)
            assert decision.allowed
            assert await checker.increment_usage(user_id, Feature.EXPORT, decision.period_start)

        decision = await checker.check(user_id, Feature.EXPORT)

        assert decision.allowed is False
        assert decision.used == 3
        assert decision.limit == 3
        assert decision.remaining == 0

    async def test_last_allowed_at_limit_minus_one(self, checker, ledger, user_id):
        ledger._row(user_id, MAY)[Feature.ASSISTANT] = 9

        decision = await checker.check(user_id, Feature.ASSISTANT)

        assert decision.allowed is True
        assert decision.remaining == 1
        assert decision.after_one_use().remaining == 0
        assert decision.after_one_use().allowed is False

    async def test_check_never_changes_counters(self, checker, ledger, user_id):
        for _ in range(5):
            await checker.check(user_id, Feature.RECEIPT_SCAN)
        assert ledger.used(user_id, Feature.RECEIPT_SCAN, MAY) == 0
        assert ledger.increment_calls == 0

    async def test_features_counted_independently(self, checker, user_id):
        await checker.increment_usage(user_id, Feature.EXPORT)
        await checker.increment_usage(user_id, Feature.EXPORT)

        scan = await checker.check(user_id, Feature.RECEIPT_SCAN)
        export = await checker.check(user_id, Feature.EXPORT)

        assert scan.used == 0
        assert export.used == 2


class TestDecisionProperties:
    """Property-based checks over decision arithmetic."""

    @given(
        used=st.integers(min_value=0, max_value=1000),
        limit=st.integers(min_value=0, max_value=1000),
    )
    def test_allowed_iff_below_limit(self, used: int, limit: int):
        decision = EntitlementDecision(
            user_id=uuid4(),
            feature=Feature.ASSISTANT,
            tier=PlanTier.FREE,
            used=used,
            limit=limit,
            period_start=MAY,
        )
        assert decision.allowed == (used < limit)
        assert decision.remaining == max(0, limit - used)
        assert decision.after_one_use().used == used + 1

    @given(used=st.integers(min_value=0, max_value=10**9))
    def test_unlimited_always_allowed(self, used: int):
        decision = EntitlementDecision(
            user_id=uuid4(),
            feature=Feature.EXPORT,
            tier=PlanTier.PREMIUM,
            used=used,
            limit=UNLIMITED,
            period_start=MAY,
        )
        assert decision.allowed
        assert is_unlimited(decision.remaining)


class TestPaidTiers:
    """Unlimited tiers skip the ledger."""

    @pytest.mark.parametrize("tier", [PlanTier.STANDARD, PlanTier.PREMIUM, PlanTier.PRO_YEARLY])
    async def test_always_allowed(self, checker, subscriptions, ledger, user_id, tier):
        _subscribe(subscriptions, user_id, tier)
        ledger._row(user_id, MAY)[Feature.EXPORT] = 500

        decision = await checker.check(user_id, Feature.EXPORT)

        assert decision.allowed is True
        assert decision.used == 0
        assert is_unlimited(decision.limit)
        assert ledger.get_or_create_calls == 0

    async def test_paid_usage_still_counted(self, checker, subscriptions, ledger, user_id):
        _subscribe(subscriptions, user_id)

        assert await checker.increment_usage(user_id, Feature.RECEIPT_SCAN)

        assert ledger.used(user_id, Feature.RECEIPT_SCAN, MAY) == 1

    async def test_unlimited_decision_unchanged_after_use(self, checker, subscriptions, user_id):
        _subscribe(subscriptions, user_id)
        decision = await checker.check(user_id, Feature.ASSISTANT)
        assert decision.after_one_use() == decision

    async def test_past_due_keeps_paid_tier(self, checker, subscriptions, user_id):
        _subscribe(subscriptions, user_id, billing_status=BillingStatus.PAST_DUE)
        decision = await checker.check(user_id, Feature.EXPORT)
        assert decision.tier == PlanTier.PREMIUM


class TestPeriodScoping:
    """Counters are per calendar month in the metering time zone."""

    async def test_month_boundary_resets(self, checker, clock, ledger, user_id):
        clock.now = datetime(2024, 1, 31, 12, 0, tzinfo=UTC)  # 21:00 JST on Jan 31
        for _ in range(3):
            await checker.increment_usage(user_id, Feature.EXPORT)
        assert not (await checker.check(user_id, Feature.EXPORT)).allowed

        clock.now = datetime(2024, 2, 1, 0, 0, tzinfo=UTC)  # 09:00 JST on Feb 1
        decision = await checker.check(user_id, Feature.EXPORT)

        assert decision.allowed
        assert decision.used == 0
        assert decision.period_start == date(2024, 2, 1)
        assert ledger.used(user_id, Feature.EXPORT, date(2024, 1, 1)) == 3

    async def test_month_follows_tokyo_not_utc(self, checker, clock):
        clock.now = datetime(2024, 2, 29, 15, 30, tzinfo=UTC)  # 00:30 JST on Mar 1
        assert checker.current_period_start() == date(2024, 3, 1)

    async def test_increment_uses_period_from_decision(self, checker, clock, ledger, user_id):
        clock.now = datetime(2024, 3, 31, 14, 59, tzinfo=UTC)
        decision = await checker.check(user_id, Feature.RECEIPT_SCAN)

        clock.now = datetime(2024, 3, 31, 15, 1, tzinfo=UTC)  # now April in Tokyo
        await checker.increment_usage(user_id, Feature.RECEIPT_SCAN, decision.period_start)

        assert ledger.used(user_id, Feature.RECEIPT_SCAN, date(2024, 3, 1)) == 1
        assert ledger.used(user_id, Feature.RECEIPT_SCAN, date(2024, 4, 1)) == 0


class TestPeriodEndReversion:
    """Canceled subscriptions lapse to free once the paid period ends."""

    async def test_canceled_within_period_keeps_tier(self, checker, subscriptions, clock, user_id):
        _subscribe(
            subscriptions,
            user_id,
            billing_status=BillingStatus.CANCELED,
            period_end=clock.now + timedelta(days=3),
        )
        decision = await checker.check(user_id, Feature.EXPORT)
        assert decision.tier == PlanTier.PREMIUM
        assert decision.unlimited

    async def test_canceled_after_period_end_is_free(self, checker, subscriptions, clock, user_id):
        _subscribe(
            subscriptions,
            user_id,
            billing_status=BillingStatus.CANCELED,
            period_end=clock.now - timedelta(seconds=1),
        )
        decision = await checker.check(user_id, Feature.EXPORT)

        assert decision.tier == PlanTier.FREE
        assert decision.limit == 3
        # Stored row is not rewritten by reads
        assert subscriptions.rows[user_id].plan_tier == PlanTier.PREMIUM

    async def test_canceled_without_period_is_free(self, checker, subscriptions, user_id):
        _subscribe(subscriptions, user_id, billing_status=BillingStatus.CANCELED)
        assert (await checker.check(user_id, Feature.ASSISTANT)).tier == PlanTier.FREE


class TestIncrementFailures:
    """Increment failures never reach the caller."""

    async def test_failure_is_swallowed(self, checker, ledger, user_id):
        ledger.fail_with = PersistenceError("disk full")

        assert await checker.increment_usage(user_id, Feature.EXPORT) is False
        assert ledger.increment_calls == 1

    async def test_transient_failure_retried(self, checker, ledger, user_id, transient_db_error):
        calls = {"n": 0}
        original = ledger.increment

        async def flaky(*args):
            calls["n"] += 1
            if calls["n"] == 1:
                raise transient_db_error
            return await original(*args)

        ledger.increment = flaky

        with patch("farmbook.services.retry.asyncio.sleep", new=AsyncMock()):
            assert await checker.increment_usage(user_id, Feature.EXPORT) is True

        assert calls["n"] == 2
        assert ledger.used(user_id, Feature.EXPORT, MAY) == 1


class TestUsageSnapshot:
    """Snapshot covers every feature for every tier."""

    async def test_free_snapshot(self, checker, subscriptions, user_id):
        await checker.increment_usage(user_id, Feature.RECEIPT_SCAN)

        snapshot = await checker.usage_snapshot(user_id)

        assert snapshot.effective_tier == PlanTier.FREE
        assert user_id in subscriptions.rows
        by_feature = {d.feature: d for d in snapshot.features}
        assert set(by_feature) == set(Feature)
        assert by_feature[Feature.RECEIPT_SCAN].used == 1
        assert by_feature[Feature.RECEIPT_SCAN].remaining == 49

    async def test_paid_snapshot_shows_counts(self, checker, subscriptions, user_id):
        _subscribe(subscriptions, user_id, PlanTier.STANDARD)
        await checker.increment_usage(user_id, Feature.EXPORT)

        snapshot = await checker.usage_snapshot(user_id)

        export = next(d for d in snapshot.features if d.feature == Feature.EXPORT)
        assert export.used == 1
        assert export.unlimited
