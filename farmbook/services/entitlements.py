"""
Entitlement Checker - Allow/deny decisions for metered features.

Combines the plan catalog quota for the user's effective tier with the
usage ledger count for the current calendar month. Checks never change a
counter; `increment_usage` is the separate, best-effort step run after a
gated call has succeeded.

Concurrency note: check and increment are two statements, not one
transaction. Two simultaneous requests at `used == limit - 1` can both be
allowed, overshooting the quota by one. Increments themselves are atomic,
so no count is ever lost.
"""

from collections.abc import Callable
from datetime import date, datetime
from uuid import UUID
from zoneinfo import ZoneInfo

from farmbook.db.models import utc_now
from farmbook.exceptions import PersistenceError
from farmbook.models.api import Feature
from farmbook.models.domain import (
    EntitlementDecision,
    SubscriptionState,
    UsageCounts,
    UsageSnapshot,
    is_unlimited,
)
from farmbook.observability.logging import get_logger
from farmbook.observability.metrics import metrics
from farmbook.services.plan_catalog import PlanCatalog
from farmbook.services.retry import retry_transient
from farmbook.services.subscriptions import SubscriptionRepository
from farmbook.services.usage_ledger import UsageLedger, period_start_for

logger = get_logger(__name__)


class EntitlementChecker:
    """Decides whether a user may use a metered feature right now."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        ledger: UsageLedger,
        catalog: PlanCatalog,
        zone: ZoneInfo,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.subscriptions = subscriptions
        self.ledger = ledger
        self.catalog = catalog
        self.zone = zone
        self.clock = clock

    def current_period_start(self) -> date:
        return period_start_for(self.clock(), self.zone)

    async def check(self, user_id: UUID, feature: Feature) -> EntitlementDecision:
        """
        Decide allow/deny without mutating any counter.

        A user with no subscription row is treated as free. Unlimited tiers
        are allowed without touching the ledger; finite tiers read (and if
        needed create) this month's ledger row.

        Raises:
            PersistenceError: database failure after retries
        """
        now = self.clock()
        period_start = period_start_for(now, self.zone)
        state = await retry_transient(
            lambda: self.subscriptions.find(user_id),
            operation_name="subscriptions.find",
        )
        state = state or SubscriptionState(user_id=user_id)
        tier = state.effective_tier(now)
        limit = self.catalog.quota_for(tier, feature)

        if is_unlimited(limit):
            decision = EntitlementDecision(
                user_id=user_id,
                feature=feature,
                tier=tier,
                used=0,
                limit=limit,
                period_start=period_start,
            )
        else:
            counts = await self._counts(user_id, period_start)
            decision = EntitlementDecision(
                user_id=user_id,
                feature=feature,
                tier=tier,
                used=counts.count_for(feature),
                limit=limit,
                period_start=period_start,
            )

        metrics.record_entitlement_check(feature.value, tier.value, decision.allowed)
        logger.info(
            "entitlement_checked",
            user_id=str(user_id),
            feature=feature.value,
            plan_tier=tier.value,
            allowed=decision.allowed,
            used=decision.used,
            limit=None if decision.unlimited else int(decision.limit),
        )
        return decision

    async def increment_usage(
        self, user_id: UUID, feature: Feature, period_start: date | None = None
    ) -> bool:
        """
        Count one successful use. Never raises on database failure.

        Paid users are counted too; their counts gate nothing. A failure is
        logged as an under-counting risk and reported by returning False.
        """
        period = period_start or self.current_period_start()
        try:
            await retry_transient(
                lambda: self.ledger.increment(user_id, feature, period),
                operation_name="usage_ledger.increment",
            )
        except PersistenceError as exc:
            metrics.record_usage_increment(feature.value, success=False)
            logger.error(
                "usage_increment_failed",
                user_id=str(user_id),
                feature=feature.value,
                period_start=period.isoformat(),
                error=exc.message,
                under_counting_risk=True,
            )
            return False

        metrics.record_usage_increment(feature.value, success=True)
        return True

    async def usage_snapshot(self, user_id: UUID) -> UsageSnapshot:
        """Effective tier and per-feature usage, counting every tier."""
        now = self.clock()
        period_start = period_start_for(now, self.zone)
        state = await retry_transient(
            lambda: self.subscriptions.get_or_create(user_id),
            operation_name="subscriptions.get_or_create",
        )
        tier = state.effective_tier(now)
        counts = await self._counts(user_id, period_start)

        return UsageSnapshot(
            subscription=state,
            effective_tier=tier,
            period_start=period_start,
            features=[
                EntitlementDecision(
                    user_id=user_id,
                    feature=feature,
                    tier=tier,
                    used=counts.count_for(feature),
                    limit=self.catalog.quota_for(tier, feature),
                    period_start=period_start,
                )
                for feature in Feature
            ],
        )

    async def _counts(self, user_id: UUID, period_start: date) -> UsageCounts:
        return await retry_transient(
            lambda: self.ledger.get_or_create(user_id, period_start),
            operation_name="usage_ledger.get_or_create",
        )
