"""
Domain Models - Internal business logic models using dataclasses.

All data structures are immutable dataclasses.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import ClassVar
from uuid import UUID

from farmbook.models.api import BillingStatus, Feature, PlanTier

# Compares greater than any finite usage count
UNLIMITED: float = math.inf

Quota = int | float


def is_unlimited(limit: Quota) -> bool:
    """True when the quota is the unlimited sentinel."""
    return math.isinf(limit)


# ============================================================================
# Plans & Entitlements
# ============================================================================


@dataclass(frozen=True)
class PlanDefinition:
    """One row of the plan catalog."""

    tier: PlanTier
    quotas: Mapping[Feature, Quota]
    billing_price_ref: str | None

    def __post_init__(self) -> None:
        """Validate quota values."""
        for feature, limit in self.quotas.items():
            if is_unlimited(limit):
                continue
            if not isinstance(limit, int) or limit < 0:
                raise ValueError(f"Invalid quota for {self.tier.value}/{feature.value}: {limit}")


@dataclass(frozen=True)
class EntitlementDecision:
    """Outcome of an entitlement check for one user and feature."""

    user_id: UUID
    feature: Feature
    tier: PlanTier
    used: int
    limit: Quota
    period_start: date

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.limit)

    @property
    def allowed(self) -> bool:
        return self.used < self.limit

    @property
    def remaining(self) -> Quota:
        if self.unlimited:
            return UNLIMITED
        return max(0, int(self.limit) - self.used)

    def after_one_use(self) -> "EntitlementDecision":
        """Snapshot as it stands once the gated call has been counted."""
        if self.unlimited:
            return self
        return replace(self, used=self.used + 1)


@dataclass(frozen=True)
class UsageCounts:
    """Counters of one usage ledger entry."""

    user_id: UUID
    period_start: date
    receipt_scan_count: int = 0
    export_count: int = 0
    assistant_count: int = 0

    def count_for(self, feature: Feature) -> int:
        if feature == Feature.RECEIPT_SCAN:
            return self.receipt_scan_count
        if feature == Feature.EXPORT:
            return self.export_count
        if feature == Feature.ASSISTANT:
            return self.assistant_count
        return 0


@dataclass(frozen=True)
class UsageSnapshot:
    """Per-feature usage for a user in the current period."""

    subscription: "SubscriptionState"
    effective_tier: PlanTier
    period_start: date
    features: list[EntitlementDecision]


# ============================================================================
# Subscription State
# ============================================================================


@dataclass(frozen=True)
class SubscriptionState:
    """Local record of the plan a user is on."""

    user_id: UUID
    plan_tier: PlanTier = PlanTier.FREE
    billing_status: BillingStatus = BillingStatus.ACTIVE
    external_customer_ref: str | None = None
    external_subscription_ref: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    last_event_at: datetime | None = None

    def effective_tier(self, now: datetime) -> PlanTier:
        """
        Tier that gates features right now.

        A canceled subscription keeps its paid tier until the end of the
        billing period it was paid for, then counts as free.
        """
        if self.billing_status != BillingStatus.CANCELED:
            return self.plan_tier
        if self.period_end is not None and now < self.period_end:
            return self.plan_tier
        return PlanTier.FREE

    def reverted_to_free(self) -> "SubscriptionState":
        """Free/active with no subscription; the customer ref is kept for reuse."""
        return replace(
            self,
            plan_tier=PlanTier.FREE,
            billing_status=BillingStatus.ACTIVE,
            external_subscription_ref=None,
            period_start=None,
            period_end=None,
        )


# ============================================================================
# Billing Events
# ============================================================================


@dataclass(frozen=True)
class CheckoutCompleted:
    """Hosted checkout finished and a processor subscription exists."""

    kind: ClassVar[str] = "checkout-completed"

    event_id: str
    user_id: UUID | None
    customer_ref: str | None
    subscription_ref: str | None
    price_ref: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class SubscriptionUpdated:
    """Processor-side subscription changed (plan, status or period)."""

    kind: ClassVar[str] = "subscription-updated"

    event_id: str
    user_id: UUID | None
    subscription_ref: str
    customer_ref: str | None
    price_ref: str | None
    processor_status: str
    period_start: datetime | None
    period_end: datetime | None
    cancel_at_period_end: bool = False
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class SubscriptionDeleted:
    """Processor-side subscription ended."""

    kind: ClassVar[str] = "subscription-deleted"

    event_id: str
    user_id: UUID | None
    subscription_ref: str
    cancel_at_period_end: bool
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class PaymentFailed:
    """A renewal invoice for a subscription could not be paid."""

    kind: ClassVar[str] = "payment-failed"

    event_id: str
    subscription_ref: str
    occurred_at: datetime | None = None


BillingEvent = CheckoutCompleted | SubscriptionUpdated | SubscriptionDeleted | PaymentFailed


@dataclass(frozen=True)
class ProcessorSubscription:
    """Subscription snapshot fetched from the payment processor."""

    subscription_ref: str
    customer_ref: str | None
    price_ref: str | None
    status: str
    period_start: datetime | None
    period_end: datetime | None
    cancel_at_period_end: bool


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout session created with the payment processor."""

    session_id: str
    url: str


# ============================================================================
# Bookkeeping Data
# ============================================================================


@dataclass(frozen=True)
class ExpenseCategoryRef:
    """Active expense category owned by a user."""

    id: UUID
    name: str


@dataclass(frozen=True)
class SaleRecord:
    """One recorded sale."""

    sale_date: date
    crop_name: str
    customer: str | None
    unit_price: int
    quantity: float
    amount: int
    description: str | None = None


@dataclass(frozen=True)
class ExpenseRecord:
    """One recorded expense."""

    expense_date: date
    category: str
    amount: int
    description: str | None = None


@dataclass(frozen=True)
class ReceiptData:
    """Fields read from a receipt image."""

    date: str | None
    amount: int | None
    store_name: str | None
    items: str | None
    category: str | None
    matched_category: ExpenseCategoryRef | None = None


@dataclass(frozen=True)
class MonthlyTotals:
    """Sales and expenses for one calendar month."""

    month: str  # YYYY-MM
    sales: int = 0
    expenses: int = 0

    @property
    def profit(self) -> int:
        return self.sales - self.expenses


@dataclass(frozen=True)
class BusinessSummary:
    """Aggregates of a user's recent bookkeeping data."""

    current_month: MonthlyTotals
    total_sales: int
    total_expenses: int
    sales_count: int
    expense_count: int
    expenses_by_category: list[tuple[str, int]] = field(default_factory=list)
    monthly: list[MonthlyTotals] = field(default_factory=list)
    top_crops: list[tuple[str, int]] = field(default_factory=list)

    @property
    def total_profit(self) -> int:
        return self.total_sales - self.total_expenses
