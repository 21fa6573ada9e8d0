"""
Plan Catalog - Static mapping of plan tiers to quotas and billing prices.

Pure lookups, no state. Built once from settings and validated on
construction.
"""

from collections.abc import Iterable
from types import MappingProxyType

from farmbook.config import ConfigurationError, Settings
from farmbook.exceptions import UnknownPriceError
from farmbook.models.api import Feature, PlanTier
from farmbook.models.domain import UNLIMITED, PlanDefinition, Quota, is_unlimited


class PlanCatalog:
    """
    Read-only plan table.

    Invariants checked at construction:
    - exactly one tier has no billing price (the free default)
    - the free tier has only finite quotas
    - every paid tier is unlimited for every metered feature
    - billing price refs are distinct
    """

    def __init__(self, plans: Iterable[PlanDefinition]) -> None:
        self._plans: dict[PlanTier, PlanDefinition] = {}
        self._tiers_by_price: dict[str, PlanTier] = {}

        for plan in plans:
            if plan.tier in self._plans:
                raise ConfigurationError(f"Duplicate plan tier: {plan.tier.value}")
            self._plans[plan.tier] = plan
            if plan.billing_price_ref is not None:
                if plan.billing_price_ref in self._tiers_by_price:
                    raise ConfigurationError(
                        f"Price {plan.billing_price_ref} maps to more than one tier"
                    )
                self._tiers_by_price[plan.billing_price_ref] = plan.tier

        self._validate()

    def _validate(self) -> None:
        free_tiers = [p for p in self._plans.values() if p.billing_price_ref is None]
        if len(free_tiers) != 1 or free_tiers[0].tier != PlanTier.FREE:
            raise ConfigurationError("Exactly one plan, the free tier, must have no billing price")

        for plan in self._plans.values():
            for feature in Feature:
                limit = plan.quotas.get(feature, 0)
                if plan.tier == PlanTier.FREE and is_unlimited(limit):
                    raise ConfigurationError(f"Free tier cannot be unlimited for {feature.value}")
                if plan.tier != PlanTier.FREE and not is_unlimited(limit):
                    raise ConfigurationError(
                        f"Paid tier {plan.tier.value} must be unlimited for {feature.value}"
                    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanCatalog":
        """Build the catalog from configured free quotas and processor price ids."""
        unlimited = MappingProxyType({feature: UNLIMITED for feature in Feature})
        return cls(
            [
                PlanDefinition(
                    tier=PlanTier.FREE,
                    quotas=MappingProxyType(
                        {
                            Feature.RECEIPT_SCAN: settings.free_receipt_scan_limit,
                            Feature.EXPORT: settings.free_export_limit,
                            Feature.ASSISTANT: settings.free_assistant_limit,
                        }
                    ),
                    billing_price_ref=None,
                ),
                PlanDefinition(
                    tier=PlanTier.STANDARD,
                    quotas=unlimited,
                    billing_price_ref=settings.stripe_price_standard_monthly,
                ),
                PlanDefinition(
                    tier=PlanTier.PREMIUM,
                    quotas=unlimited,
                    billing_price_ref=settings.stripe_price_premium_monthly,
                ),
                PlanDefinition(
                    tier=PlanTier.PRO_YEARLY,
                    quotas=unlimited,
                    billing_price_ref=settings.stripe_price_pro_yearly,
                ),
            ]
        )

    def quota_for(self, tier: PlanTier, feature: Feature) -> Quota:
        """Monthly limit for a tier and feature. Unknown pairs fail closed at 0."""
        plan = self._plans.get(tier)
        if plan is None:
            return 0
        return plan.quotas.get(feature, 0)

    def tier_for_price_ref(self, price_ref: str | None) -> PlanTier:
        """
        Map a processor price id back to a tier.

        Raises:
            UnknownPriceError: the price is not in the catalog
        """
        if price_ref is None or price_ref not in self._tiers_by_price:
            raise UnknownPriceError(price_ref)
        return self._tiers_by_price[price_ref]

    def price_ref_for(self, tier: PlanTier) -> str | None:
        """Processor price id for a paid tier; None for free or unknown tiers."""
        plan = self._plans.get(tier)
        return plan.billing_price_ref if plan else None

    @property
    def tiers(self) -> list[PlanTier]:
        return list(self._plans)
