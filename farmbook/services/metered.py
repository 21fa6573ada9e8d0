"""
Metered Feature Runner - The check, run, count sequence shared by receipt
scan, assistant chat and export.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar
from uuid import UUID

from farmbook.exceptions import QuotaExceededError
from farmbook.models.api import Feature
from farmbook.models.domain import EntitlementDecision
from farmbook.observability.logging import get_logger
from farmbook.observability.tracing import trace_operation
from farmbook.services.entitlements import EntitlementChecker

logger = get_logger(__name__)

T = TypeVar("T")
V = TypeVar("V")


@dataclass(frozen=True)
class MeteredResult(Generic[T]):
    """Operation output plus the usage as it stands after this call."""

    value: T
    usage: EntitlementDecision
    counted: bool


class MeteredFeatureRunner:
    """Gates an operation on the caller's entitlement and counts it on success."""

    def __init__(self, checker: EntitlementChecker) -> None:
        self.checker = checker

    async def run(
        self,
        user_id: UUID,
        feature: Feature,
        operation: Callable[[V], Awaitable[T]],
        validate: Callable[[], V],
    ) -> MeteredResult[T]:
        """
        Check, validate, run, then count one use.

        `validate` runs after the entitlement check so an over-quota user is
        told about the quota before any input problem. Its return value is
        passed to `operation`.

        Raises:
            QuotaExceededError: the check denied the feature
            InvalidInputError: from `validate`; nothing is counted
            ExternalServiceError: from `operation`; nothing is counted
            PersistenceError: the entitlement check itself failed
        """
        with trace_operation("metered_feature", feature=feature.value):
            decision = await self.checker.check(user_id, feature)
            if not decision.allowed:
                logger.info(
                    "metered_feature_denied",
                    user_id=str(user_id),
                    feature=feature.value,
                    plan_tier=decision.tier.value,
                    used=decision.used,
                )
                raise QuotaExceededError(decision)

            prepared = validate()
            value = await operation(prepared)

            counted = await self.checker.increment_usage(
                user_id, feature, decision.period_start
            )
            return MeteredResult(value=value, usage=decision.after_one_use(), counted=counted)
