"""
Subscription Record - Repository over the subscriptions table.

Reads return immutable SubscriptionState snapshots. Plan and status writes
go through `save`, a whole-snapshot upsert keyed by user, which is what makes
replayed billing events converge on the same row.
"""

from uuid import UUID

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from farmbook.db.models import Subscription, utc_now
from farmbook.exceptions import PersistenceError
from farmbook.models.api import BillingStatus, PlanTier
from farmbook.models.domain import SubscriptionState
from farmbook.observability.logging import get_logger
from farmbook.services.retry import to_persistence_error

logger = get_logger(__name__)


def _to_state(row: Subscription) -> SubscriptionState:
    return SubscriptionState(
        user_id=row.user_id,
        plan_tier=PlanTier(row.plan_tier),
        billing_status=BillingStatus(row.billing_status),
        external_customer_ref=row.external_customer_ref,
        external_subscription_ref=row.external_subscription_ref,
        period_start=row.period_start,
        period_end=row.period_end,
        last_event_at=row.last_event_at,
    )


class SubscriptionRepository:
    """Reads and writes one subscription row per user."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find(self, user_id: UUID) -> SubscriptionState | None:
        """Subscription for a user, or None if no row exists yet."""
        row = await self._select_one(Subscription.user_id == user_id, "subscriptions.find")
        return _to_state(row) if row else None

    async def find_by_subscription_ref(self, subscription_ref: str) -> SubscriptionState | None:
        """Subscription currently linked to a processor subscription id."""
        row = await self._select_one(
            Subscription.external_subscription_ref == subscription_ref,
            "subscriptions.find_by_subscription_ref",
        )
        return _to_state(row) if row else None

    async def get_or_create(self, user_id: UUID) -> SubscriptionState:
        """
        Subscription for a user, lazily created as free/active.

        Raises:
            PersistenceError: database failure
        """
        stmt = (
            pg_insert(Subscription.__table__)
            .values(
                user_id=user_id,
                plan_tier=PlanTier.FREE.value,
                billing_status=BillingStatus.ACTIVE.value,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, "subscriptions.get_or_create") from exc

        state = await self.find(user_id)
        if state is None:
            raise PersistenceError("subscription row missing after upsert")
        return state

    async def save(self, state: SubscriptionState) -> SubscriptionState:
        """
        Write a complete snapshot for the user, inserting the row if needed.

        Raises:
            PersistenceError: database failure
        """
        values = {
            "plan_tier": state.plan_tier.value,
            "billing_status": state.billing_status.value,
            "external_customer_ref": state.external_customer_ref,
            "external_subscription_ref": state.external_subscription_ref,
            "period_start": state.period_start,
            "period_end": state.period_end,
            "last_event_at": state.last_event_at,
        }
        stmt = (
            pg_insert(Subscription.__table__)
            .values(user_id=state.user_id, **values)
            .on_conflict_do_update(
                index_elements=["user_id"],
                set_={**values, "updated_at": utc_now()},
            )
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, "subscriptions.save") from exc

        logger.info(
            "subscription_saved",
            user_id=str(state.user_id),
            plan_tier=state.plan_tier.value,
            billing_status=state.billing_status.value,
            external_subscription_ref=state.external_subscription_ref,
        )
        return state

    async def set_customer_ref(self, user_id: UUID, customer_ref: str) -> None:
        """Remember the processor customer created for this user."""
        await self.get_or_create(user_id)
        try:
            await self.session.execute(
                update(Subscription)
                .where(Subscription.user_id == user_id)
                .values(external_customer_ref=customer_ref, updated_at=utc_now())
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, "subscriptions.set_customer_ref") from exc

    async def _select_one(
        self, condition: ColumnElement[bool], operation: str
    ) -> Subscription | None:
        try:
            result = await self.session.execute(
                select(Subscription)
                .where(condition)
                .limit(1)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, operation) from exc
        return result.scalar_one_or_none()
