"""
Billing Event Reconciler - Applies payment processor events to the
Subscription Record.

Every event is treated as "set these fields", never as a delta, so replays
and redeliveries converge on the same row. Events for a processor
subscription other than the one currently on record are ignored, which
keeps a late event from an old subscription from clobbering a newer one.
"""

from dataclasses import replace
from datetime import datetime
from typing import Protocol

from farmbook.exceptions import (
    ReconciliationError,
    UnresolvedSubscriberError,
    UnsupportedEventError,
)
from farmbook.models.api import BillingStatus
from farmbook.models.domain import (
    BillingEvent,
    CheckoutCompleted,
    PaymentFailed,
    ProcessorSubscription,
    SubscriptionDeleted,
    SubscriptionState,
    SubscriptionUpdated,
)
from farmbook.observability.logging import get_logger
from farmbook.observability.tracing import trace_operation
from farmbook.services.plan_catalog import PlanCatalog
from farmbook.services.retry import retry_transient
from farmbook.services.subscriptions import SubscriptionRepository

logger = get_logger(__name__)


class SubscriptionSource(Protocol):
    """Where checkout events get the price and period they do not carry."""

    async def retrieve_subscription(self, subscription_ref: str) -> ProcessorSubscription:
        ...


def map_processor_status(status: str) -> BillingStatus:
    """Collapse the processor's subscription statuses onto ours."""
    if status in ("canceled", "incomplete_expired"):
        return BillingStatus.CANCELED
    if status in ("past_due", "unpaid"):
        return BillingStatus.PAST_DUE
    if status == "trialing":
        return BillingStatus.TRIALING
    return BillingStatus.ACTIVE


def _is_stale(current: SubscriptionState, subscription_ref: str | None) -> bool:
    return (
        current.external_subscription_ref is not None
        and subscription_ref is not None
        and current.external_subscription_ref != subscription_ref
    )


def _is_out_of_order(current: SubscriptionState, occurred_at: datetime | None) -> bool:
    return (
        occurred_at is not None
        and current.last_event_at is not None
        and occurred_at < current.last_event_at
    )


def apply_event(
    current: SubscriptionState, event: BillingEvent, catalog: PlanCatalog
) -> SubscriptionState:
    """
    Next subscription state after `event`. Pure.

    Events older than the newest one already applied are ignored, so a
    redelivered "updated" snapshot cannot undo a later delete. Ties apply.

    Raises:
        UnknownPriceError: the event's price is not in the catalog
        UnsupportedEventError: not one of the handled event kinds
    """
    occurred_at = getattr(event, "occurred_at", None)
    if _is_out_of_order(current, occurred_at):
        return current

    updated = _transition(current, event, catalog)
    if updated == current or occurred_at is None:
        return updated
    return replace(updated, last_event_at=occurred_at)


def _transition(
    current: SubscriptionState, event: BillingEvent, catalog: PlanCatalog
) -> SubscriptionState:
    if isinstance(event, CheckoutCompleted):
        return replace(
            current,
            plan_tier=catalog.tier_for_price_ref(event.price_ref),
            billing_status=BillingStatus.ACTIVE,
            external_customer_ref=event.customer_ref or current.external_customer_ref,
            external_subscription_ref=event.subscription_ref,
            period_start=event.period_start,
            period_end=event.period_end,
        )

    if isinstance(event, SubscriptionUpdated):
        tier = catalog.tier_for_price_ref(event.price_ref)
        if _is_stale(current, event.subscription_ref):
            return current
        return replace(
            current,
            plan_tier=tier,
            billing_status=map_processor_status(event.processor_status),
            external_customer_ref=event.customer_ref or current.external_customer_ref,
            external_subscription_ref=event.subscription_ref,
            period_start=event.period_start,
            period_end=event.period_end,
        )

    if isinstance(event, SubscriptionDeleted):
        if _is_stale(current, event.subscription_ref):
            return current
        if event.cancel_at_period_end:
            # Paid tier and period stay; the period end decides when it lapses.
            return replace(current, billing_status=BillingStatus.CANCELED)
        return current.reverted_to_free()

    if isinstance(event, PaymentFailed):
        return replace(current, billing_status=BillingStatus.PAST_DUE)

    raise UnsupportedEventError(type(event).__name__)


class BillingEventReconciler:
    """Resolves the subscriber for an event and persists the new state."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        catalog: PlanCatalog,
        subscription_source: SubscriptionSource | None = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.catalog = catalog
        self.subscription_source = subscription_source

    async def apply(self, event: BillingEvent) -> SubscriptionState:
        """
        Apply one verified event.

        Raises:
            ReconciliationError: the event can never be applied (unknown price,
                no resolvable subscriber, malformed)
            PersistenceError: database failure after retries; safe to redeliver
            ExternalServiceError: processor lookup failed; safe to redeliver
        """
        with trace_operation("billing_event_apply", event_type=event.kind, event_id=event.event_id):
            try:
                event = await self._complete(event)
                current = await self._resolve(event)
                updated = apply_event(current, event, self.catalog)
            except ReconciliationError as exc:
                exc.event_id = exc.event_id or event.event_id
                exc.event_type = exc.event_type or event.kind
                raise

            if updated == current:
                logger.info(
                    "billing_event_no_change",
                    event_id=event.event_id,
                    event_type=event.kind,
                    user_id=str(current.user_id),
                )
                return current

            await retry_transient(
                lambda: self.subscriptions.save(updated),
                operation_name="subscriptions.save",
            )
            logger.info(
                "billing_event_applied",
                event_id=event.event_id,
                event_type=event.kind,
                user_id=str(updated.user_id),
                plan_tier=updated.plan_tier.value,
                billing_status=updated.billing_status.value,
                previous_plan_tier=current.plan_tier.value,
                previous_billing_status=current.billing_status.value,
            )
            return updated

    async def _complete(self, event: BillingEvent) -> BillingEvent:
        """Fill in price and period for checkout events from the processor."""
        if not isinstance(event, CheckoutCompleted) or event.price_ref is not None:
            return event
        if not event.subscription_ref:
            raise ReconciliationError("checkout completed without a subscription")
        if self.subscription_source is None:
            raise ReconciliationError("no processor client to look up the checkout subscription")

        snapshot = await self.subscription_source.retrieve_subscription(event.subscription_ref)
        return replace(
            event,
            customer_ref=event.customer_ref or snapshot.customer_ref,
            price_ref=snapshot.price_ref,
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
        )

    async def _resolve(self, event: BillingEvent) -> SubscriptionState:
        """Metadata user id first, then the stored processor subscription id."""
        user_id = getattr(event, "user_id", None)
        if user_id is not None:
            state = await retry_transient(
                lambda: self.subscriptions.find(user_id),
                operation_name="subscriptions.find",
            )
            return state or SubscriptionState(user_id=user_id)

        subscription_ref = getattr(event, "subscription_ref", None)
        if subscription_ref:
            state = await retry_transient(
                lambda: self.subscriptions.find_by_subscription_ref(subscription_ref),
                operation_name="subscriptions.find_by_subscription_ref",
            )
            if state is not None:
                return state

        raise UnresolvedSubscriberError(subscription_ref)
