"""
Stripe Billing Provider.

Wraps an explicitly constructed `stripe.StripeClient` for checkout, the
customer portal and subscription lookups, and turns signed webhook payloads
into the closed set of BillingEvent types.
"""

import json
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import stripe
from structlog import get_logger

from farmbook.exceptions import (
    ExternalErrorKind,
    ExternalServiceError,
    ReconciliationError,
    UnsupportedEventError,
    WebhookVerificationError,
)
from farmbook.models.domain import (
    BillingEvent,
    CheckoutCompleted,
    CheckoutSession,
    PaymentFailed,
    ProcessorSubscription,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from farmbook.observability.metrics import metrics

logger = get_logger(__name__)

USER_ID_METADATA_KEY = "farmbook_user_id"
PLAN_TIER_METADATA_KEY = "plan_tier"

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


def _field(obj: Any, key: str) -> Any:
    """Item lookup that works for dicts and StripeObjects; None when absent."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


def _ref(value: Any) -> str | None:
    """Id of a field that may be a bare id or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _user_id(metadata: Any, fallback: Any = None) -> UUID | None:
    raw = _field(metadata, USER_ID_METADATA_KEY) or fallback
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        logger.warning("stripe_metadata_user_id_invalid", value=str(raw))
        return None


def _subscription_snapshot(subscription: Any) -> ProcessorSubscription:
    """Read price and period from a subscription object.

    Newer API versions carry the period on the subscription item rather
    than the subscription itself, so both places are checked.
    """
    items = _field(_field(subscription, "items"), "data") or []
    first_item = items[0] if items else None
    return ProcessorSubscription(
        subscription_ref=_field(subscription, "id"),
        customer_ref=_ref(_field(subscription, "customer")),
        price_ref=_field(_field(first_item, "price"), "id"),
        status=_field(subscription, "status") or "",
        period_start=_timestamp(
            _field(subscription, "current_period_start")
            or _field(first_item, "current_period_start")
        ),
        period_end=_timestamp(
            _field(subscription, "current_period_end") or _field(first_item, "current_period_end")
        ),
        cancel_at_period_end=bool(_field(subscription, "cancel_at_period_end")),
    )


def _invoice_subscription_ref(invoice: Any) -> str | None:
    ref = _ref(_field(invoice, "subscription"))
    if ref:
        return ref
    details = _field(_field(invoice, "parent"), "subscription_details")
    return _ref(_field(details, "subscription"))


def _external_error(exc: stripe.StripeError, action: str) -> ExternalServiceError:
    if isinstance(exc, stripe.AuthenticationError):
        kind = ExternalErrorKind.AUTH_FAILURE
        message = "Billing provider rejected our credentials; contact support."
    elif isinstance(exc, stripe.RateLimitError):
        kind = ExternalErrorKind.RATE_LIMITED
        message = "Billing provider is busy; try again in a moment."
    elif isinstance(exc, stripe.InvalidRequestError):
        kind = ExternalErrorKind.INVALID_REQUEST
        message = f"Billing provider rejected the request: {exc.user_message or exc}"
    else:
        kind = ExternalErrorKind.TRANSIENT
        message = "Billing provider is unavailable; try again later."

    metrics.record_external_error("stripe", kind.value)
    logger.error(
        "stripe_call_failed",
        action=action,
        error=str(exc),
        error_type=type(exc).__name__,
        kind=kind.value,
    )
    return ExternalServiceError("stripe", kind, message)


class StripeBillingProvider:
    """Stripe implementation of checkout, portal, lookup and webhook parsing."""

    def __init__(self, client: stripe.StripeClient, webhook_secret: str) -> None:
        """
        Args:
            client: Stripe client owned by the application lifespan
            webhook_secret: Stripe webhook signing secret (whsec_...)
        """
        self.client = client
        self.webhook_secret = webhook_secret

    async def create_customer(self, user_id: UUID, email: str | None) -> str:
        """Create a Stripe customer tagged with the user id; return its id."""
        params: dict[str, Any] = {"metadata": {USER_ID_METADATA_KEY: str(user_id)}}
        if email:
            params["email"] = email
        try:
            customer = self.client.customers.create(params=params)
        except stripe.StripeError as exc:
            raise _external_error(exc, "create_customer") from exc

        logger.info("stripe_customer_created", user_id=str(user_id), customer_id=customer.id)
        customer_id: str = customer.id
        return customer_id

    async def create_checkout_session(
        self,
        *,
        user_id: UUID,
        customer_ref: str,
        price_ref: str,
        plan_tier: str,
        success_url: str,
        cancel_url: str,
        locale: str,
    ) -> CheckoutSession:
        """Create a hosted subscription checkout for one price."""
        metadata = {USER_ID_METADATA_KEY: str(user_id), PLAN_TIER_METADATA_KEY: plan_tier}
        params: dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_ref,
            "client_reference_id": str(user_id),
            "line_items": [{"price": price_ref, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "billing_address_collection": "auto",
            "locale": locale,
        }
        try:
            session = self.client.checkout.sessions.create(params=params)
        except stripe.StripeError as exc:
            raise _external_error(exc, "create_checkout_session") from exc

        logger.info(
            "stripe_checkout_session_created",
            user_id=str(user_id),
            session_id=session.id,
            plan_tier=plan_tier,
        )
        return CheckoutSession(session_id=session.id, url=session.url or "")

    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create a customer portal session; return its URL."""
        try:
            session = self.client.billing_portal.sessions.create(
                params={"customer": customer_ref, "return_url": return_url}
            )
        except stripe.StripeError as exc:
            raise _external_error(exc, "create_portal_session") from exc

        url: str = session.url
        return url

    async def retrieve_subscription(self, subscription_ref: str) -> ProcessorSubscription:
        """Fetch the current state of a subscription."""
        try:
            subscription = self.client.subscriptions.retrieve(subscription_ref)
        except stripe.StripeError as exc:
            raise _external_error(exc, "retrieve_subscription") from exc

        return _subscription_snapshot(subscription)

    def parse_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify the signature over the raw body, then parse the event.

        Raises:
            WebhookVerificationError: signature missing or invalid
            UnsupportedEventError: event type outside the handled set
            ReconciliationError: verified payload is malformed
        """
        if not signature:
            raise WebhookVerificationError("missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("invalid Stripe signature") from exc
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("payload is not UTF-8") from exc

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ReconciliationError("webhook body is not JSON") from exc

        event_id = _field(event, "id")
        event_type = _field(event, "type")
        obj = _field(_field(event, "data"), "object")
        if not event_id or not event_type or obj is None:
            raise ReconciliationError("webhook event is missing id, type or data", event_id)

        logger.info("stripe_webhook_verified", event_id=event_id, event_type=event_type)
        occurred_at = _timestamp(_field(event, "created"))
        return self._to_billing_event(event_id, event_type, obj, occurred_at)

    def _to_billing_event(
        self, event_id: str, event_type: str, obj: Any, occurred_at: datetime | None = None
    ) -> BillingEvent:
        if event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED) and not _field(obj, "id"):
            raise ReconciliationError("subscription object has no id", event_id, event_type)

        if event_type == CHECKOUT_COMPLETED:
            if _field(obj, "mode") != "subscription":
                raise ReconciliationError(
                    "checkout session is not a subscription checkout", event_id, event_type
                )
            return CheckoutCompleted(
                event_id=event_id,
                user_id=_user_id(_field(obj, "metadata"), _field(obj, "client_reference_id")),
                customer_ref=_ref(_field(obj, "customer")),
                subscription_ref=_ref(_field(obj, "subscription")),
                occurred_at=occurred_at,
            )

        if event_type == SUBSCRIPTION_UPDATED:
            snapshot = _subscription_snapshot(obj)
            return SubscriptionUpdated(
                event_id=event_id,
                user_id=_user_id(_field(obj, "metadata")),
                subscription_ref=snapshot.subscription_ref,
                customer_ref=snapshot.customer_ref,
                price_ref=snapshot.price_ref,
                processor_status=snapshot.status,
                period_start=snapshot.period_start,
                period_end=snapshot.period_end,
                cancel_at_period_end=snapshot.cancel_at_period_end,
                occurred_at=occurred_at,
            )

        if event_type == SUBSCRIPTION_DELETED:
            return SubscriptionDeleted(
                event_id=event_id,
                user_id=_user_id(_field(obj, "metadata")),
                subscription_ref=_field(obj, "id"),
                cancel_at_period_end=bool(_field(obj, "cancel_at_period_end")),
                occurred_at=occurred_at,
            )

        if event_type == INVOICE_PAYMENT_FAILED:
            subscription_ref = _invoice_subscription_ref(obj)
            if not subscription_ref:
                raise ReconciliationError(
                    "failed invoice is not linked to a subscription", event_id, event_type
                )
            return PaymentFailed(
                event_id=event_id, subscription_ref=subscription_ref, occurred_at=occurred_at
            )

        raise UnsupportedEventError(event_type, event_id)
