"""
Billing API routes - Checkout, customer portal and the processor webhook.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from structlog import get_logger

from farmbook.api.dependencies import (
    AuthenticatedUser,
    get_billing_provider,
    get_current_user,
    get_plan_catalog,
    get_reconciler,
    get_subscription_repository,
)
from farmbook.api.routes import external_service_http, persistence_http
from farmbook.config import settings
from farmbook.exceptions import (
    ExternalServiceError,
    PersistenceError,
    ReconciliationError,
    WebhookVerificationError,
)
from farmbook.models.api import CheckoutRequest, CheckoutResponse, PortalRequest, PortalResponse
from farmbook.observability.metrics import metrics
from farmbook.services.plan_catalog import PlanCatalog
from farmbook.services.reconciler import BillingEventReconciler
from farmbook.services.retry import retry_transient
from farmbook.services.stripe_provider import StripeBillingProvider
from farmbook.services.subscriptions import SubscriptionRepository

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/billing", tags=["billing"])


def checkout_urls(base_url: str) -> tuple[str, str]:
    """Success and cancel URLs for hosted checkout."""
    base = base_url.rstrip("/")
    return (
        f"{base}/settings?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}/pricing?checkout=canceled",
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    subscriptions: SubscriptionRepository = Depends(get_subscription_repository),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    provider: StripeBillingProvider = Depends(get_billing_provider),
) -> CheckoutResponse:
    """
    Start a hosted subscription checkout for a paid tier.

    Creates the processor customer on first purchase and stores its id so
    later checkouts and the portal reuse it. The plan itself only changes
    when the checkout-completed webhook arrives.
    """
    price_ref = catalog.price_ref_for(request.plan_tier)
    if price_ref is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Plan {request.plan_tier.value} is not purchasable",
        )

    try:
        state = await retry_transient(
            lambda: subscriptions.get_or_create(user.user_id),
            operation_name="subscriptions.get_or_create",
        )
        customer_ref = state.external_customer_ref
        if customer_ref is None:
            customer_ref = await provider.create_customer(user.user_id, user.email)
            await subscriptions.set_customer_ref(user.user_id, customer_ref)

        success_url, cancel_url = checkout_urls(settings.app_base_url)
        session = await provider.create_checkout_session(
            user_id=user.user_id,
            customer_ref=customer_ref,
            price_ref=price_ref,
            plan_tier=request.plan_tier.value,
            success_url=success_url,
            cancel_url=cancel_url,
            locale=settings.checkout_locale,
        )
    except ExternalServiceError as exc:
        raise external_service_http(exc) from exc
    except PersistenceError as exc:
        raise persistence_http(exc) from exc

    metrics.checkout_sessions_total.labels(plan_tier=request.plan_tier.value).inc()
    return CheckoutResponse(session_id=session.session_id, url=session.url)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    request: PortalRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    subscriptions: SubscriptionRepository = Depends(get_subscription_repository),
    provider: StripeBillingProvider = Depends(get_billing_provider),
) -> PortalResponse:
    """Hosted portal where the user can change card, plan or cancel."""
    try:
        state = await retry_transient(
            lambda: subscriptions.find(user.user_id),
            operation_name="subscriptions.find",
        )
    except PersistenceError as exc:
        raise persistence_http(exc) from exc

    if state is None or state.external_customer_ref is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No billing account yet; subscribe to a plan first.",
        )

    return_url = request.return_url or f"{settings.app_base_url.rstrip('/')}/settings"
    try:
        url = await provider.create_portal_session(state.external_customer_ref, return_url)
    except ExternalServiceError as exc:
        raise external_service_http(exc) from exc
    return PortalResponse(url=url)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    provider: StripeBillingProvider = Depends(get_billing_provider),
    reconciler: BillingEventReconciler = Depends(get_reconciler),
) -> dict[str, str]:
    """
    Handle Stripe subscription events.

    400 for a bad signature. Events that can never apply are acknowledged
    with status "rejected" so Stripe stops redelivering; database and
    Stripe API failures return 5xx so it retries.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = provider.parse_webhook(payload, signature)
    except WebhookVerificationError as exc:
        metrics.record_webhook_event("unknown", "invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc
    except ReconciliationError as exc:
        return _rejected(exc)

    logger.info("stripe_webhook_received", event_id=event.event_id, event_type=event.kind)

    try:
        await reconciler.apply(event)
    except ReconciliationError as exc:
        return _rejected(exc)
    except (PersistenceError, ExternalServiceError) as exc:
        metrics.record_webhook_event(event.kind, "retry")
        logger.error(
            "stripe_webhook_processing_failed",
            event_id=event.event_id,
            event_type=event.kind,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    metrics.record_webhook_event(event.kind, "applied")
    return {"status": "applied", "event_id": event.event_id, "event_type": event.kind}


def _rejected(exc: ReconciliationError) -> dict[str, str]:
    metrics.record_webhook_event(exc.event_type or "unknown", "rejected")
    logger.error(
        "stripe_webhook_rejected",
        event_id=exc.event_id,
        event_type=exc.event_type,
        reason=exc.message,
        error_type=type(exc).__name__,
    )
    return {"status": "rejected", "reason": exc.message}
