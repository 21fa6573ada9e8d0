"""
API Routes - Usage, subscription and metered feature endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import asyncio
import base64
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from structlog import get_logger

from farmbook.api.dependencies import (
    AuthenticatedUser,
    get_bookkeeping_reader,
    get_current_user,
    get_entitlement_checker,
    get_metered_runner,
    get_openai_service,
    get_subscription_repository,
)
from farmbook.config import settings
from farmbook.db.models import utc_now
from farmbook.exceptions import (
    ExternalErrorKind,
    ExternalServiceError,
    InvalidInputError,
    PersistenceError,
    QuotaExceededError,
)
from farmbook.models.api import (
    AssistantChatRequest,
    AssistantChatResponse,
    ExportRequest,
    ExportResponse,
    Feature,
    FeatureUsage,
    MatchedCategory,
    QuotaExceededDetail,
    ReceiptFields,
    ReceiptScanRequest,
    ReceiptScanResponse,
    SubscriptionResponse,
    UsageResponse,
)
from farmbook.models.domain import EntitlementDecision, ExpenseCategoryRef, ReceiptData
from farmbook.services.assistant import FarmAssistant
from farmbook.services.bookkeeping import BookkeepingReader
from farmbook.services.entitlements import EntitlementChecker
from farmbook.services.export import XLSX_MEDIA_TYPE, build_workbook, export_filename
from farmbook.services.metered import MeteredFeatureRunner
from farmbook.services.openai_service import OpenAIService
from farmbook.services.receipts import ReceiptScanner, normalize_image
from farmbook.services.retry import retry_transient
from farmbook.services.subscriptions import SubscriptionRepository

logger = get_logger(__name__)
router = APIRouter()

FEATURE_LABELS = {
    Feature.RECEIPT_SCAN: "receipt scans",
    Feature.EXPORT: "data exports",
    Feature.ASSISTANT: "AI assistant messages",
}

EXTERNAL_ERROR_STATUS = {
    ExternalErrorKind.AUTH_FAILURE: status.HTTP_502_BAD_GATEWAY,
    ExternalErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ExternalErrorKind.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    ExternalErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ExternalErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# =============================================================================
# Error Mapping Helpers
# =============================================================================


def feature_usage(decision: EntitlementDecision) -> FeatureUsage:
    """Wire form of a decision; unlimited quotas become None."""
    return FeatureUsage(
        feature=decision.feature,
        used=decision.used,
        limit=None if decision.unlimited else int(decision.limit),
        remaining=None if decision.unlimited else int(decision.remaining),
        unlimited=decision.unlimited,
        allowed=decision.allowed,
    )


def quota_exceeded_http(exc: QuotaExceededError) -> HTTPException:
    decision = exc.decision
    detail = QuotaExceededDetail(
        message=(
            f"You have used all {int(decision.limit)} {FEATURE_LABELS[decision.feature]} "
            "for this month. Upgrade your plan for unlimited use."
        ),
        plan_tier=decision.tier,
        usage=feature_usage(decision),
    )
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=detail.model_dump(mode="json"),
    )


def external_service_http(exc: ExternalServiceError) -> HTTPException:
    return HTTPException(
        status_code=EXTERNAL_ERROR_STATUS[exc.kind],
        detail={"service": exc.service, "kind": exc.kind.value, "message": exc.message},
    )


def persistence_http(exc: PersistenceError) -> HTTPException:
    logger.error("request_persistence_failed", error=exc.message, transient=exc.transient)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Database temporarily unavailable; try again.",
    )


def _today() -> date:
    return datetime.now(settings.usage_zone).date()


# =============================================================================
# Usage & Subscription
# =============================================================================


@router.get("/v1/usage", response_model=UsageResponse)
async def get_usage(
    user: AuthenticatedUser = Depends(get_current_user),
    checker: EntitlementChecker = Depends(get_entitlement_checker),
) -> UsageResponse:
    """
    Current period usage for every metered feature.

    Paid users see their counts too; the limits shown are None for them.
    """
    try:
        snapshot = await checker.usage_snapshot(user.user_id)
    except PersistenceError as exc:
        raise persistence_http(exc) from exc

    return UsageResponse(
        plan_tier=snapshot.effective_tier,
        billing_status=snapshot.subscription.billing_status,
        period_start=snapshot.period_start,
        features=[feature_usage(decision) for decision in snapshot.features],
    )


@router.get("/v1/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    subscriptions: SubscriptionRepository = Depends(get_subscription_repository),
) -> SubscriptionResponse:
    """The caller's subscription record, created as free/active on first read."""
    try:
        state = await retry_transient(
            lambda: subscriptions.get_or_create(user.user_id),
            operation_name="subscriptions.get_or_create",
        )
    except PersistenceError as exc:
        raise persistence_http(exc) from exc

    return SubscriptionResponse(
        plan_tier=state.plan_tier,
        effective_tier=state.effective_tier(utc_now()),
        billing_status=state.billing_status,
        has_billing_account=state.external_customer_ref is not None,
        period_start=state.period_start.isoformat() if state.period_start else None,
        period_end=state.period_end.isoformat() if state.period_end else None,
    )


# =============================================================================
# Metered Features
# =============================================================================


@router.post("/v1/receipts/scan", response_model=ReceiptScanResponse)
async def scan_receipt(
    request: ReceiptScanRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    runner: MeteredFeatureRunner = Depends(get_metered_runner),
    reader: BookkeepingReader = Depends(get_bookkeeping_reader),
    openai_service: OpenAIService = Depends(get_openai_service),
) -> ReceiptScanResponse:
    """
    Read a receipt photo into expense fields.

    Counts against the monthly receipt scan quota only when the model
    returned a readable receipt.
    """
    scanner = ReceiptScanner(openai_service)

    async def scan(image_data_url: str) -> ReceiptData:
        try:
            categories = await reader.active_categories(user.user_id)
        except PersistenceError as exc:
            logger.warning("receipt_categories_unavailable", error=exc.message)
            categories = []
        return await scanner.scan(image_data_url, categories)

    try:
        result = await runner.run(
            user.user_id,
            Feature.RECEIPT_SCAN,
            scan,
            lambda: normalize_image(request.image_base64, settings.receipt_image_max_bytes),
        )
    except QuotaExceededError as exc:
        raise quota_exceeded_http(exc) from exc
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except ExternalServiceError as exc:
        raise external_service_http(exc) from exc
    except PersistenceError as exc:
        raise persistence_http(exc) from exc

    receipt = result.value
    matched: ExpenseCategoryRef | None = receipt.matched_category
    return ReceiptScanResponse(
        receipt=ReceiptFields(
            date=receipt.date,
            amount=receipt.amount,
            store_name=receipt.store_name,
            items=receipt.items,
            category=receipt.category,
            matched_category=(
                MatchedCategory(id=str(matched.id), name=matched.name) if matched else None
            ),
        ),
        usage=feature_usage(result.usage),
    )


@router.post("/v1/assistant/chat", response_model=AssistantChatResponse)
async def assistant_chat(
    request: AssistantChatRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    runner: MeteredFeatureRunner = Depends(get_metered_runner),
    reader: BookkeepingReader = Depends(get_bookkeeping_reader),
    openai_service: OpenAIService = Depends(get_openai_service),
) -> AssistantChatResponse:
    """Answer a business question using the caller's last six months of records."""
    assistant = FarmAssistant(openai_service, reader)

    def validate() -> str:
        message = request.message.strip()
        if not message:
            raise InvalidInputError("message is empty")
        if len(message) > settings.assistant_message_max_chars:
            raise InvalidInputError(
                f"message is {len(message)} characters; "
                f"the limit is {settings.assistant_message_max_chars}"
            )
        return message

    async def reply(message: str) -> str:
        return await assistant.reply(
            user.user_id,
            message,
            request.history,
            _today(),
            settings.assistant_history_max_turns,
        )

    try:
        result = await runner.run(user.user_id, Feature.ASSISTANT, reply, validate)
    except QuotaExceededError as exc:
        raise quota_exceeded_http(exc) from exc
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except ExternalServiceError as exc:
        raise external_service_http(exc) from exc
    except PersistenceError as exc:
        raise persistence_http(exc) from exc

    return AssistantChatResponse(reply=result.value, usage=feature_usage(result.usage))


@router.post("/v1/exports", response_model=ExportResponse)
async def create_export(
    request: ExportRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    runner: MeteredFeatureRunner = Depends(get_metered_runner),
    reader: BookkeepingReader = Depends(get_bookkeeping_reader),
) -> ExportResponse:
    """
    Build an Excel report of sales and expenses in [start_date, end_date].

    A range with no records is rejected and not counted.
    """

    def validate() -> tuple[date, date]:
        days = (request.end_date - request.start_date).days + 1
        if days > settings.export_max_range_days:
            raise InvalidInputError(
                f"range is {days} days; the limit is {settings.export_max_range_days}"
            )
        return request.start_date, request.end_date

    async def export(period: tuple[date, date]) -> bytes:
        start, end = period
        sales = await reader.sales_between(user.user_id, start, end)
        expenses = await reader.expenses_between(user.user_id, start, end)
        if not sales and not expenses:
            raise InvalidInputError("no sales or expenses in the selected range")
        return await asyncio.to_thread(build_workbook, sales, expenses, start, end, _today())

    try:
        result = await runner.run(user.user_id, Feature.EXPORT, export, validate)
    except QuotaExceededError as exc:
        raise quota_exceeded_http(exc) from exc
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except PersistenceError as exc:
        raise persistence_http(exc) from exc

    logger.info(
        "export_created",
        user_id=str(user.user_id),
        start_date=request.start_date.isoformat(),
        end_date=request.end_date.isoformat(),
        size_bytes=len(result.value),
    )
    return ExportResponse(
        filename=export_filename(request.start_date, request.end_date),
        media_type=XLSX_MEDIA_TYPE,
        content_base64=base64.b64encode(result.value).decode("ascii"),
        usage=feature_usage(result.usage),
    )
