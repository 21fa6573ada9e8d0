"""
API Models - Pydantic models for request/response validation.
"""

from datetime import date
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class PlanTier(str, Enum):
    """Subscription plan tiers."""

    FREE = "free"
    STANDARD = "standard"
    PREMIUM = "premium"
    PRO_YEARLY = "pro_yearly"


class BillingStatus(str, Enum):
    """Local billing status of a subscription."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


class Feature(str, Enum):
    """Metered features counted per calendar month."""

    RECEIPT_SCAN = "receipt_scan"
    EXPORT = "export"
    ASSISTANT = "assistant"


# ============================================================================
# Usage Models
# ============================================================================


class FeatureUsage(BaseModel):
    """Usage of one metered feature in the current period."""

    feature: Feature
    used: int = Field(..., ge=0)
    limit: int | None = Field(None, description="None when the plan is unlimited")
    remaining: int | None = Field(None, description="None when the plan is unlimited")
    unlimited: bool
    allowed: bool


class UsageResponse(BaseModel):
    """GET /v1/usage response."""

    plan_tier: PlanTier
    billing_status: BillingStatus
    period_start: date
    features: list[FeatureUsage]


class QuotaExceededDetail(BaseModel):
    """Body of a 403 returned when a metered feature is denied."""

    code: Literal["USAGE_LIMIT_EXCEEDED"] = "USAGE_LIMIT_EXCEEDED"
    message: str
    plan_tier: PlanTier
    usage: FeatureUsage


# ============================================================================
# Subscription & Checkout Models
# ============================================================================


class SubscriptionResponse(BaseModel):
    """GET /v1/subscription response."""

    plan_tier: PlanTier
    effective_tier: PlanTier
    billing_status: BillingStatus
    has_billing_account: bool
    period_start: str | None = Field(None, description="ISO 8601 timestamp")
    period_end: str | None = Field(None, description="ISO 8601 timestamp")


class CheckoutRequest(BaseModel):
    """POST /v1/billing/checkout request body."""

    plan_tier: PlanTier

    @field_validator("plan_tier")
    @classmethod
    def validate_paid_tier(cls, v: PlanTier) -> PlanTier:
        """Only paid tiers can be purchased."""
        if v == PlanTier.FREE:
            raise ValueError("plan_tier must be a paid tier")
        return v


class CheckoutResponse(BaseModel):
    """Hosted checkout page to redirect the user to."""

    session_id: str
    url: str


class PortalRequest(BaseModel):
    """POST /v1/billing/portal request body."""

    return_url: str | None = Field(None, max_length=2048)


class PortalResponse(BaseModel):
    """Hosted billing portal URL."""

    url: str


# ============================================================================
# Metered Feature Models
# ============================================================================


class ReceiptScanRequest(BaseModel):
    """POST /v1/receipts/scan request body."""

    image_base64: str = Field(..., min_length=1, description="Base64 image or data: URL")


class MatchedCategory(BaseModel):
    """Expense category the suggestion was matched to."""

    id: str
    name: str


class ReceiptFields(BaseModel):
    """Fields read from a receipt image."""

    date: str | None = None
    amount: int | None = None
    store_name: str | None = None
    items: str | None = None
    category: str | None = None
    matched_category: MatchedCategory | None = None


class ReceiptScanResponse(BaseModel):
    """POST /v1/receipts/scan response."""

    receipt: ReceiptFields
    usage: FeatureUsage


class ChatTurn(BaseModel):
    """One prior message in an assistant conversation."""

    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=8000)


class AssistantChatRequest(BaseModel):
    """POST /v1/assistant/chat request body."""

    message: str
    history: list[ChatTurn] = Field(default_factory=list)


class AssistantChatResponse(BaseModel):
    """POST /v1/assistant/chat response."""

    reply: str
    usage: FeatureUsage


class ExportRequest(BaseModel):
    """POST /v1/exports request body."""

    start_date: date
    end_date: date

    @model_validator(mode="after")
    def validate_range(self) -> "ExportRequest":
        """Start must not be after end."""
        if self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class ExportResponse(BaseModel):
    """POST /v1/exports response carrying the workbook inline."""

    filename: str
    media_type: str
    content_base64: str
    usage: FeatureUsage


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
