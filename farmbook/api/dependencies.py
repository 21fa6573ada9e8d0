"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass
from functools import lru_cache
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from farmbook.config import settings
from farmbook.db.session import get_read_db, get_write_db
from farmbook.exceptions import UnauthenticatedError
from farmbook.services.bookkeeping import BookkeepingReader
from farmbook.services.entitlements import EntitlementChecker
from farmbook.services.metered import MeteredFeatureRunner
from farmbook.services.openai_service import OpenAIService
from farmbook.services.plan_catalog import PlanCatalog
from farmbook.services.reconciler import BillingEventReconciler
from farmbook.services.stripe_provider import StripeBillingProvider
from farmbook.services.subscriptions import SubscriptionRepository
from farmbook.services.usage_ledger import UsageLedger

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication
# ============================================================================


@dataclass
class AuthenticatedUser:
    """Authenticated user identity from the session JWT."""

    user_id: UUID
    email: str | None = None


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> AuthenticatedUser:
    """
    Verify a session token and extract the user.

    Raises:
        UnauthenticatedError: bad signature, expired, wrong audience or no
            usable subject
    """
    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
        )
    except jwt.ExpiredSignatureError as exc:
        raise UnauthenticatedError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise UnauthenticatedError("Invalid token") from exc

    subject = claims.get("sub")
    if not subject:
        raise UnauthenticatedError("Invalid token: missing user ID")
    try:
        user_id = UUID(str(subject))
    except ValueError as exc:
        raise UnauthenticatedError("Invalid token: malformed user ID") from exc

    return AuthenticatedUser(user_id=user_id, email=claims.get("email"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency to validate the session JWT from the Authorization header.

    Accepts: Authorization: Bearer {access_token}

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_access_token(credentials.credentials)
    except UnauthenticatedError as exc:
        logger.warning("user_token_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ============================================================================
# External Clients (created by the application lifespan)
# ============================================================================


@lru_cache
def get_plan_catalog() -> PlanCatalog:
    """Plan catalog built once from settings."""
    return PlanCatalog.from_settings(settings)


def get_billing_provider(request: Request) -> StripeBillingProvider:
    provider: StripeBillingProvider | None = getattr(request.app.state, "billing_provider", None)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return provider


def get_openai_service(request: Request) -> OpenAIService:
    service: OpenAIService | None = getattr(request.app.state, "openai_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI service not configured",
        )
    return service


# ============================================================================
# Services
# ============================================================================


def get_subscription_repository(
    db: AsyncSession = Depends(get_write_db),
) -> SubscriptionRepository:
    return SubscriptionRepository(db)


def get_usage_ledger(db: AsyncSession = Depends(get_write_db)) -> UsageLedger:
    return UsageLedger(db)


def get_bookkeeping_reader(db: AsyncSession = Depends(get_read_db)) -> BookkeepingReader:
    return BookkeepingReader(db)


def get_entitlement_checker(
    subscriptions: SubscriptionRepository = Depends(get_subscription_repository),
    ledger: UsageLedger = Depends(get_usage_ledger),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> EntitlementChecker:
    return EntitlementChecker(subscriptions, ledger, catalog, settings.usage_zone)


def get_metered_runner(
    checker: EntitlementChecker = Depends(get_entitlement_checker),
) -> MeteredFeatureRunner:
    return MeteredFeatureRunner(checker)


def get_reconciler(
    subscriptions: SubscriptionRepository = Depends(get_subscription_repository),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    provider: StripeBillingProvider = Depends(get_billing_provider),
) -> BillingEventReconciler:
    return BillingEventReconciler(subscriptions, catalog, subscription_source=provider)
