"""
Exception Classes - Strongly typed exception hierarchy.

Services raise these; the API layer maps them to HTTP responses.
"""

from enum import Enum

from farmbook.models.domain import EntitlementDecision


class FarmbookError(Exception):
    """Base exception for all Farmbook errors."""

    pass


class UnauthenticatedError(FarmbookError):
    """Raised when a request carries no valid session."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Unauthenticated: {message}")


class QuotaExceededError(FarmbookError):
    """Raised when an entitlement check denies a metered feature."""

    def __init__(self, decision: EntitlementDecision) -> None:
        self.decision = decision
        super().__init__(
            f"Monthly limit reached for {decision.feature.value}: "
            f"{decision.used}/{decision.limit} on plan {decision.tier.value}"
        )


class InvalidInputError(FarmbookError):
    """Raised when a request body is malformed or out of bounds."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid input: {message}")


class ExternalErrorKind(str, Enum):
    """Failure categories for calls to third-party services."""

    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    TIMEOUT = "timeout"
    TRANSIENT = "transient"


class ExternalServiceError(FarmbookError):
    """Raised when the vision/LLM or billing API call fails."""

    def __init__(self, service: str, kind: ExternalErrorKind, message: str) -> None:
        self.service = service
        self.kind = kind
        self.message = message
        super().__init__(f"{service} error ({kind.value}): {message}")


class ReconciliationError(FarmbookError):
    """Raised when a billing event cannot be applied to local state."""

    def __init__(
        self, message: str, event_id: str | None = None, event_type: str | None = None
    ) -> None:
        self.message = message
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(f"Reconciliation error: {message}")


class WebhookVerificationError(ReconciliationError):
    """Raised when a webhook signature is missing or invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(f"webhook verification failed: {message}")


class UnknownPriceError(ReconciliationError):
    """Raised when an event references a price that maps to no plan tier."""

    def __init__(
        self, price_ref: str | None, event_id: str | None = None, event_type: str | None = None
    ) -> None:
        self.price_ref = price_ref
        super().__init__(f"unknown billing price: {price_ref}", event_id, event_type)


class UnresolvedSubscriberError(ReconciliationError):
    """Raised when an event cannot be associated with a local user."""

    def __init__(
        self, subscription_ref: str | None, event_id: str | None = None,
        event_type: str | None = None,
    ) -> None:
        self.subscription_ref = subscription_ref
        super().__init__(
            f"no local subscriber for subscription {subscription_ref}", event_id, event_type
        )


class UnsupportedEventError(ReconciliationError):
    """Raised for billing event types outside the handled set."""

    def __init__(self, event_type: str, event_id: str | None = None) -> None:
        super().__init__(f"unsupported event type: {event_type}", event_id, event_type)


class PersistenceError(FarmbookError):
    """Raised when a database read or write fails."""

    def __init__(self, message: str, transient: bool = False) -> None:
        self.message = message
        self.transient = transient
        super().__init__(f"Persistence error: {message}")
