"""
Tests for exception classes.
"""

from datetime import date
from uuid import uuid4

import pytest

from farmbook.exceptions import (
    ExternalErrorKind,
    ExternalServiceError,
    FarmbookError,
    InvalidInputError,
    PersistenceError,
    QuotaExceededError,
    ReconciliationError,
    UnauthenticatedError,
    UnknownPriceError,
    UnresolvedSubscriberError,
    UnsupportedEventError,
    WebhookVerificationError,
)
from farmbook.models.api import Feature, PlanTier
from farmbook.models.domain import EntitlementDecision


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc",
        [
            UnauthenticatedError("no token"),
            InvalidInputError("bad"),
            ExternalServiceError("openai", ExternalErrorKind.TIMEOUT, "slow"),
            PersistenceError("down"),
            ReconciliationError("broken"),
        ],
    )
    def test_all_are_farmbook_errors(self, exc):
        assert isinstance(exc, FarmbookError)

    @pytest.mark.parametrize(
        "exc",
        [
            WebhookVerificationError("bad signature"),
            UnknownPriceError("price_x"),
            UnresolvedSubscriberError("sub_x"),
            UnsupportedEventError("charge.refunded"),
        ],
    )
    def test_reconciliation_subtypes(self, exc):
        assert isinstance(exc, ReconciliationError)


class TestMessages:
    def test_quota_exceeded_carries_decision(self):
        decision = EntitlementDecision(
            user_id=uuid4(),
            feature=Feature.EXPORT,
            tier=PlanTier.FREE,
            used=3,
            limit=3,
            period_start=date(2024, 5, 1),
        )

        exc = QuotaExceededError(decision)

        assert exc.decision is decision
        assert str(exc) == "Monthly limit reached for export: 3/3 on plan free"

    def test_unknown_price(self):
        exc = UnknownPriceError("price_x", event_id="evt_1", event_type="subscription-updated")

        assert exc.price_ref == "price_x"
        assert exc.event_id == "evt_1"
        assert exc.message == "unknown billing price: price_x"

    def test_unsupported_event_records_type(self):
        exc = UnsupportedEventError("charge.refunded", "evt_9")
        assert (exc.event_type, exc.event_id) == ("charge.refunded", "evt_9")

    def test_external_service(self):
        exc = ExternalServiceError("stripe", ExternalErrorKind.RATE_LIMITED, "busy")
        assert str(exc) == "stripe error (rate_limited): busy"

    def test_persistence_default_not_transient(self):
        assert PersistenceError("x").transient is False
