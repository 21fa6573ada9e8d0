"""
Metrics Collection with Prometheus.

Exposes HTTP, metering and billing-reconciliation metrics.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from farmbook.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    FEATURE = "feature"
    PLAN_TIER = "plan_tier"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    SERVICE = "service"
    ERROR_TYPE = "error_type"


class FarmbookMetrics:
    """
    Centralized metrics for the Farmbook API.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Entitlement checks and usage increments per feature
    - Billing webhook outcomes
    - External service failures
    """

    def __init__(self) -> None:
        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("farmbook_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "farmbook_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "farmbook_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "farmbook_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Metering Metrics
        # ====================================================================
        self.entitlement_checks_total = Counter(
            "farmbook_entitlement_checks_total",
            "Entitlement decisions",
            [MetricLabels.FEATURE, MetricLabels.PLAN_TIER, "allowed"],
        )

        self.usage_increments_total = Counter(
            "farmbook_usage_increments_total",
            "Usage ledger increments after a successful metered call",
            [MetricLabels.FEATURE, "success"],
        )

        # ====================================================================
        # Billing Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "farmbook_webhook_events_total",
            "Billing webhook events by outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.checkout_sessions_total = Counter(
            "farmbook_checkout_sessions_total",
            "Checkout sessions created",
            [MetricLabels.PLAN_TIER],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.external_errors_total = Counter(
            "farmbook_external_errors_total",
            "Failed calls to third-party services",
            [MetricLabels.SERVICE, MetricLabels.ERROR_TYPE],
        )

        self.errors_total = Counter(
            "farmbook_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_entitlement_check(self, feature: str, plan_tier: str, allowed: bool) -> None:
        self.entitlement_checks_total.labels(
            feature=feature, plan_tier=plan_tier, allowed=str(allowed)
        ).inc()

    def record_usage_increment(self, feature: str, success: bool) -> None:
        self.usage_increments_total.labels(feature=feature, success=str(success)).inc()

    def record_webhook_event(self, event_type: str, outcome: str) -> None:
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_external_error(self, service: str, error_type: str) -> None:
        self.external_errors_total.labels(service=service, error_type=error_type).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = FarmbookMetrics()
