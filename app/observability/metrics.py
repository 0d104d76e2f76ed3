"""
Metrics Collection with Prometheus.

Exposes payment lifecycle and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class PaymentMetrics:
    """
    Centralized metrics for the ZedQuiz Payments API.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - PesaPal calls (rate, duration, outcome) and token refreshes
    - Order lifecycle (created, finalized, status checks, polls)
    - Reconciliation divergences and errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "payments_service",
            "Service information",
        )
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
            "payments_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "payments_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 60.0, 180.0),
        )

        self.http_requests_in_progress = Gauge(
            "payments_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # PesaPal Metrics
        # ====================================================================
        self.provider_calls_total = Counter(
            "payments_provider_calls_total",
            "Total PesaPal API calls",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.provider_call_duration_seconds = Histogram(
            "payments_provider_call_duration_seconds",
            "PesaPal API call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.token_refreshes_total = Counter(
            "payments_token_refreshes_total",
            "PesaPal bearer token refreshes",
            ["success"],
        )

        # ====================================================================
        # Order Lifecycle Metrics
        # ====================================================================
        self.orders_created_total = Counter(
            "payments_orders_created_total",
            "Payment orders recorded as pending",
            ["plan_id"],
        )

        self.orders_finalized_total = Counter(
            "payments_orders_finalized_total",
            "Payment orders moved to a terminal status",
            ["status"],
        )

        self.status_checks_total = Counter(
            "payments_status_checks_total",
            "Transaction status checks by outcome",
            [MetricLabels.OUTCOME],
        )

        self.poll_attempts_total = Counter(
            "payments_poll_attempts_total",
            "Status poll iterations",
        )

        self.polls_expired_total = Counter(
            "payments_polls_expired_total",
            "Status polls that ran out of attempts or time",
        )

        self.ipn_notifications_total = Counter(
            "payments_ipn_notifications_total",
            "PesaPal IPN notifications received",
            ["notification_type", MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Reconciliation / Error Metrics
        # ====================================================================
        self.divergences_total = Counter(
            "payments_reconciliation_divergences_total",
            "Confirmed payments whose entitlement activation failed",
        )

        self.errors_total = Counter(
            "payments_errors_total",
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

    def record_provider_call(self, operation: str, outcome: str, duration: float) -> None:
        """Record a PesaPal API call."""
        self.provider_calls_total.labels(operation=operation, outcome=outcome).inc()
        self.provider_call_duration_seconds.labels(operation=operation).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PaymentMetrics()
