"""
Metrics Collection with Prometheus.

Webhook processing is acknowledged to Apple before reconciliation runs, so
reconciliation outcomes and errors are only visible here and in the logs.
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
    NOTIFICATION_TYPE = "notification_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class ReconcilerMetrics:
    """
    Centralized metrics for the reconciler.

    Covers:
    - HTTP requests (rate, duration)
    - Webhook ingestion outcomes
    - Notification reconciliation by type and outcome
    - Apple API calls (rate, status, latency)
    - Signing key refreshes and payload trust failures
    - Detached task failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "reconciler_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
                "apple_environment": settings.apple_environment,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "reconciler_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "reconciler_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "reconciler_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Webhook / Reconciliation Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "reconciler_webhooks_total",
            "Apple webhook deliveries by ingestion outcome",
            [MetricLabels.OUTCOME],
        )

        self.notifications_total = Counter(
            "reconciler_notifications_total",
            "Notifications reconciled by type and outcome",
            [MetricLabels.NOTIFICATION_TYPE, MetricLabels.OUTCOME],
        )

        self.reconciliation_duration_seconds = Histogram(
            "reconciler_reconciliation_duration_seconds",
            "Time spent reconciling one notification",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.background_tasks_in_progress = Gauge(
            "reconciler_background_tasks_in_progress",
            "Detached reconciliation tasks not yet finished",
        )

        # ====================================================================
        # Apple API Metrics
        # ====================================================================
        self.apple_api_requests_total = Counter(
            "reconciler_apple_api_requests_total",
            "Calls to the App Store Server API",
            [MetricLabels.OPERATION, MetricLabels.STATUS_CODE],
        )

        self.apple_api_duration_seconds = Histogram(
            "reconciler_apple_api_duration_seconds",
            "App Store Server API call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.jwks_refreshes_total = Counter(
            "reconciler_jwks_refreshes_total",
            "Apple signing key refreshes",
            ["success"],
        )

        self.payload_rejections_total = Counter(
            "reconciler_payload_rejections_total",
            "Signed payloads rejected as untrusted",
            [MetricLabels.ERROR_TYPE],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "reconciler_errors_total",
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

    def record_notification(self, notification_type: str, outcome: str, duration: float) -> None:
        """Record one reconciliation attempt."""
        self.notifications_total.labels(
            notification_type=notification_type or "unknown", outcome=outcome
        ).inc()
        self.reconciliation_duration_seconds.observe(duration)

    def record_apple_api_call(self, operation: str, status_code: int, duration: float) -> None:
        """Record an App Store Server API call (status 0 for transport failures)."""
        self.apple_api_requests_total.labels(operation=operation, status_code=status_code).inc()
        self.apple_api_duration_seconds.labels(operation=operation).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ReconcilerMetrics()
