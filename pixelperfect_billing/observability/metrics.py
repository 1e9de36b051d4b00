"""
Metrics Collection with Prometheus.

Exposes webhook, credit and subscription metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from pixelperfect_billing.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    TRANSACTION_TYPE = "transaction_type"
    ERROR_TYPE = "error_type"
    RESULT_CODE = "result_code"


class BillingMetrics:
    """
    Centralized metrics for the PixelPerfect billing service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Webhook events (rate by type and outcome, processing duration)
    - Credit mutations (rate and size by transaction type)
    - Subscription changes (rate by result code)
    - Event status update failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "pixelperfect_billing_service",
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
            "pixelperfect_billing_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "pixelperfect_billing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "pixelperfect_billing_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "pixelperfect_billing_webhook_events_total",
            "Webhook events received, by type and outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.webhook_processing_duration_seconds = Histogram(
            "pixelperfect_billing_webhook_processing_duration_seconds",
            "Webhook handler duration in seconds",
            [MetricLabels.EVENT_TYPE],
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.event_status_update_failures_total = Counter(
            "pixelperfect_billing_event_status_update_failures_total",
            "Failed attempts to write a webhook event status",
            ["status"],
        )

        self.stale_events_swept_total = Counter(
            "pixelperfect_billing_stale_events_swept_total",
            "Webhook events moved from processing to failed by the sweeper",
        )

        self.webhook_recoveries_total = Counter(
            "pixelperfect_billing_webhook_recoveries_total",
            "Failed webhook events retried by the recovery job",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credit_mutations_total = Counter(
            "pixelperfect_billing_credit_mutations_total",
            "Credit transactions written",
            [MetricLabels.TRANSACTION_TYPE],
        )

        self.credit_mutation_amount = Histogram(
            "pixelperfect_billing_credit_mutation_amount",
            "Absolute credit amount per transaction",
            [MetricLabels.TRANSACTION_TYPE],
            buckets=(1, 10, 50, 100, 200, 500, 1000, 5000, 10000, 30000),
        )

        self.credit_mutations_skipped_total = Counter(
            "pixelperfect_billing_credit_mutations_skipped_total",
            "Credit grants skipped because the reference was already applied",
            [MetricLabels.TRANSACTION_TYPE],
        )

        # ====================================================================
        # Subscription Change Metrics
        # ====================================================================
        self.subscription_changes_total = Counter(
            "pixelperfect_billing_subscription_changes_total",
            "Subscription change requests by result code",
            [MetricLabels.RESULT_CODE],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "pixelperfect_billing_errors_total",
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

    def record_webhook_event(self, event_type: str, outcome: str, duration: float | None = None) -> None:
        """Record a webhook delivery outcome (completed, skipped, failed, unrecoverable)."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        if duration is not None:
            self.webhook_processing_duration_seconds.labels(event_type=event_type).observe(
                duration
            )

    def record_credit_mutation(self, transaction_type: str, amount: int) -> None:
        self.credit_mutations_total.labels(transaction_type=transaction_type).inc()
        self.credit_mutation_amount.labels(transaction_type=transaction_type).observe(abs(amount))

    def record_credit_mutation_skipped(self, transaction_type: str) -> None:
        self.credit_mutations_skipped_total.labels(transaction_type=transaction_type).inc()

    def record_subscription_change(self, result_code: str) -> None:
        self.subscription_changes_total.labels(result_code=result_code).inc()

    def record_status_update_failure(self, status: str) -> None:
        self.event_status_update_failures_total.labels(status=status).inc()

    def record_webhook_recovery(self, event_type: str, outcome: str) -> None:
        self.webhook_recoveries_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BillingMetrics()


class track_webhook_processing:
    """
    Context manager for timing a webhook handler.

    Usage:
        with track_webhook_processing("invoice.paid") as tracker:
            await handler(webhook)
            tracker.set_outcome("completed")
    """

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        self.outcome = "completed"
        self.start_time: float = 0.0

    def set_outcome(self, outcome: str) -> None:
        self.outcome = outcome

    def __enter__(self) -> "track_webhook_processing":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.outcome = "failed"
        metrics.record_webhook_event(self.event_type, self.outcome, duration)
