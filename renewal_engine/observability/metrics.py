"""
Metrics Collection with Prometheus.

Exposes loop health and renewal/payment business metrics.
"""

from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from renewal_engine.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    PROCESS = "process"
    CHECKPOINT = "checkpoint"
    ACTION_TYPE = "action_type"
    INTENT = "intent"
    CHANNEL = "channel"
    NOTIFICATION_TYPE = "notification_type"
    ERROR_TYPE = "error_type"
    OPERATION = "operation"
    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"


class EngineMetrics:
    """
    Centralized metrics for the renewal engine.

    Covers:
    - Background loops (ticks, tick duration, running state)
    - Checkpoints (fired, deduplicated)
    - Renewal decisions (by action type, mutation failures)
    - Payment ingestion (by intent, duplicates)
    - Notifications (sent, failed)
    - Per-client evaluation errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "renewal_engine_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics (operational endpoints)
        # ====================================================================
        self.http_requests_total = Counter(
            "renewal_engine_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "renewal_engine_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Loop Metrics
        # ====================================================================
        self.loop_ticks_total = Counter(
            "renewal_engine_loop_ticks_total",
            "Total background loop ticks",
            [MetricLabels.PROCESS, "success"],
        )

        self.loop_tick_duration_seconds = Histogram(
            "renewal_engine_loop_tick_duration_seconds",
            "Background loop tick duration in seconds",
            [MetricLabels.PROCESS],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.loop_running = Gauge(
            "renewal_engine_loop_running",
            "Whether a background loop is running (1) or stopped (0)",
            [MetricLabels.PROCESS],
        )

        # ====================================================================
        # Checkpoint Metrics
        # ====================================================================
        self.checkpoints_fired_total = Counter(
            "renewal_engine_checkpoints_fired_total",
            "Checkpoints fired per client",
            [MetricLabels.CHECKPOINT],
        )

        self.checkpoints_deduplicated_total = Counter(
            "renewal_engine_checkpoints_deduplicated_total",
            "Checkpoint matches skipped because they already fired",
            [MetricLabels.CHECKPOINT],
        )

        # ====================================================================
        # Renewal Metrics
        # ====================================================================
        self.renewal_actions_total = Counter(
            "renewal_engine_renewal_actions_total",
            "Renewal actions applied by type",
            [MetricLabels.ACTION_TYPE],
        )

        self.renewal_mutation_failures_total = Counter(
            "renewal_engine_renewal_mutation_failures_total",
            "Renewal writes that failed and degraded to top-up",
            [MetricLabels.ACTION_TYPE, MetricLabels.ERROR_TYPE],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.payments_processed_total = Counter(
            "renewal_engine_payments_processed_total",
            "Payments consumed by intent",
            [MetricLabels.INTENT, MetricLabels.CHANNEL],
        )

        self.payments_duplicate_total = Counter(
            "renewal_engine_payments_duplicate_total",
            "Payments skipped because the external reference was already consumed",
            [MetricLabels.CHANNEL],
        )

        self.payment_amount = Histogram(
            "renewal_engine_payment_amount",
            "Payment amounts in currency units",
            buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 25000),
        )

        # ====================================================================
        # Notification Metrics
        # ====================================================================
        self.notifications_total = Counter(
            "renewal_engine_notifications_total",
            "Notification dispatch attempts",
            [MetricLabels.NOTIFICATION_TYPE, "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "renewal_engine_errors_total",
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

    def record_tick(self, process: str, success: bool, duration: float) -> None:
        """Record a background loop tick."""
        self.loop_ticks_total.labels(process=process, success=str(success)).inc()
        self.loop_tick_duration_seconds.labels(process=process).observe(duration)

    def set_running(self, process: str, running: bool) -> None:
        """Record loop running state."""
        self.loop_running.labels(process=process).set(1 if running else 0)

    def record_checkpoint(self, checkpoint: str, fired: bool) -> None:
        """Record a checkpoint match."""
        if fired:
            self.checkpoints_fired_total.labels(checkpoint=checkpoint).inc()
        else:
            self.checkpoints_deduplicated_total.labels(checkpoint=checkpoint).inc()

    def record_renewal(self, action_type: str) -> None:
        """Record an applied renewal action."""
        self.renewal_actions_total.labels(action_type=action_type).inc()

    def record_renewal_failure(self, action_type: str, error_type: str) -> None:
        """Record a renewal write that degraded to top-up."""
        self.renewal_mutation_failures_total.labels(
            action_type=action_type, error_type=error_type
        ).inc()

    def record_payment(self, intent: str, channel: str, amount: float) -> None:
        """Record a consumed payment."""
        self.payments_processed_total.labels(intent=intent, channel=channel).inc()
        self.payment_amount.observe(amount)

    def record_duplicate_payment(self, channel: str) -> None:
        """Record a skipped duplicate payment."""
        self.payments_duplicate_total.labels(channel=channel).inc()

    def record_notification(self, notification_type: str, success: bool) -> None:
        """Record a notification dispatch attempt."""
        self.notifications_total.labels(
            notification_type=notification_type, success=str(success)
        ).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EngineMetrics()
