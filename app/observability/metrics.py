"""
Metrics Collection with Prometheus.

Exposes metering and system metrics for monitoring.
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
    FEATURE = "feature"
    MODEL = "model"
    ERROR_TYPE = "error_type"


class UsageMetrics:
    """
    Centralized metrics for the usage API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Usage gate decisions (allowed/denied and why)
    - Usage recording (events, tokens, failures)
    - Subscription provisioning and plan changes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "usage_service",
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
            "usage_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "usage_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "usage_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Gate Metrics
        # ====================================================================
        self.usage_checks_total = Counter(
            "usage_limit_checks_total",
            "Total usage gate decisions",
            ["allowed", "reason"],
        )

        self.usage_check_duration_seconds = Histogram(
            "usage_limit_check_duration_seconds",
            "Usage gate duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
        )

        # ====================================================================
        # Recording Metrics
        # ====================================================================
        self.usage_events_total = Counter(
            "usage_events_recorded_total",
            "Total token usage events recorded",
            [MetricLabels.FEATURE, "success"],
        )

        self.tokens_recorded_total = Counter(
            "usage_tokens_recorded_total",
            "Total tokens recorded",
            [MetricLabels.FEATURE, MetricLabels.MODEL],
        )

        # ====================================================================
        # Subscription Metrics
        # ====================================================================
        self.subscriptions_provisioned_total = Counter(
            "usage_subscriptions_provisioned_total",
            "Default-plan subscriptions created on first use",
        )

        self.plan_changes_total = Counter(
            "usage_plan_changes_total",
            "Plan changes by target plan",
            ["plan_name"],
        )

        self.periods_rolled_over_total = Counter(
            "usage_billing_periods_rolled_over_total",
            "Expired billing periods advanced by the rollover job",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "usage_errors_total",
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

    def record_usage_check(self, allowed: bool, reason: str | None, duration: float) -> None:
        """Record a gate decision."""
        self.usage_checks_total.labels(allowed=str(allowed), reason=reason or "within_limit").inc()
        self.usage_check_duration_seconds.observe(duration)

    def record_usage_event(
        self, feature: str, model: str | None, tokens: int, success: bool
    ) -> None:
        """Record a usage event write attempt."""
        self.usage_events_total.labels(feature=feature, success=str(success)).inc()
        if success:
            self.tokens_recorded_total.labels(feature=feature, model=model or "unknown").inc(
                tokens
            )

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = UsageMetrics()
