"""
Metrics Collection with Prometheus.

Exposes chat and credit metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from shopchat.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    REQUEST_TYPE = "request_type"
    ERROR_TYPE = "error_type"


class ChatMetrics:
    """
    Centralized metrics for the chat API.

    Covers:
    - HTTP requests (rate, duration)
    - Credit checks (allowed/denied)
    - Usage records (by request type, credits debited)
    - Chat turns (outcome, duration, streaming vs background)
    - Model calls and realtime mirror failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "shopchat_service",
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
            "shopchat_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "shopchat_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "shopchat_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credit_checks_total = Counter(
            "shopchat_credit_checks_total",
            "Total credit availability checks",
            ["allowed", "reason"],
        )

        self.usage_records_total = Counter(
            "shopchat_usage_records_total",
            "Total usage log entries written",
            [MetricLabels.REQUEST_TYPE, "success"],
        )

        self.credits_debited_total = Counter(
            "shopchat_credits_debited_total",
            "Total credits debited from merchant accounts",
        )

        # ====================================================================
        # Chat Turn Metrics
        # ====================================================================
        self.chat_turns_total = Counter(
            "shopchat_chat_turns_total",
            "Total chat turns processed",
            [MetricLabels.OUTCOME, "streaming"],
        )

        self.chat_turn_duration_seconds = Histogram(
            "shopchat_chat_turn_duration_seconds",
            "Chat turn duration in seconds",
            ["streaming"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0),
        )

        self.background_turns_in_progress = Gauge(
            "shopchat_background_turns_in_progress",
            "Number of background chat turns currently running",
        )

        self.model_call_duration_seconds = Histogram(
            "shopchat_model_call_duration_seconds",
            "Generative model call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.mirror_errors_total = Counter(
            "shopchat_mirror_errors_total",
            "Realtime mirror write failures",
            [MetricLabels.OPERATION],
        )

        self.errors_total = Counter(
            "shopchat_errors_total",
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

    def record_credit_check(self, allowed: bool, reason: str | None) -> None:
        """Record credit check metrics."""
        self.credit_checks_total.labels(allowed=str(allowed), reason=reason or "ok").inc()

    def record_usage(self, request_type: str, success: bool, credits_used: int) -> None:
        """Record a usage log entry and any debit."""
        self.usage_records_total.labels(request_type=request_type, success=str(success)).inc()
        if success and credits_used > 0:
            self.credits_debited_total.inc(credits_used)

    def record_chat_turn(self, outcome: str, streaming: bool, duration: float) -> None:
        """Record a finished chat turn."""
        self.chat_turns_total.labels(outcome=outcome, streaming=str(streaming)).inc()
        self.chat_turn_duration_seconds.labels(streaming=str(streaming)).observe(duration)

    def record_model_call(self, operation: str, duration: float) -> None:
        """Record generative model latency."""
        self.model_call_duration_seconds.labels(operation=operation).observe(duration)

    def record_mirror_error(self, operation: str) -> None:
        """Record a realtime mirror failure."""
        self.mirror_errors_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ChatMetrics()
