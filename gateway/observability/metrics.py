"""
Metrics Collection with Prometheus.

Exposes admission, settlement, cache and provider metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from gateway.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ACTION = "action"
    PROVIDER = "provider"
    REASON = "reason"
    ERROR_TYPE = "error_type"


class GatewayMetrics:
    """
    Centralized metrics for the generation gateway.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Admission rejections by gate
    - Credit deductions and refunds
    - Result cache hits and misses
    - Provider calls and poll attempts
    - Abuse events and automatic blocks
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "gateway_service",
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
            "gateway_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "gateway_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0),
        )

        self.http_requests_in_progress = Gauge(
            "gateway_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Admission Metrics
        # ====================================================================
        self.admissions_rejected_total = Counter(
            "gateway_admissions_rejected_total",
            "Requests rejected before any billable work",
            [MetricLabels.ACTION, MetricLabels.REASON],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.credits_deducted_total = Counter(
            "gateway_credits_deducted_total",
            "Credits deducted",
            [MetricLabels.ACTION],
        )

        self.credits_refunded_total = Counter(
            "gateway_credits_refunded_total",
            "Credits refunded",
            [MetricLabels.ACTION],
        )

        self.generations_total = Counter(
            "gateway_generations_total",
            "Generation attempts by outcome",
            [MetricLabels.ACTION, "outcome"],
        )

        # ====================================================================
        # Cache Metrics
        # ====================================================================
        self.cache_lookups_total = Counter(
            "gateway_cache_lookups_total",
            "Result cache lookups",
            [MetricLabels.ACTION, "hit"],
        )

        # ====================================================================
        # Provider Metrics
        # ====================================================================
        self.provider_duration_seconds = Histogram(
            "gateway_provider_duration_seconds",
            "Provider job duration from submit to terminal state",
            [MetricLabels.PROVIDER],
            buckets=(1.0, 5.0, 10.0, 20.0, 30.0, 60.0, 90.0, 120.0, 180.0),
        )

        self.poll_attempts_total = Counter(
            "gateway_poll_attempts_total",
            "Provider status polls",
            [MetricLabels.PROVIDER],
        )

        # ====================================================================
        # Abuse Metrics
        # ====================================================================
        self.abuse_events_total = Counter(
            "gateway_abuse_events_total",
            "Abuse events recorded",
            ["event_type", "severity"],
        )

        self.auto_blocks_total = Counter(
            "gateway_auto_blocks_total",
            "Automatic blocks created",
            ["trigger_event"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "gateway_errors_total",
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

    def record_rejection(self, action: str, reason: str) -> None:
        self.admissions_rejected_total.labels(action=action, reason=reason).inc()

    def record_deduction(self, action: str, credits: int) -> None:
        self.credits_deducted_total.labels(action=action).inc(credits)

    def record_refund(self, action: str, credits: int) -> None:
        self.credits_refunded_total.labels(action=action).inc(credits)

    def record_generation(self, action: str, outcome: str) -> None:
        """Record a finished generation (success, cached, failed, timed_out)."""
        self.generations_total.labels(action=action, outcome=outcome).inc()

    def record_cache_lookup(self, action: str, hit: bool) -> None:
        self.cache_lookups_total.labels(action=action, hit=str(hit)).inc()

    def record_provider_call(self, provider: str, duration: float) -> None:
        self.provider_duration_seconds.labels(provider=provider).observe(duration)

    def record_poll_attempt(self, provider: str) -> None:
        self.poll_attempts_total.labels(provider=provider).inc()

    def record_abuse_event(self, event_type: str, severity: str) -> None:
        self.abuse_events_total.labels(event_type=event_type, severity=severity).inc()

    def record_auto_block(self, trigger_event: str) -> None:
        self.auto_blocks_total.labels(trigger_event=trigger_event).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GatewayMetrics()
