"""
Metrics Collection with Prometheus.

Exposes session, reconciliation and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from billforge.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    RESULT = "result"


class BillingMetrics:
    """
    Centralized metrics for the BillForge API.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Session lifecycle (issuance, rotation results, reuse detection, sweeps)
    - Webhook reconciliation (outcome per event type, invariant enforcement)
    - Errors by type
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "billforge_service",
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
            "billforge_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "billforge_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "billforge_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Session Metrics
        # ====================================================================
        self.sessions_issued_total = Counter(
            "billforge_sessions_issued_total",
            "Total refresh sessions issued",
            [MetricLabels.OPERATION],
        )

        self.session_rotations_total = Counter(
            "billforge_session_rotations_total",
            "Refresh token rotation attempts by result",
            [MetricLabels.RESULT],
        )

        self.refresh_token_reuse_total = Counter(
            "billforge_refresh_token_reuse_total",
            "Presentations of an already-revoked refresh token",
        )

        self.refresh_tokens_swept_total = Counter(
            "billforge_refresh_tokens_swept_total",
            "Expired or long-revoked refresh tokens deleted by the sweep",
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "billforge_webhook_events_total",
            "Stripe webhook events by type and reconciliation outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.subscriptions_superseded_total = Counter(
            "billforge_subscriptions_superseded_total",
            "Occupying subscriptions canceled to keep one per user",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "billforge_errors_total",
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

    def record_session_issued(self, operation: str) -> None:
        """Record a new refresh session (register, login, rotate)."""
        self.sessions_issued_total.labels(operation=operation).inc()

    def record_rotation(self, result: str) -> None:
        """Record a rotation attempt (rotated, invalid, expired, reused)."""
        self.session_rotations_total.labels(result=result).inc()

    def record_webhook_event(self, event_type: str, outcome: str) -> None:
        """Record the reconciliation outcome of a webhook event."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_superseded(self, operation: str, count: int) -> None:
        """Record subscriptions canceled by the single-occupying rule."""
        if count > 0:
            self.subscriptions_superseded_total.labels(operation=operation).inc(count)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BillingMetrics()
