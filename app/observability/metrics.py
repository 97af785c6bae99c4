"""
Metrics Collection with Prometheus.

Exposes provisioning and system metrics for monitoring.
"""

import time
from collections.abc import Callable
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    REASON = "reason"
    OUTCOME = "outcome"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class AccessMetrics:
    """
    Centralized metrics for the Indicator Access API.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Provisioning runs (reason, outcome, duration)
    - Per-indicator grant results and session failures
    - Billing events and plan catalog fetches
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "access_service",
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
            "access_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "access_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "access_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Provisioning Metrics
        # ====================================================================
        self.provisioning_runs_total = Counter(
            "access_provisioning_runs_total",
            "Total provisioning state machine runs",
            [MetricLabels.REASON, MetricLabels.OUTCOME],
        )

        self.provisioning_duration_seconds = Histogram(
            "access_provisioning_duration_seconds",
            "Provisioning run duration in seconds",
            [MetricLabels.REASON],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.indicator_grants_total = Counter(
            "access_indicator_grants_total",
            "Per-indicator grant results",
            ["status"],
        )

        self.session_errors_total = Counter(
            "access_session_errors_total",
            "TradingView session credential rejections",
        )

        self.refresh_triggers_total = Counter(
            "access_refresh_triggers_total",
            "Session refresh trigger attempts",
            ["triggered"],
        )

        # ====================================================================
        # Billing Event Metrics
        # ====================================================================
        self.billing_events_total = Counter(
            "access_billing_events_total",
            "Billing events received",
            [MetricLabels.EVENT_TYPE, "disposition"],
        )

        self.plan_catalog_fetches_total = Counter(
            "access_plan_catalog_fetches_total",
            "Plan catalog fetches from the billing provider",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "access_errors_total",
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

    def record_provisioning(self, reason: str, outcome: str, duration: float) -> None:
        """Record one provisioning run."""
        self.provisioning_runs_total.labels(reason=reason, outcome=outcome).inc()
        self.provisioning_duration_seconds.labels(reason=reason).observe(duration)

    def record_indicator_grant(self, status: str) -> None:
        """Record a per-indicator grant result."""
        self.indicator_grants_total.labels(status=status).inc()

    def record_session_error(self, triggered: bool) -> None:
        """Record a session rejection and whether a refresh was triggered."""
        self.session_errors_total.inc()
        self.refresh_triggers_total.labels(triggered=str(triggered)).inc()

    def record_billing_event(self, event_type: str, disposition: str) -> None:
        """Record a received billing event and what was done with it."""
        self.billing_events_total.labels(event_type=event_type, disposition=disposition).inc()

    def record_plan_fetch(self, success: bool) -> None:
        """Record a plan catalog fetch."""
        self.plan_catalog_fetches_total.labels(success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = AccessMetrics()


# Context managers for automatic metric recording
class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/access/refresh", "POST") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        """Start tracking."""
        self.start_time = time.time()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.time() - self.start_time
        if exc_type is not None:
            self.status_code = 500  # Default to 500 on exception
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get Prometheus metrics handler for FastAPI.

    Usage:
        handler = get_metrics_handler()
        return Response(content=handler(), media_type=CONTENT_TYPE_LATEST)
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
