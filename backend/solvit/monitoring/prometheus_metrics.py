"""
Prometheus metrics module for Solvit.

Service operation metrics are fed by ``@BaseService.measure_operation``;
the scheduled jobs and the attendance/refund paths record their own
domain counters here.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "solvit_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "solvit_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "solvit_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

scheduled_job_items_total = Counter(
    "solvit_scheduled_job_items_total",
    "Items handled by scheduled reconciliation jobs",
    ["job", "outcome"],
    registry=REGISTRY,
)

heartbeats_total = Counter(
    "solvit_session_heartbeats_total",
    "Session heartbeats received",
    ["role", "result"],
    registry=REGISTRY,
)

refund_attempts_total = Counter(
    "solvit_refund_attempts_total",
    "Refund gateway attempts",
    ["reason", "outcome"],
    registry=REGISTRY,
)

failed_actions_total = Counter(
    "solvit_failed_actions_total",
    "Reconciliation problems parked for manual follow-up",
    ["action_type"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'cancel_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_job_items(job: str, outcome: str, count: int = 1) -> None:
        if count > 0:
            scheduled_job_items_total.labels(job=job, outcome=outcome).inc(count)

    @staticmethod
    def record_heartbeat(role: str, result: str) -> None:
        heartbeats_total.labels(role=role, result=result).inc()

    @staticmethod
    def record_refund_attempt(reason: str, outcome: str) -> None:
        refund_attempts_total.labels(reason=reason, outcome=outcome).inc()

    @staticmethod
    def record_failed_action(action_type: str) -> None:
        failed_actions_total.labels(action_type=action_type).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


prometheus_metrics = PrometheusMetrics()
