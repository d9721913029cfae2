"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, Info, generate_latest

from chatbot.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OUTCOME = "outcome"
    MODEL = "model"
    TRANSACTION_TYPE = "transaction_type"
    ERROR_TYPE = "error_type"


class ChatbotMetrics:
    """
    Centralized metrics for the chatbot API.

    Covers:
    - HTTP requests (rate, duration)
    - Credit ledger (checks, deductions, additions)
    - Model generation (attempts, outcome, latency)
    - Checkout sessions and reconciliation
    - Memory retrieval/store outcomes
    """

    def __init__(self) -> None:
        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("chatbot_service", "Service information")
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
            "chatbot_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "chatbot_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.http_requests_in_progress = Gauge(
            "chatbot_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credit_checks_total = Counter(
            "chatbot_credit_checks_total",
            "Total credit checks performed",
            ["has_credits"],
        )

        self.credit_deductions_total = Counter(
            "chatbot_credit_deductions_total",
            "Total credit deductions attempted",
            ["success"],
        )

        self.credits_added_total = Counter(
            "chatbot_credits_added_total",
            "Total credits added to users",
            [MetricLabels.TRANSACTION_TYPE],
        )

        # ====================================================================
        # Generation Metrics
        # ====================================================================
        self.generations_total = Counter(
            "chatbot_generations_total",
            "Send-message generation outcomes",
            [MetricLabels.OUTCOME],
        )

        self.model_calls_total = Counter(
            "chatbot_model_calls_total",
            "Outbound model gateway calls",
            [MetricLabels.MODEL, "success", MetricLabels.ERROR_TYPE],
        )

        self.model_call_duration_seconds = Histogram(
            "chatbot_model_call_duration_seconds",
            "Outbound model call duration in seconds",
            buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0),
        )

        # ====================================================================
        # Checkout Metrics
        # ====================================================================
        self.checkout_sessions_total = Counter(
            "chatbot_checkout_sessions_total",
            "Checkout sessions requested",
            ["success", MetricLabels.ERROR_TYPE],
        )

        self.reconciliations_total = Counter(
            "chatbot_reconciliations_total",
            "Checkout reconciliations",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Memory Metrics
        # ====================================================================
        self.memory_operations_total = Counter(
            "chatbot_memory_operations_total",
            "Memory subsystem operations",
            ["operation", MetricLabels.OUTCOME],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_model_call(
        self, model: str, success: bool, duration: float, error_type: str | None = None
    ) -> None:
        self.model_calls_total.labels(
            model=model, success=str(success), error_type=error_type or "none"
        ).inc()
        self.model_call_duration_seconds.observe(duration)

    def record_checkout(self, success: bool, error_type: str | None = None) -> None:
        self.checkout_sessions_total.labels(
            success=str(success), error_type=error_type or "none"
        ).inc()

    def record_memory(self, operation: str, outcome: str) -> None:
        self.memory_operations_total.labels(operation=operation, outcome=outcome).inc()


# Global metrics instance
metrics = ChatbotMetrics()


def render_metrics() -> bytes:
    """Render all registered metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)
