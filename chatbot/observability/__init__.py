"""
Observability module - Logging, Metrics, and Tracing.
"""

from chatbot.observability.logging import get_logger, log_context, setup_logging
from chatbot.observability.metrics import metrics
from chatbot.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
