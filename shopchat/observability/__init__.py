"""
Observability module - Logging, Metrics, and Tracing.
"""

from shopchat.observability.logging import get_logger, log_context, setup_logging
from shopchat.observability.metrics import metrics
from shopchat.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
