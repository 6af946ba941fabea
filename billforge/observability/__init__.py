"""
Observability module - Logging, Metrics, and Tracing.
"""

from billforge.observability.logging import bind_user, get_logger, log_context, setup_logging
from billforge.observability.metrics import metrics
from billforge.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "bind_user",
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
