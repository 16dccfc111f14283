"""
Observability module - Logging, Metrics, and Tracing.
"""

from app.observability.logging import get_logger, log_context, setup_logging
from app.observability.metrics import metrics
from app.observability.tracing import get_tracer, setup_tracing, traced_span

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "get_tracer",
    "setup_tracing",
    "traced_span",
]
