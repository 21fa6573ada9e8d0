"""
Observability module - Logging, Metrics, and Tracing.
"""

from farmbook.observability.logging import get_logger, setup_logging
from farmbook.observability.metrics import metrics
from farmbook.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
