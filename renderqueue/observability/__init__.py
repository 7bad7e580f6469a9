"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from renderqueue.observability.logging import job_context, setup_logging
from renderqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from renderqueue.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "job_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
