"""
AIGate - Observability Module

- Prometheus metrics
- OpenTelemetry tracing
- Structured JSON logging with request context injection

Usage:
    from aigate.observability import get_logger, get_metrics

    logger = get_logger(__name__)
    metrics = get_metrics()
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    TracingManager,
    get_tracer,
    setup_tracing,
    trace_operation,
    trace_provider_call,
)
from .logging import (
    StructuredLogger,
    JSONFormatter,
    get_logger,
    setup_logging,
    LogContext,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "setup_metrics",
    "metrics_endpoint",
    # Tracing
    "TracingManager",
    "get_tracer",
    "setup_tracing",
    "trace_operation",
    "trace_provider_call",
    # Logging
    "StructuredLogger",
    "JSONFormatter",
    "get_logger",
    "setup_logging",
    "LogContext",
]
