"""
Observability: workflow-aware structured logging and metrics sinks.

- Automatic session/stage/node context propagation via ContextVar
- Structured JSON logging for production, human-readable for development
- Fire-and-forget metrics sinks that are safe to leave as no-ops
"""

from bookflow.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from bookflow.observability.metrics import (
    InMemoryMetricsSink,
    LoggingMetricsSink,
    MetricsSink,
    NullMetricsSink,
    emit,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "MetricsSink",
    "NullMetricsSink",
    "LoggingMetricsSink",
    "InMemoryMetricsSink",
    "emit",
]
