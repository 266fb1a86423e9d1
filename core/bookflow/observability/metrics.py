"""
Metrics sinks.

The orchestration core emits fire-and-forget events (``node_completed``,
``node_failed``, ``retry_attempt``, ``checkpoint_saved``, ...) through a
``MetricsSink``. The core must behave identically when the sink is a no-op,
so ``record`` never raises into callers: ``emit`` guards every call.
"""

import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class MetricsSink(Protocol):
    """Anything that accepts ``record(event_name, fields)``."""

    def record(self, event_name: str, fields: dict[str, Any]) -> None: ...


class NullMetricsSink:
    """Discards every event."""

    def record(self, event_name: str, fields: dict[str, Any]) -> None:
        return None


class LoggingMetricsSink:
    """Writes each event as a structured log record."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def record(self, event_name: str, fields: dict[str, Any]) -> None:
        logger.log(self.level, f"metric {event_name}", extra={"event": event_name, "fields": fields})


class InMemoryMetricsSink:
    """Keeps events in a list. Handy for tests and local debugging."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def record(self, event_name: str, fields: dict[str, Any]) -> None:
        self.events.append((event_name, dict(fields)))

    def named(self, event_name: str) -> list[dict[str, Any]]:
        return [fields for name, fields in self.events if name == event_name]


def emit(sink: MetricsSink | None, event_name: str, **fields: Any) -> None:
    """Send an event to ``sink``; a failing sink is logged and ignored."""
    if sink is None:
        return
    try:
        sink.record(event_name, fields)
    except Exception as e:
        logger.warning(f"Metrics sink failed for {event_name}: {e}")
