"""Tests for structured logging and metrics sinks."""

import json
import logging

import pytest

from bookflow.errors.context import error_scope
from bookflow.observability import (
    InMemoryMetricsSink,
    LoggingMetricsSink,
    configure_logging,
    emit,
    get_trace_context,
    set_trace_context,
)
from bookflow.observability.logging import HumanReadableFormatter, StructuredFormatter


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("bookflow.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestTraceContext:
    def test_none_removes_field(self):
        set_trace_context(session_id="s1", stage="outline")
        set_trace_context(stage=None)

        assert get_trace_context() == {"session_id": "s1"}

    def test_returned_dict_is_a_copy(self):
        set_trace_context(session_id="s1")
        get_trace_context()["session_id"] = "changed"

        assert get_trace_context()["session_id"] == "s1"


class TestStructuredFormatter:
    def test_includes_trace_context_and_extras(self):
        formatter = StructuredFormatter()

        with error_scope("s1", session_id="s1", stage="unit_generation"):
            line = formatter.format(make_record("\033[32mUnit done\033[0m", event="unit_completed", unit_number=3))

        entry = json.loads(line)
        assert entry["message"] == "Unit done"
        assert entry["session_id"] == "s1"
        assert entry["stage"] == "unit_generation"
        assert entry["event"] == "unit_completed"
        assert entry["unit_number"] == 3
        assert entry["level"] == "info"

    def test_metric_fields_are_flattened(self):
        entry = json.loads(
            StructuredFormatter().format(make_record("metric x", fields={"duration": 1.5}))
        )

        assert entry["duration"] == 1.5


def test_human_formatter_prefixes_context():
    set_trace_context(session_id="session_abc", stage="outline")

    line = HumanReadableFormatter().format(make_record("Planning"))

    assert "Planning" in line
    assert "stage:outline" in line
    assert "session:sion_abc" in line


def test_human_formatter_shows_node_inside_scope():
    with error_scope("s1", session_id="s1", stage="outline", node="outline"):
        line = HumanReadableFormatter().format(make_record("Planning"))

    assert "node:outline" in line


class TestMetricsSinks:
    def test_in_memory_sink_records_events(self):
        sink = InMemoryMetricsSink()

        emit(sink, "node_completed", node_name="outline")
        emit(sink, "node_failed", node_name="unit_1")

        assert sink.named("node_completed") == [{"node_name": "outline"}]
        assert [name for name, _ in sink.events] == ["node_completed", "node_failed"]

    def test_logging_sink(self, caplog):
        with caplog.at_level(logging.INFO, logger="bookflow.observability.metrics"):
            LoggingMetricsSink().record("checkpoint_saved", {"session_id": "s1"})

        assert "metric checkpoint_saved" in caplog.text

    def test_emit_ignores_missing_and_failing_sinks(self):
        class Broken:
            def record(self, event_name, fields):
                raise RuntimeError("down")

        emit(None, "anything")
        emit(Broken(), "anything")


@pytest.mark.parametrize("fmt,formatter", [("json", StructuredFormatter), ("human", HumanReadableFormatter)])
def test_configure_logging_selects_formatter(fmt, formatter, monkeypatch):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    monkeypatch.setenv("NO_COLOR", "")
    try:
        configure_logging(level="warning", format=fmt)
        assert isinstance(root.handlers[0].formatter, formatter)
        assert root.level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
