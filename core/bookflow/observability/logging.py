"""
Structured logging with automatic workflow context propagation.

Key Features:
- Standard logger.info() calls pick up the active session/stage/node
- ContextVar-based propagation: async-safe, each task sees its own context
- Dual output modes: JSON for production, human-readable for development

Architecture:
    WorkflowStateMachine.step() → sets session_id and stage
        ↓ (automatic propagation via ContextVar)
    WorkflowNode.execute() → adds node
        ↓ (automatic propagation)
    execute_with_tool_context() → adds tool_name / operation
        ↓
    logger.info("message") → record carries all of the above
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Each asyncio task copies the context at creation, so parallel units
# never share a mutable dict through this variable.
trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

# Extra record attributes copied into JSON output when present.
_EXTRA_FIELDS = (
    "event",
    "latency_ms",
    "session_id",
    "node",
    "stage",
    "unit_number",
    "attempt",
    "retry_count",
)


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable log entries with:
    - Standard fields (timestamp, level, logger, message)
    - Workflow context (session_id, stage, node, tool_name, ...)
    - Custom fields from the ``extra`` dict
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            if isinstance(value, str):
                value = strip_ansi_codes(value)
            log_entry[name] = value

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            log_entry.update(fields)

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Colorized level plus a short ``[session | stage | node]`` prefix.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        session_id = context.get("session_id", "")
        stage = context.get("stage", "")
        node = context.get("node", "")

        prefix_parts = []
        if session_id:
            prefix_parts.append(f"session:{session_id[-8:]}")
        if stage:
            prefix_parts.append(f"stage:{stage}")
        if node:
            prefix_parts.append(f"node:{node}")

        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application.

    Call once at startup (CLI entry point, service bootstrap, test fixture).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the trace context of the current task.

    Fields set to ``None`` are removed. The dict is replaced rather than
    mutated so sibling tasks keep their own copy.
    """
    current = trace_context.get() or {}
    merged = {**current, **kwargs}
    trace_context.set({k: v for k, v in merged.items() if v is not None})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear the trace context. Mostly useful between tests."""
    trace_context.set(None)
