"""
Error context enrichment.

Diagnostic context (session, stage, active tool, active operation) is kept
per *scope*, usually the session id. Scopes live in a ContextVar, so every
asyncio task works on its own copy: two sessions running concurrently in the
same process never see each other's fields.

Usage::

    with error_scope(state.session_id, stage=state.current_stage):
        ...
        raise enrich_error(err, state.session_id)

Scopes nest: the inner scope's fields override the outer ones and the outer
fields come back when the inner block exits, on every exit path.
"""

import logging
import os
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import BaseModel

from bookflow.errors import BaseError, StorageError, ToolError
from bookflow.observability.logging import set_trace_context, trace_context

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields mirrored into the logging trace context when a scope is entered.
_TRACE_FIELDS = ("session_id", "stage", "node", "tool_name", "operation", "request_id")

_scopes: ContextVar[dict[str, dict[str, Any]] | None] = ContextVar("error_scopes", default=None)


class ErrorContext(BaseModel):
    """Merged diagnostic context attached to errors."""

    session_id: str | None = None
    user_id: str | None = None
    stage: str | None = None
    operation: str | None = None
    tool_name: str | None = None
    request_id: str | None = None
    timestamp: str
    environment: str = "development"
    version: str | None = None

    model_config = {"extra": "allow"}

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ErrorContextStore:
    """
    Default context plus per-scope context.

    The default context is process-wide and meant for static facts
    (environment, version). Scope context is task-local.
    """

    def __init__(self) -> None:
        self._default: dict[str, Any] = {}

    def set_default_context(self, **fields: Any) -> None:
        self._default = {**self._default, **fields}

    def set_context(self, scope_id: str, **fields: Any) -> None:
        """Merge ``fields`` into ``scope_id`` for the current task."""
        scopes = dict(_scopes.get() or {})
        scopes[scope_id] = {**scopes.get(scope_id, {}), **fields}
        _scopes.set(scopes)

    def get_context(self, scope_id: str | None = None) -> ErrorContext:
        base: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "environment": os.getenv("ENV", "development"),
            "version": os.getenv("BOOKFLOW_VERSION"),
            **self._default,
        }
        scopes = _scopes.get() or {}
        if scope_id and scope_id in scopes:
            base.update(scopes[scope_id])
        return ErrorContext(**base)

    def has_context(self, scope_id: str) -> bool:
        return scope_id in (_scopes.get() or {})

    def clear_context(self, scope_id: str) -> None:
        scopes = dict(_scopes.get() or {})
        scopes.pop(scope_id, None)
        _scopes.set(scopes)

    def clear_all_contexts(self) -> None:
        """Drop every scope and the default context. Used by tests."""
        _scopes.set(None)
        self._default = {}

    @contextmanager
    def scope(self, scope_id: str, **fields: Any) -> Iterator[str]:
        """Enter ``scope_id`` with ``fields`` merged over its current fields.

        On exit the scope map and the logging trace context are restored to
        what they were on entry.
        """
        scopes = dict(_scopes.get() or {})
        scopes[scope_id] = {**scopes.get(scope_id, {}), **fields}
        scopes_token = _scopes.set(scopes)

        trace_token = trace_context.set(trace_context.get())
        set_trace_context(**{k: v for k, v in fields.items() if k in _TRACE_FIELDS})
        try:
            yield scope_id
        finally:
            trace_context.reset(trace_token)
            _scopes.reset(scopes_token)


error_context_store = ErrorContextStore()


def error_scope(scope_id: str, **fields: Any):
    """Shortcut for ``error_context_store.scope``."""
    return error_context_store.scope(scope_id, **fields)


def generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def enrich_error(
    error: BaseException,
    scope_id: str | None = None,
    extra: dict[str, Any] | None = None,
) -> BaseError:
    """
    Attach the current scope's context to ``error``.

    Structured errors come back as a new error of the same class with
    ``context = {**old, **scope, **extra}``; cause and traceback are kept.
    Anything else is wrapped in a generic ``BaseError`` with the original
    recorded under ``original_error``.
    """
    fields = {**error_context_store.get_context(scope_id).as_dict(), **(extra or {})}

    if isinstance(error, BaseError):
        return error.with_context(**fields)

    wrapped = BaseError(
        str(error) or type(error).__name__,
        code="ENRICHED_ERROR",
        context={
            **fields,
            "original_error": {"name": type(error).__name__, "message": str(error)},
        },
        cause=error,
    )
    return wrapped.with_traceback(error.__traceback__)


def _scope_identity(session_id: str | None, scope_id: str) -> dict[str, str]:
    if session_id:
        return {"session_id": session_id}
    return {"request_id": scope_id}


def _tool_error_from(tool_name: str, parameters: Any, error: Exception) -> BaseError:
    if isinstance(error, BaseError):
        return error
    if isinstance(error, TimeoutError):
        code = "TOOL_TIMEOUT"
    elif isinstance(error, ConnectionError):
        code = "TOOL_NETWORK_ERROR"
    else:
        code = "TOOL_EXECUTION_ERROR"
    return ToolError(tool_name, str(error) or type(error).__name__, code=code, parameters=parameters, cause=error)


async def execute_with_tool_context(
    tool_name: str,
    parameters: Any,
    operation: Callable[[], Awaitable[T]],
    session_id: str | None = None,
) -> T:
    """
    Run an external tool / agent call with tool context set.

    Failures come out as enriched ``ToolError`` (or the structured error the
    operation already raised), with the call duration in the context.
    """
    scope_id = session_id or generate_request_id()
    start = time.perf_counter()

    with error_scope(
        scope_id,
        **_scope_identity(session_id, scope_id),
        tool_name=tool_name,
        operation=f"tool_{tool_name}",
    ):
        logger.debug(f"Executing tool: {tool_name}")
        try:
            result = await operation()
        except Exception as e:
            duration = time.perf_counter() - start
            final = enrich_error(_tool_error_from(tool_name, parameters, e), scope_id, {"duration": duration})
            logger.error(
                f"Tool execution failed: {tool_name} ({final.code}): {final.message}",
                extra={"event": "tool_failed", "latency_ms": int(duration * 1000)},
            )
            raise final

        duration = time.perf_counter() - start
        logger.info(
            f"Tool execution completed: {tool_name}",
            extra={"event": "tool_completed", "latency_ms": int(duration * 1000)},
        )
        return result


async def execute_with_store_context(
    operation: str,
    table: str,
    call: Callable[[], Awaitable[T]],
    session_id: str | None = None,
) -> T:
    """Run a persistent-store call; failures come out as enriched ``StorageError``."""
    scope_id = session_id or generate_request_id()
    start = time.perf_counter()

    with error_scope(
        scope_id,
        **_scope_identity(session_id, scope_id),
        operation=f"db_{operation}",
        tool_name=None,
    ):
        logger.debug(f"Executing store operation: {operation} on {table}")
        try:
            result = await call()
        except Exception as e:
            duration = time.perf_counter() - start
            error = (
                e
                if isinstance(e, BaseError)
                else StorageError(operation, str(e) or type(e).__name__, table=table, cause=e)
            )
            final = enrich_error(error, scope_id, {"duration": duration, "table": table})
            logger.error(
                f"Store operation failed: {operation} on {table}: {final.message}",
                extra={"event": "store_failed", "latency_ms": int(duration * 1000)},
            )
            raise final

        duration = time.perf_counter() - start
        logger.debug(
            f"Store operation completed: {operation} on {table}",
            extra={"latency_ms": int(duration * 1000)},
        )
        return result


def get_current_context(scope_id: str | None = None) -> ErrorContext:
    return error_context_store.get_context(scope_id)


def set_global_context(**fields: Any) -> None:
    error_context_store.set_default_context(**fields)
