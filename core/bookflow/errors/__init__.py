"""
Error taxonomy for the orchestration core.

Every structured error carries a ``kind`` discriminant (``ErrorKind``), a
stable ``code``, an ISO-8601 ``timestamp``, a ``context`` dict, a
``recoverable`` flag and, when it wraps something, ``__cause__``.

Structural classes say *where* an error came from:

    BaseError            generic
    ToolError            an external tool / LLM agent call
    StorageError         a persistent-store call
    WorkflowError        a workflow stage

Taxonomy classes say *how* it must be handled (see ``ErrorKind``):

    ValidationError          never retried, terminal for the attempt
    TransientOperationError  retried with backoff
    DependencyCycleError     aborts spawning immediately
    RetryExhaustedError      terminal wrapper after the retry budget is spent
    PersistenceError         logged and swallowed at the checkpoint boundary
    CriticalWorkflowError    never recoverable

Handling sites dispatch with ``match error.kind`` instead of walking the
class hierarchy.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Self


class ErrorKind(StrEnum):
    """How an error must be handled."""

    GENERIC = "generic"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    DEPENDENCY_CYCLE = "dependency_cycle"
    RETRY_EXHAUSTED = "retry_exhausted"
    PERSISTENCE = "persistence"
    CRITICAL = "critical"


class BaseError(Exception):
    """Base class for all structured errors."""

    default_kind: ErrorKind = ErrorKind.GENERIC
    default_code: str = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        recoverable: bool | None = None,
        kind: ErrorKind | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.code = code or self.default_code
        self.timestamp = datetime.now(UTC).isoformat()
        self.context: dict[str, Any] = dict(context or {})
        self.recoverable = (
            recoverable if recoverable is not None else self.kind == ErrorKind.TRANSIENT
        )
        if cause is not None:
            self.__cause__ = cause

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    def with_context(self, **context: Any) -> Self:
        """Return a copy of this error with ``context`` merged over the old one.

        The copy keeps the class, code, timestamp, cause and traceback.
        """
        clone = type(self).__new__(type(self), *self.args)
        clone.__dict__.update(self.__dict__)
        clone.context = {**self.context, **context}
        clone.__cause__ = self.__cause__
        clone.__traceback__ = self.__traceback__
        return clone

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict form for logs and persisted state."""
        return {
            "name": self.name,
            "kind": str(self.kind),
            "message": self.message,
            "code": self.code,
            "timestamp": self.timestamp,
            "recoverable": self.recoverable,
            "context": self.context,
        }

    def get_details(self) -> str:
        details = [self.message, f"Code: {self.code}"]
        if self.context:
            details.append(f"Context: {self.context}")
        return "\n".join(details)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Structural errors
# ---------------------------------------------------------------------------

TRANSIENT_TOOL_CODES = frozenset(
    {
        "TOOL_TIMEOUT",
        "TOOL_RATE_LIMIT",
        "TOOL_NETWORK_ERROR",
        "TOOL_SERVER_ERROR",
    }
)


class ToolError(BaseError):
    """Failure of an external tool or LLM agent call."""

    default_code = "TOOL_ERROR"

    def __init__(
        self,
        tool_name: str,
        message: str,
        *,
        code: str | None = None,
        parameters: Any = None,
        retry_attempt: int = 0,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        recoverable: bool | None = None,
    ):
        code = code or self.default_code
        if code in TRANSIENT_TOOL_CODES:
            kind = ErrorKind.TRANSIENT
        elif code == "TOOL_VALIDATION_ERROR":
            kind = ErrorKind.VALIDATION
        else:
            kind = ErrorKind.GENERIC
        super().__init__(
            message,
            code=code,
            context={
                **(context or {}),
                "tool_name": tool_name,
                "parameters": parameters,
                "retry_attempt": retry_attempt,
            },
            cause=cause,
            recoverable=recoverable,
            kind=kind,
        )
        self.tool_name = tool_name
        self.parameters = parameters
        self.retry_attempt = retry_attempt

    @classmethod
    def for_timeout(cls, tool_name: str, timeout: float, parameters: Any = None) -> "ToolError":
        return cls(
            tool_name,
            f"Tool execution timed out after {timeout}s",
            code="TOOL_TIMEOUT",
            parameters=parameters,
            context={"timeout": timeout},
        )

    @classmethod
    def for_rate_limit(cls, tool_name: str, message: str, parameters: Any = None) -> "ToolError":
        return cls(tool_name, message, code="TOOL_RATE_LIMIT", parameters=parameters)

    @classmethod
    def for_network(cls, tool_name: str, message: str, cause: BaseException | None = None) -> "ToolError":
        return cls(tool_name, message, code="TOOL_NETWORK_ERROR", cause=cause)

    @classmethod
    def for_validation(cls, tool_name: str, message: str, parameters: Any = None) -> "ToolError":
        return cls(tool_name, message, code="TOOL_VALIDATION_ERROR", parameters=parameters)

    @classmethod
    def for_execution(cls, tool_name: str, message: str, parameters: Any = None) -> "ToolError":
        return cls(tool_name, message, code="TOOL_EXECUTION_ERROR", parameters=parameters)


class StorageError(BaseError):
    """Failure of a persistent-store call."""

    default_code = "STORE_ERROR"

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        code: str | None = None,
        table: str | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        recoverable: bool | None = None,
        kind: ErrorKind | None = None,
    ):
        super().__init__(
            message,
            code=code,
            context={**(context or {}), "operation": operation, "table": table},
            cause=cause,
            recoverable=recoverable,
            kind=kind,
        )
        self.operation = operation
        self.table = table

    @classmethod
    def for_connection(cls, message: str, cause: BaseException | None = None) -> "StorageError":
        return cls(
            "connection",
            message,
            code="STORE_CONNECTION_ERROR",
            cause=cause,
            kind=ErrorKind.TRANSIENT,
        )

    @classmethod
    def for_query(
        cls, table: str, operation: str, message: str, cause: BaseException | None = None
    ) -> "StorageError":
        return cls(operation, message, code="STORE_QUERY_ERROR", table=table, cause=cause)

    @classmethod
    def for_constraint(
        cls, table: str, operation: str, constraint: str, cause: BaseException | None = None
    ) -> "StorageError":
        return cls(
            operation,
            f"Constraint violation: {constraint}",
            code="STORE_CONSTRAINT_ERROR",
            table=table,
            context={"constraint": constraint},
            cause=cause,
        )


class WorkflowError(BaseError):
    """Failure inside a workflow stage. Recoverable unless stated otherwise."""

    default_code = "WORKFLOW_ERROR"

    def __init__(
        self,
        message: str,
        *,
        session_id: str = "",
        stage: str = "",
        node_name: str | None = None,
        code: str | None = None,
        recoverable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        kind: ErrorKind | None = None,
    ):
        if recoverable is None:
            recoverable = True
        super().__init__(
            message,
            code=code,
            context={
                **(context or {}),
                "session_id": session_id,
                "stage": stage,
                "node_name": node_name,
                "recoverable": recoverable,
            },
            cause=cause,
            recoverable=recoverable,
            kind=kind,
        )
        self.session_id = session_id
        self.stage = stage
        self.node_name = node_name

    @classmethod
    def for_node(
        cls,
        session_id: str,
        stage: str,
        node_name: str,
        message: str,
        recoverable: bool = True,
        cause: BaseException | None = None,
    ) -> "WorkflowError":
        return cls(
            message,
            session_id=session_id,
            stage=stage,
            node_name=node_name,
            code="WORKFLOW_NODE_ERROR",
            recoverable=recoverable,
            cause=cause,
        )

    @classmethod
    def for_state(
        cls, session_id: str, stage: str, operation: str, cause: BaseException | None = None
    ) -> "WorkflowError":
        return cls(
            f"Failed to {operation} workflow state",
            session_id=session_id,
            stage=stage,
            code="WORKFLOW_STATE_ERROR",
            context={"operation": operation},
            cause=cause,
        )

    @classmethod
    def for_timeout(
        cls, session_id: str, stage: str, timeout: float, cause: BaseException | None = None
    ) -> "WorkflowError":
        return cls(
            f"Workflow stage timed out after {timeout}s",
            session_id=session_id,
            stage=stage,
            code="WORKFLOW_TIMEOUT",
            context={"timeout": timeout},
            cause=cause,
            kind=ErrorKind.TRANSIENT,
        )


# ---------------------------------------------------------------------------
# Taxonomy errors
# ---------------------------------------------------------------------------


class ValidationError(BaseError):
    """A precondition failed. Never retried."""

    default_kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("recoverable", False)
        super().__init__(message, **kwargs)


class TransientOperationError(BaseError):
    """Network, timeout, rate-limit or server-side failure. Retryable."""

    default_kind = ErrorKind.TRANSIENT
    default_code = "TRANSIENT_ERROR"


class DependencyCycleError(BaseError):
    """The work units' dependencies contain a cycle."""

    default_kind = ErrorKind.DEPENDENCY_CYCLE
    default_code = "circular_dependency"

    def __init__(self, message: str, *, unresolved: list[int] | None = None, **kwargs: Any):
        kwargs.setdefault("recoverable", False)
        context = {**kwargs.pop("context", {}), "unresolved_units": list(unresolved or [])}
        super().__init__(message, context=context, **kwargs)
        self.unresolved = list(unresolved or [])


class RetryExhaustedError(BaseError):
    """All attempts of an operation failed. Carries the attempt history."""

    default_kind = ErrorKind.RETRY_EXHAUSTED
    default_code = "RETRY_EXHAUSTED"

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        total_delay: float = 0.0,
        operation_name: str | None = None,
        history: list[str] | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("recoverable", False)
        context = {
            **kwargs.pop("context", {}),
            "retry_stats": {
                "attempts": attempts,
                "total_delay": total_delay,
                "operation_name": operation_name,
            },
        }
        super().__init__(message, context=context, **kwargs)
        self.attempts = attempts
        self.total_delay = total_delay
        self.operation_name = operation_name
        self.history = list(history or [])


class PersistenceError(StorageError):
    """A checkpoint could not be written. Logged, never propagated."""

    default_kind = ErrorKind.PERSISTENCE
    default_code = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, message: str, **kwargs: Any):
        kwargs.setdefault("recoverable", False)
        kwargs.setdefault("kind", ErrorKind.PERSISTENCE)
        super().__init__(operation, message, **kwargs)


class CriticalWorkflowError(WorkflowError):
    """Irrecoverable failure, e.g. corrupted state. Never retried."""

    default_kind = ErrorKind.CRITICAL
    default_code = "WORKFLOW_CRITICAL_ERROR"

    def __init__(self, message: str, **kwargs: Any):
        kwargs["recoverable"] = False
        kwargs.setdefault("kind", ErrorKind.CRITICAL)
        super().__init__(message, **kwargs)


def is_recoverable(error: BaseException) -> bool:
    """Whether ``error`` may be handled by a retry or a recovery attempt."""
    if not isinstance(error, BaseError):
        return False
    match error.kind:
        case ErrorKind.TRANSIENT:
            return True
        case ErrorKind.GENERIC:
            return error.recoverable
        case (
            ErrorKind.VALIDATION
            | ErrorKind.DEPENDENCY_CYCLE
            | ErrorKind.RETRY_EXHAUSTED
            | ErrorKind.PERSISTENCE
            | ErrorKind.CRITICAL
        ):
            return False


def to_base_error(error: BaseException, context: dict[str, Any] | None = None) -> BaseError:
    """Return ``error`` unchanged if structured, otherwise wrap it."""
    if isinstance(error, BaseError):
        return error
    return BaseError(
        str(error) or type(error).__name__,
        code="UNKNOWN_ERROR",
        context={
            **(context or {}),
            "original_error": {"name": type(error).__name__, "message": str(error)},
        },
        cause=error,
    )


__all__ = [
    "ErrorKind",
    "BaseError",
    "ToolError",
    "StorageError",
    "WorkflowError",
    "ValidationError",
    "TransientOperationError",
    "DependencyCycleError",
    "RetryExhaustedError",
    "PersistenceError",
    "CriticalWorkflowError",
    "TRANSIENT_TOOL_CODES",
    "is_recoverable",
    "to_base_error",
]
