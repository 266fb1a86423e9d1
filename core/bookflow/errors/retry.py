"""
Retry with exponential backoff and jitter.

    result = await with_retry(
        lambda: agent.execute(prompt, context),
        DEFAULT_RETRY_POLICIES["api"],
        operation_name="outline_agent",
    )

An operation gets at most ``max_retries + 1`` attempts. The delay before
retry *n* is ``min(initial_delay * backoff_multiplier ** (n - 1), max_delay)``
with a uniform +/-25% jitter so concurrent callers do not retry in lockstep.
All durations are in seconds.
"""

import asyncio
import functools
import logging
import random
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from bookflow.errors import (
    BaseError,
    ErrorKind,
    RetryExhaustedError,
    TransientOperationError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25

# Indirection so tests can replace the sleep without touching asyncio itself.
_sleep = asyncio.sleep


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry settings supplied per call site."""

    max_retries: int = 3
    backoff_multiplier: float = 2.0
    initial_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValidationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValidationError("Retry delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValidationError(
                f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            )
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError(f"timeout must be positive, got {self.timeout}")


DEFAULT_RETRY_POLICIES: dict[str, RetryPolicy] = {
    # LLM calls with long reasoning can take minutes
    "api": RetryPolicy(
        max_retries=3, backoff_multiplier=2, initial_delay=1.0, max_delay=30.0, timeout=600.0
    ),
    "storage": RetryPolicy(
        max_retries=2, backoff_multiplier=1.5, initial_delay=0.5, max_delay=5.0, timeout=30.0
    ),
    "file_processing": RetryPolicy(
        max_retries=2, backoff_multiplier=2, initial_delay=2.0, max_delay=10.0, timeout=120.0
    ),
    "unit_generation": RetryPolicy(
        max_retries=1, backoff_multiplier=1, initial_delay=5.0, max_delay=5.0, timeout=300.0
    ),
    "web_research": RetryPolicy(
        max_retries=3, backoff_multiplier=2, initial_delay=1.0, max_delay=15.0, timeout=45.0
    ),
}


def get_retry_policy(name: str) -> RetryPolicy:
    try:
        return DEFAULT_RETRY_POLICIES[name]
    except KeyError:
        raise ValidationError(
            f"Unknown retry policy '{name}'",
            context={"available": sorted(DEFAULT_RETRY_POLICIES)},
        ) from None


@dataclass
class RetryResult:
    """Outcome of one operation in ``retry_batch``."""

    success: bool
    data: Any = None
    error: BaseException | None = None
    attempts: int = 0
    total_delay: float = 0.0


# ---------------------------------------------------------------------------
# Delay calculation
# ---------------------------------------------------------------------------


def base_delay(retry_number: int, policy: RetryPolicy) -> float:
    """Un-jittered delay before retry ``retry_number`` (1-based)."""
    exponent = max(0, retry_number - 1)
    return min(policy.initial_delay * policy.backoff_multiplier**exponent, policy.max_delay)


def calculate_delay(
    retry_number: int, policy: RetryPolicy, rng: random.Random | None = None
) -> float:
    """Delay before retry ``retry_number`` with +/-25% uniform jitter."""
    delay = base_delay(retry_number, policy)
    jitter = delay * JITTER_RATIO * (rng or random).uniform(-1.0, 1.0)
    return max(0.0, delay + jitter)


# ---------------------------------------------------------------------------
# Retryability
# ---------------------------------------------------------------------------

_NETWORK_SIGNATURES = (
    "econnreset",
    "etimedout",
    "enotfound",
    "eai_again",
    "epipe",
    "connection reset",
    "name or service not known",
    "temporary failure in name resolution",
    "network",
    "service unavailable",
    "bad gateway",
)
_RATE_LIMIT_SIGNATURES = ("rate limit", "rate_limit", "too many requests")
_TIMEOUT_SIGNATURES = ("timeout", "timed out")
# Status codes count only next to an HTTP marker
_HTTP_STATUS_PATTERN = re.compile(r"\b(?:status|http|code)\D{0,3}(?:429|5\d\d)\b")
_CONNECTION_STATES = ("lost", "closed", "refused")


def is_retryable_error(error: BaseException) -> bool:
    """Default retry predicate.

    Transient-kind structured errors (including tool errors tagged
    TOOL_TIMEOUT / TOOL_RATE_LIMIT / TOOL_NETWORK_ERROR / TOOL_SERVER_ERROR)
    retry. Validation, cycle, exhausted, persistence and critical errors
    never do. Everything else is judged by its message.
    """
    if isinstance(error, BaseError):
        match error.kind:
            case ErrorKind.TRANSIENT:
                return True
            case (
                ErrorKind.VALIDATION
                | ErrorKind.DEPENDENCY_CYCLE
                | ErrorKind.RETRY_EXHAUSTED
                | ErrorKind.PERSISTENCE
                | ErrorKind.CRITICAL
            ):
                return False
            case ErrorKind.GENERIC:
                pass

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    if any(sig in message for sig in _NETWORK_SIGNATURES):
        return True
    if any(sig in message for sig in _RATE_LIMIT_SIGNATURES):
        return True
    if _HTTP_STATUS_PATTERN.search(message):
        return True
    if any(sig in message for sig in _TIMEOUT_SIGNATURES):
        return True
    if "connection" in message and any(state in message for state in _CONNECTION_STATES):
        return True
    return False


def _with_retry_stats(error: BaseException, stats: dict[str, Any]) -> BaseError:
    if isinstance(error, BaseError):
        return error.with_context(retry_stats=stats)
    wrapped = BaseError(
        str(error) or type(error).__name__,
        code="RETRY_FAILED",
        context={
            "retry_stats": stats,
            "original_error": {"name": type(error).__name__, "message": str(error)},
        },
        cause=error,
        recoverable=False,
    )
    return wrapped.with_traceback(error.__traceback__)


# ---------------------------------------------------------------------------
# Retry execution
# ---------------------------------------------------------------------------


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    should_retry: Callable[[BaseException, int], bool] | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Retry settings
        operation_name: Recorded in the retry statistics
        on_retry: Called as ``on_retry(retry_number, error, delay)`` before sleeping
        should_retry: Replaces ``is_retryable_error``; called as
            ``should_retry(error, attempt_index)``

    Raises:
        RetryExhaustedError: every allowed attempt failed with a retryable error
        BaseError: the first non-retryable error, with ``retry_stats`` in its context
    """
    start = time.monotonic()
    total_delay = 0.0
    history: list[str] = []

    for attempt in range(policy.max_retries + 1):
        attempts = attempt + 1
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            return await operation()
        except TimeoutError as e:
            error: BaseException = TransientOperationError(
                f"Operation timed out after {policy.timeout}s"
                if policy.timeout is not None
                else str(e) or "Operation timed out",
                code="TIMEOUT",
                context={"timeout": policy.timeout},
                cause=e,
            )
        except Exception as e:
            error = e

        history.append(f"attempt {attempts}: {type(error).__name__}: {error}")
        stats = {
            "attempts": attempts,
            "total_delay": total_delay,
            "duration": time.monotonic() - start,
            "operation_name": operation_name,
        }

        retryable = should_retry(error, attempt) if should_retry else is_retryable_error(error)
        if not retryable:
            raise _with_retry_stats(error, stats)

        if attempt >= policy.max_retries:
            logger.error(
                f"Retries exhausted for {operation_name or 'operation'} "
                f"after {attempts} attempts: {error}",
                extra={"event": "retry_exhausted", "attempt": attempts},
            )
            raise RetryExhaustedError(
                f"{operation_name or 'Operation'} failed after {attempts} attempts: {error}",
                attempts=attempts,
                total_delay=total_delay,
                operation_name=operation_name,
                history=history,
                context={
                    "duration": stats["duration"],
                    "last_error": getattr(error, "code", type(error).__name__),
                },
                cause=error,
            )

        delay = calculate_delay(attempts, policy)
        total_delay += delay
        if on_retry:
            on_retry(attempts, error, delay)
        logger.warning(
            f"Retrying {operation_name or 'operation'} in {delay:.2f}s "
            f"(attempt {attempts}/{policy.max_retries + 1}): {error}",
            extra={"event": "retry_scheduled", "attempt": attempts},
        )
        await _sleep(delay)

    # range() always runs at least once and every branch returns or raises
    raise AssertionError("unreachable")


def create_retryable(
    fn: Callable[..., Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str | None = None,
    should_retry: Callable[[BaseException, int], bool] | None = None,
) -> Callable[..., Awaitable[T]]:
    """Wrap an async function so every call goes through ``with_retry``."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        return await with_retry(
            lambda: fn(*args, **kwargs),
            policy,
            operation_name=operation_name or fn.__name__,
            should_retry=should_retry,
        )

    return wrapper


async def retry_batch(
    operations: list[Callable[[], Awaitable[Any]]],
    policy: RetryPolicy,
    *,
    concurrency: int = 3,
    stop_on_first_error: bool = False,
    operation_name: str = "batch",
) -> list[RetryResult]:
    """
    Run many operations, each with its own retry budget.

    At most ``concurrency`` operations are in flight. Results keep the order
    of ``operations``. With ``stop_on_first_error`` the first exhausted
    operation's error propagates once its batch settles.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(index: int, operation: Callable[[], Awaitable[Any]]) -> RetryResult:
        delays: list[float] = []
        async with semaphore:
            try:
                data = await with_retry(
                    operation,
                    policy,
                    operation_name=f"{operation_name}-{index}",
                    on_retry=lambda _n, _error, delay: delays.append(delay),
                )
            except BaseError as e:
                return RetryResult(
                    success=False,
                    error=e,
                    attempts=len(delays) + 1,
                    total_delay=sum(delays),
                )
            return RetryResult(success=True, data=data, attempts=len(delays) + 1, total_delay=sum(delays))

    results = await asyncio.gather(*(run_one(i, op) for i, op in enumerate(operations)))
    if stop_on_first_error:
        for result in results:
            if not result.success and result.error is not None:
                raise result.error
    return list(results)


async def retry_api(operation: Callable[[], Awaitable[T]], **kwargs: Any) -> T:
    return await with_retry(operation, DEFAULT_RETRY_POLICIES["api"], **kwargs)


async def retry_storage(operation: Callable[[], Awaitable[T]], **kwargs: Any) -> T:
    return await with_retry(operation, DEFAULT_RETRY_POLICIES["storage"], **kwargs)


async def retry_unit_generation(operation: Callable[[], Awaitable[T]], **kwargs: Any) -> T:
    return await with_retry(operation, DEFAULT_RETRY_POLICIES["unit_generation"], **kwargs)


async def retry_web_research(operation: Callable[[], Awaitable[T]], **kwargs: Any) -> T:
    return await with_retry(operation, DEFAULT_RETRY_POLICIES["web_research"], **kwargs)
