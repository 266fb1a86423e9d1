"""
Node execution framework.

Every stage implementation is a ``WorkflowNode``. A node declares its
preconditions (``validate``) and its work (``execute_node``); the base class
supplies the lifecycle around them:

1. ``validate(state)`` false -> ``ValidationError``, never retried.
2. ``execute_node(state)`` runs inside an error scope with timing captured
   in ``last_metrics``.
3. Any failure is routed into ``recover(state, error)``:

   - tier 1: ``retry_count < max_retries`` and the error is recoverable ->
     bump ``retry_count``, apply the tier-1 degradation, run again
   - tier 2: the next recovery applies the "reduced complexity"
     degradation, exactly once
   - tier 3: ``retry_count >= max_retries`` -> ``RetryExhaustedError``
     ("Maximum retries exceeded"), whatever the underlying error was

Degradation is a pluggable ``DegradationPolicy`` that returns a
reconfigured node and state for a tier.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from bookflow.errors import BaseError, RetryExhaustedError, ValidationError, is_recoverable
from bookflow.errors.context import enrich_error, error_scope
from bookflow.errors.retry import is_retryable_error
from bookflow.observability.metrics import MetricsSink, NullMetricsSink, emit
from bookflow.schemas.workflow_state import WorkflowStage, WorkflowState
from bookflow.workflow.stages import update_progress

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2

# Tiers past this reuse the tier-2 configuration
REDUCED_COMPLEXITY_TIER = 2


@dataclass
class NodeMetrics:
    """Timing and outcome of one ``WorkflowNode.execute`` call."""

    node_name: str
    stage: str | None = None
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    duration: float = 0.0  # seconds
    success: bool = False
    recovery_attempts: int = 0
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_name": self.node_name,
            "stage": self.stage,
            "started_at": self.started_at,
            "duration": self.duration,
            "success": self.success,
            "recovery_attempts": self.recovery_attempts,
            "error_code": self.error_code,
        }


class DegradationPolicy(ABC):
    """Reconfigures a node for a recovery tier (1 = first retry, 2 = reduced complexity)."""

    @abstractmethod
    def apply(
        self, node: "WorkflowNode", state: WorkflowState, tier: int
    ) -> tuple["WorkflowNode", WorkflowState]:
        raise NotImplementedError


class NoDegradation(DegradationPolicy):
    """Retry with the same configuration."""

    def apply(
        self, node: "WorkflowNode", state: WorkflowState, tier: int
    ) -> tuple["WorkflowNode", WorkflowState]:
        return node, state


class WorkflowNode(ABC):
    """Base class for stage nodes."""

    name: str = "node"
    description: str = ""
    stage: WorkflowStage | None = None

    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        degradation: DegradationPolicy | None = None,
    ):
        self.max_retries = max_retries
        self.degradation = degradation or NoDegradation()
        self.last_metrics: NodeMetrics | None = None

    # -- contract -------------------------------------------------------------

    @abstractmethod
    def validate(self, state: WorkflowState) -> bool:
        """Preconditions for ``execute_node``."""

    @abstractmethod
    async def execute_node(self, state: WorkflowState) -> WorkflowState:
        """Do the node's work and return the new state."""

    def is_recoverable_error(self, error: BaseException) -> bool:
        if isinstance(error, BaseError):
            return is_recoverable(error)
        return is_retryable_error(error)

    def degrade(self, state: WorkflowState, tier: int) -> tuple["WorkflowNode", WorkflowState]:
        return self.degradation.apply(self, state, tier)

    def update_progress(
        self, state: WorkflowState, percent: float, message: str | None = None
    ) -> WorkflowState:
        if message:
            logger.info(
                f"[{self.name}] {percent:.0f}% {message}",
                extra={"node": self.name, "stage": state.current_stage},
            )
        return update_progress(state, percent)

    # -- lifecycle ------------------------------------------------------------

    async def execute(self, state: WorkflowState) -> WorkflowState:
        """Validate, run and, on failure, recover. Errors leave enriched."""
        metrics = NodeMetrics(node_name=self.name, stage=str(state.current_stage))
        self.last_metrics = metrics
        start = time.perf_counter()

        with error_scope(
            state.session_id,
            session_id=state.session_id,
            stage=str(state.current_stage),
            node=self.name,
            operation=f"node_{self.name}",
        ):
            try:
                if not self.validate(state):
                    raise ValidationError(
                        f"Validation failed for node {self.name}",
                        context={"node_name": self.name},
                    )
                try:
                    result = await self.execute_node(state)
                except ValidationError:
                    raise
                except Exception as e:
                    result = await self.recover(state, e)
            except Exception as e:
                final = enrich_error(e, state.session_id, {"node_name": self.name})
                metrics.duration = time.perf_counter() - start
                metrics.error_code = final.code
                metrics.recovery_attempts = final.context.get("recovery_attempts", 0)
                logger.error(
                    f"✗ Node {self.name} failed ({final.code}): {final.message}",
                    extra={"event": "node_failed", "node": self.name},
                )
                raise final

        metrics.duration = time.perf_counter() - start
        metrics.success = True
        metrics.recovery_attempts = max(0, result.retry_count - state.retry_count)
        logger.info(
            f"✓ Node {self.name} completed in {metrics.duration:.2f}s",
            extra={"event": "node_completed", "node": self.name},
        )
        return result

    async def recover(self, state: WorkflowState, error: BaseException) -> WorkflowState:
        """
        Retry ``execute_node`` under the three-tier policy.

        The cap is checked against ``state.retry_count`` before every
        attempt, so it cannot be bypassed by calling ``recover`` again with
        the state a previous recovery produced.
        """
        node: WorkflowNode = self
        current = state
        last_error = error

        while True:
            if current.retry_count >= self.max_retries:
                raise RetryExhaustedError(
                    f"Maximum retries exceeded for node {self.name} "
                    f"({current.retry_count}/{self.max_retries}): {last_error}",
                    attempts=current.retry_count,
                    operation_name=self.name,
                    context={
                        "node_name": self.name,
                        "recovery_attempts": current.retry_count - state.retry_count,
                        "last_error": getattr(last_error, "code", type(last_error).__name__),
                    },
                    cause=last_error,
                )

            if isinstance(last_error, ValidationError) or not self.is_recoverable_error(last_error):
                raise last_error

            attempt = current.retry_count + 1
            current = current.evolve(retry_count=attempt, error=None, needs_retry=False)
            tier = min(attempt, REDUCED_COMPLEXITY_TIER)
            if attempt <= REDUCED_COMPLEXITY_TIER:
                node, current = node.degrade(current, tier)

            logger.warning(
                f"🔄 Recovering node {self.name} (attempt {attempt}/{self.max_retries}, "
                f"tier {tier}): {last_error}",
                extra={"event": "node_recovery", "node": self.name, "retry_count": attempt},
            )
            try:
                return await node.execute_node(current)
            except Exception as e:
                last_error = e


async def execute_with_metrics(
    node: WorkflowNode,
    state: WorkflowState,
    sink: MetricsSink | None = None,
) -> tuple[WorkflowState, NodeMetrics]:
    """
    Run ``node.execute(state)`` and report its metrics to ``sink``.

    Emits ``node_completed`` or ``node_failed``. On failure the error
    propagates after the event is recorded.
    """
    sink = sink or NullMetricsSink()
    try:
        result = await node.execute(state)
    except BaseException:
        metrics = node.last_metrics or NodeMetrics(node_name=node.name)
        emit(sink, "node_failed", session_id=state.session_id, **metrics.to_dict())
        raise

    metrics = node.last_metrics or NodeMetrics(node_name=node.name, success=True)
    emit(sink, "node_completed", session_id=state.session_id, **metrics.to_dict())
    return result, metrics
