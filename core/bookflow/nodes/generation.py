"""
Unit generation - one ``UnitNode`` per planned unit, run layer by layer.

Each unit is its own node with its own recovery budget: the generation node
hands every ``UnitNode`` a unit-local copy of the state (``retry_count`` 0,
no units) and collects the single ``UnitResult`` it returns.

Partial failure does not raise. Units that fail after recovery come back as
``needs_revision`` (``failed`` for non-recoverable errors), their dependents
as ``skipped``, and the stage returns with ``error`` set and
``needs_retry=True``. Retrying the stage regenerates only the units that are
not completed yet.
"""

import copy
import logging
from datetime import UTC, datetime
from typing import Any

from bookflow.errors import BaseError, ErrorKind
from bookflow.errors.retry import RetryPolicy
from bookflow.graph.node import DegradationPolicy, WorkflowNode
from bookflow.graph.parallel import (
    DEFAULT_MAX_CONCURRENCY,
    LayerOutcome,
    UnitOutcomeStatus,
    execute_layers,
)
from bookflow.llm.agent import LLMAgent
from bookflow.nodes.base import AgentStageNode
from bookflow.nodes.parsing import count_words
from bookflow.schemas.work_unit import WorkUnit
from bookflow.schemas.workflow_state import UnitResult, UnitStatus, WorkflowStage, WorkflowState
from bookflow.storage.session_store import SessionStore

logger = logging.getLogger(__name__)

SHRINK_FACTOR = 0.8
SHRINK_FLOOR = 1000
REDUCED_MIN_SIZE = 800
REDUCED_MAX_SIZE = 1500
SUMMARY_CHARS = 500


class UnitDegradation(DegradationPolicy):
    """
    Tier 1 asks for 20% fewer words (not below 1000).
    Tier 2 drops the unit's dependencies and clamps the size to 800-1500.
    """

    def apply(
        self, node: WorkflowNode, state: WorkflowState, tier: int
    ) -> tuple[WorkflowNode, WorkflowState]:
        if not isinstance(node, UnitNode):
            return node, state
        unit = node.unit
        if tier == 1:
            size = min(unit.estimated_size, max(SHRINK_FLOOR, int(unit.estimated_size * SHRINK_FACTOR)))
            degraded = unit.model_copy(update={"estimated_size": size})
        else:
            size = min(max(unit.estimated_size, REDUCED_MIN_SIZE), REDUCED_MAX_SIZE)
            degraded = unit.model_copy(update={"dependencies": frozenset(), "estimated_size": size})
        logger.info(
            f"Unit {unit.unit_number} degraded (tier {tier}): target {degraded.estimated_size} words, "
            f"{len(degraded.dependencies)} dependencies",
            extra={"unit_number": unit.unit_number},
        )
        return node.with_unit(degraded), state


class UnitNode(AgentStageNode):
    """Generates the content of a single unit."""

    description = "Generate one unit"
    stage = WorkflowStage.UNIT_GENERATION
    retry_policy_name = "unit_generation"

    def __init__(
        self,
        agent: LLMAgent,
        unit: WorkUnit,
        *,
        dependency_summaries: dict[int, str] | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("degradation", UnitDegradation())
        super().__init__(agent, **kwargs)
        self.unit = unit
        self.name = unit.node_id
        self.dependency_summaries = dict(dependency_summaries or {})

    def with_unit(self, unit: WorkUnit) -> "UnitNode":
        clone = copy.copy(self)
        clone.unit = unit
        return clone

    def validate(self, state: WorkflowState) -> bool:
        return state.outline is not None and state.outline.get_unit(self.unit.unit_number) is not None

    async def execute_node(self, state: WorkflowState) -> WorkflowState:
        response = await self.call_agent(state, self._build_prompt(state))
        content = response.content.strip()
        result = UnitResult(
            unit_number=self.unit.unit_number,
            title=self.unit.title,
            content=content,
            word_count=count_words(content),
            status=UnitStatus.COMPLETED,
            dependencies=tuple(sorted(self.unit.dependencies)),
            generated_at=datetime.now(UTC).isoformat(),
        )
        return state.evolve(units=(result,))

    def _build_prompt(self, state: WorkflowState) -> str:
        unit = self.unit
        sections = [
            f"Write unit {unit.unit_number}: {unit.title}",
            f"Target length: about {unit.estimated_size} words.",
        ]
        if state.outline is not None:
            sections.append(f"Book: {state.outline.title}")
        if unit.overview:
            sections.append(f"Overview:\n{unit.overview}")
        if unit.objectives:
            sections.append("Objectives:\n" + "\n".join(f"- {o}" for o in unit.objectives))
        if state.style_guide:
            sections.append(
                "Style: " + ", ".join(f"{k}={v}" for k, v in sorted(state.style_guide.items()))
            )
        for dep in sorted(unit.dependencies):
            summary = self.dependency_summaries.get(dep)
            if summary:
                sections.append(f"Builds on unit {dep}:\n{summary}")
        return "\n\n".join(sections)


def _summarize(result: UnitResult) -> str:
    if not result.content:
        return result.title
    return result.content[:SUMMARY_CHARS]


def _failed_status(error: BaseException | None) -> UnitStatus:
    if isinstance(error, BaseError):
        match error.kind:
            case ErrorKind.VALIDATION | ErrorKind.DEPENDENCY_CYCLE | ErrorKind.CRITICAL:
                return UnitStatus.FAILED
    return UnitStatus.NEEDS_REVISION


def _failed_result(unit: WorkUnit, error: BaseException | None) -> UnitResult:
    return UnitResult(
        unit_number=unit.unit_number,
        title=unit.title,
        content="",
        status=_failed_status(error),
        error=str(error) if error else "Unit generation failed",
        dependencies=tuple(sorted(unit.dependencies)),
    )


def _skipped_result(unit: WorkUnit) -> UnitResult:
    return UnitResult(
        unit_number=unit.unit_number,
        title=unit.title,
        content="",
        status=UnitStatus.SKIPPED,
        error="A dependency failed to generate",
        dependencies=tuple(sorted(unit.dependencies)),
    )


class UnitGenerationNode(WorkflowNode):
    name = "unit_generation"
    description = "Generate every unit of the plan in parallel layers"
    stage = WorkflowStage.UNIT_GENERATION

    def __init__(
        self,
        agent: LLMAgent,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        unit_max_retries: int | None = None,
        unit_retry_policy: RetryPolicy | None = None,
        session_store: SessionStore | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.agent = agent
        self.max_concurrency = max_concurrency
        self.unit_max_retries = unit_max_retries if unit_max_retries is not None else self.max_retries
        self.unit_retry_policy = unit_retry_policy
        self.session_store = session_store

    def validate(self, state: WorkflowState) -> bool:
        return state.spawning_metadata is not None and state.outline is not None

    def create_unit_node(self, unit: WorkUnit, dependency_summaries: dict[int, str]) -> UnitNode:
        return UnitNode(
            self.agent,
            unit,
            dependency_summaries=dependency_summaries,
            retry_policy=self.unit_retry_policy,
            max_retries=self.unit_max_retries,
        )

    async def execute_node(self, state: WorkflowState) -> WorkflowState:
        plan = state.spawning_metadata.execution_plan
        units = state.outline.units
        by_number = {u.unit_number: u for u in units}

        # Completed units from an earlier attempt are reused, never regenerated
        results: dict[int, UnitResult] = {u.unit_number: u for u in state.units if u.is_completed}
        reused = len(results)
        if reused:
            logger.info(
                f"Reusing {reused} completed units",
                extra={"session_id": state.session_id, "node": self.name},
            )

        async def run_unit(unit: WorkUnit) -> UnitResult:
            existing = results.get(unit.unit_number)
            if existing is not None:
                return existing

            summaries = {
                dep: _summarize(results[dep]) for dep in unit.dependencies if dep in results
            }
            node = self.create_unit_node(unit, summaries)
            unit_state = state.evolve(retry_count=0, units=(), error=None, needs_retry=False)
            generated = await node.execute(unit_state)
            result = generated.units[0]
            if self.session_store is not None:
                await self.session_store.save_unit_result(state.session_id, result)
            results[unit.unit_number] = result
            return result

        def on_layer_complete(outcome: LayerOutcome) -> None:
            logger.info(
                f"Layer {outcome.layer_index}: {len(outcome.succeeded)} done, "
                f"{len(outcome.failed)} failed, {len(outcome.skipped)} skipped",
                extra={"session_id": state.session_id, "node": self.name},
            )

        layers = await execute_layers(
            plan, units, run_unit, self.max_concurrency, on_layer_complete=on_layer_complete
        )

        final: dict[int, UnitResult] = {}
        for layer in layers:
            for outcome in layer.outcomes:
                unit = by_number[outcome.unit_number]
                match outcome.status:
                    case UnitOutcomeStatus.COMPLETED:
                        final[unit.unit_number] = outcome.result
                    case UnitOutcomeStatus.FAILED:
                        final[unit.unit_number] = _failed_result(unit, outcome.error)
                    case UnitOutcomeStatus.SKIPPED:
                        final[unit.unit_number] = _skipped_result(unit)

        ordered = tuple(final[n] for n in sorted(final))
        completed = sum(1 for r in ordered if r.is_completed)
        total = len(ordered)

        if completed == total:
            state = state.evolve(units=ordered, spawning_metadata=None, error=None, needs_retry=False)
            state = self.update_progress(state, 100, f"All {total} units generated")
            return state.with_progress(
                units_completed=completed, total_units=total, estimated_time_remaining=0.0
            )

        incomplete = [r.unit_number for r in ordered if not r.is_completed]
        message = f"{len(incomplete)} of {total} units failed to generate: {incomplete}"
        logger.warning(message, extra={"session_id": state.session_id, "node": self.name})
        state = state.evolve(units=ordered, error=message, needs_retry=True)
        state = self.update_progress(state, completed / total * 100 if total else 0)
        return state.with_progress(units_completed=completed, total_units=total)
