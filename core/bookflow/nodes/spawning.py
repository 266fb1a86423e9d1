"""
Unit spawning node - turns the outline into an execution plan.

No agent call is involved: the node runs the planner, records the plan and
node ids in ``spawning_metadata`` and resets ``units`` to one pending result
per planned unit.
"""

import logging

from bookflow.graph.node import DegradationPolicy, WorkflowNode
from bookflow.graph.planner import build_execution_plan
from bookflow.schemas.work_unit import Outline
from bookflow.schemas.workflow_state import (
    SpawningMetadata,
    UnitResult,
    UnitStatus,
    WorkflowStage,
    WorkflowState,
)

logger = logging.getLogger(__name__)

RECOVERY_MAX_UNITS = 10
RECOVERY_MIN_SIZE = 800
RECOVERY_MAX_SIZE = 1500


def simplify_outline(outline: Outline) -> Outline:
    """Smaller, dependency-free outline for a last-resort spawning attempt."""
    units = [
        unit.model_copy(
            update={
                "dependencies": frozenset(),
                "estimated_size": min(max(unit.estimated_size, RECOVERY_MIN_SIZE), RECOVERY_MAX_SIZE),
            }
        )
        for unit in outline.units[:RECOVERY_MAX_UNITS]
    ]
    return outline.model_copy(update={"units": units})


class SimplifiedOutlinePolicy(DegradationPolicy):
    """Tier 2 spawns a simplified outline; tier 1 retries unchanged."""

    def apply(
        self, node: WorkflowNode, state: WorkflowState, tier: int
    ) -> tuple[WorkflowNode, WorkflowState]:
        if tier < 2 or state.outline is None:
            return node, state
        simplified = simplify_outline(state.outline)
        logger.warning(
            f"Spawning with simplified outline: {len(simplified.units)} units, no dependencies",
            extra={"session_id": state.session_id, "node": node.name},
        )
        return node, state.evolve(outline=simplified)


class UnitSpawningNode(WorkflowNode):
    name = "unit_spawning"
    description = "Build the parallel execution plan"
    stage = WorkflowStage.UNIT_SPAWNING

    def __init__(self, **kwargs):
        kwargs.setdefault("degradation", SimplifiedOutlinePolicy())
        super().__init__(**kwargs)

    def validate(self, state: WorkflowState) -> bool:
        return state.outline is not None and len(state.outline.units) > 0

    async def execute_node(self, state: WorkflowState) -> WorkflowState:
        outline = state.outline
        state = self.update_progress(state, 30, "Analyzing unit dependencies")
        plan = build_execution_plan(outline.units)

        metadata = SpawningMetadata(
            node_ids=tuple(node_id for layer in plan.layers for node_id in layer.node_ids),
            execution_plan=plan,
            total_nodes=len(outline.units),
        )
        units = tuple(
            UnitResult(
                unit_number=unit.unit_number,
                title=unit.title,
                status=UnitStatus.PENDING,
                dependencies=tuple(sorted(unit.dependencies)),
            )
            for unit in sorted(outline.units, key=lambda u: u.unit_number)
        )

        logger.info(
            f"Spawned {metadata.total_nodes} unit nodes in {plan.total_layers} layers "
            f"(parallelism {plan.parallelism_factor})",
            extra={"session_id": state.session_id, "node": self.name},
        )
        state = state.evolve(spawning_metadata=metadata, units=units)
        state = self.update_progress(state, 100)
        return state.with_progress(
            units_completed=0,
            total_units=metadata.total_nodes,
            estimated_time_remaining=plan.estimated_total_duration,
        )
