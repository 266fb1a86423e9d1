"""Schema definitions for workflow state, work units and checkpoints."""

from bookflow.schemas.checkpoint import Checkpoint, CheckpointSummary, CompressionReport
from bookflow.schemas.work_unit import ExecutionLayer, ExecutionPlan, Outline, WorkUnit, unit_node_id
from bookflow.schemas.workflow_state import (
    SpawningMetadata,
    UnitResult,
    UnitStatus,
    WorkflowProgress,
    WorkflowStage,
    WorkflowState,
    WorkflowStatus,
)

__all__ = [
    "Checkpoint",
    "CheckpointSummary",
    "CompressionReport",
    "ExecutionLayer",
    "ExecutionPlan",
    "Outline",
    "SpawningMetadata",
    "UnitResult",
    "UnitStatus",
    "WorkUnit",
    "WorkflowProgress",
    "WorkflowStage",
    "WorkflowState",
    "WorkflowStatus",
    "unit_node_id",
]
