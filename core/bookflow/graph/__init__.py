"""Execution planning and the node execution framework."""

from bookflow.graph.checkpoint_config import CheckpointConfig
from bookflow.graph.node import DegradationPolicy, NodeMetrics, WorkflowNode, execute_with_metrics
from bookflow.graph.parallel import LayerOutcome, UnitOutcome, execute_layers
from bookflow.graph.planner import (
    build_execution_plan,
    estimate_unit_duration,
    resolve_dependency_layers,
    verify_layering,
)

__all__ = [
    "CheckpointConfig",
    "DegradationPolicy",
    "LayerOutcome",
    "NodeMetrics",
    "UnitOutcome",
    "WorkflowNode",
    "build_execution_plan",
    "estimate_unit_duration",
    "execute_layers",
    "execute_with_metrics",
    "resolve_dependency_layers",
    "verify_layering",
]
