"""
bookflow - orchestration core for multi-stage content generation.

A document is decomposed into dependent work units and produced through a
fixed sequence of stages, with dependency-aware parallel generation,
three-tier recovery, retries with backoff and checkpoint-based resume.
"""

from bookflow.errors import (
    BaseError,
    CriticalWorkflowError,
    DependencyCycleError,
    ErrorKind,
    PersistenceError,
    RetryExhaustedError,
    TransientOperationError,
    ValidationError,
)
from bookflow.graph.planner import build_execution_plan, resolve_dependency_layers
from bookflow.schemas.work_unit import ExecutionPlan, Outline, WorkUnit
from bookflow.schemas.workflow_state import WorkflowStage, WorkflowState, WorkflowStatus
from bookflow.workflow.machine import WorkflowStateMachine, create_state_machine

__version__ = "0.1.0"

__all__ = [
    "BaseError",
    "CriticalWorkflowError",
    "DependencyCycleError",
    "ErrorKind",
    "ExecutionPlan",
    "Outline",
    "PersistenceError",
    "RetryExhaustedError",
    "TransientOperationError",
    "ValidationError",
    "WorkUnit",
    "WorkflowStage",
    "WorkflowState",
    "WorkflowStateMachine",
    "WorkflowStatus",
    "build_execution_plan",
    "create_state_machine",
    "resolve_dependency_layers",
]
