"""
Workflow State Schema - the single record threaded through the pipeline.

``WorkflowState`` is an immutable value: stage functions take a state and
return a new one (``state.evolve(...)``). Nodes never hold a reference to
another node's in-progress state.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from bookflow.schemas.work_unit import ExecutionPlan, Outline


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class WorkflowStage(StrEnum):
    """Stages of the pipeline, in order, plus the two terminal stages."""

    CONVERSATION = "conversation"
    OUTLINE = "outline"
    UNIT_SPAWNING = "unit_spawning"
    UNIT_GENERATION = "unit_generation"
    CONSISTENCY_REVIEW = "consistency_review"
    QUALITY_REVIEW = "quality_review"
    FORMATTING = "formatting"
    USER_REVIEW = "user_review"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (WorkflowStage.COMPLETED, WorkflowStage.FAILED)


class WorkflowStatus(StrEnum):
    """Overall status of a session."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"  # waiting on the user (review / approval)


class UnitStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    NEEDS_REVISION = "needs_revision"
    FAILED = "failed"
    SKIPPED = "skipped"  # a dependency failed, the unit never ran


class WorkflowProgress(BaseModel):
    """Progress numbers read by the UI collaborator."""

    current_stage_progress: float = Field(default=0.0, ge=0, le=100)
    overall_progress: float = Field(default=0.0, ge=0, le=100)
    units_completed: int = 0
    total_units: int = 0
    estimated_time_remaining: float | None = None  # seconds

    model_config = {"frozen": True}


class UnitResult(BaseModel):
    """Result of generating one work unit."""

    unit_number: int
    title: str = ""
    content: str | None = ""
    word_count: int = 0
    status: UnitStatus = UnitStatus.PENDING
    error: str | None = None
    dependencies: tuple[int, ...] = ()
    generated_at: str | None = None

    model_config = {"frozen": True}

    @property
    def is_completed(self) -> bool:
        return self.status == UnitStatus.COMPLETED


class SpawningMetadata(BaseModel):
    """Written by unit spawning, consumed (and cleared) by unit generation."""

    node_ids: tuple[str, ...] = ()
    execution_plan: ExecutionPlan = Field(default_factory=ExecutionPlan)
    total_nodes: int = 0
    spawned_at: str = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @property
    def dependency_layers(self) -> int:
        return self.execution_plan.total_layers


class WorkflowState(BaseModel):
    """Complete state of one generation session."""

    # Identity
    session_id: str
    user_id: str | None = None

    # Position
    current_stage: WorkflowStage = WorkflowStage.CONVERSATION
    status: WorkflowStatus = WorkflowStatus.ACTIVE

    # Input
    user_prompt: str = ""
    source_document: bytes | None = None  # stripped from checkpoints
    base_content: str | None = None

    # Requirements and plan
    requirements: dict[str, Any] | None = None
    style_guide: dict[str, Any] | None = None
    outline: Outline | None = None

    # Generated content
    units: tuple[UnitResult, ...] = ()
    artifacts: dict[str, str] = Field(default_factory=dict)

    # Progress and recovery
    progress: WorkflowProgress = Field(default_factory=WorkflowProgress)
    retry_count: int = 0
    spawning_metadata: SpawningMetadata | None = None
    error: str | None = None
    needs_retry: bool = False

    # Timestamps
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    def evolve(self, **changes: Any) -> "WorkflowState":
        """Return a copy with ``changes`` applied and ``updated_at`` refreshed.

        Changes are validated, so a bad value fails here rather than at the
        next checkpoint.
        """
        data = {**dict(self), **changes, "updated_at": utc_now()}
        return type(self).model_validate(data)

    def with_progress(self, **changes: Any) -> "WorkflowState":
        return self.evolve(progress=self.progress.model_copy(update=changes))

    def get_unit(self, unit_number: int) -> UnitResult | None:
        for unit in self.units:
            if unit.unit_number == unit_number:
                return unit
        return None

    @property
    def completed_units(self) -> list[UnitResult]:
        return [u for u in self.units if u.is_completed]

    @property
    def is_terminal(self) -> bool:
        return self.current_stage.is_terminal() or self.status in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
        )
