"""
Stage ordering, transitions and progress accounting.

All functions here are pure: they take a ``WorkflowState`` and return a new
one. ``STAGE_WEIGHTS`` is read by the UI to render "percent complete";
changing a weight is a breaking change for that consumer.
"""

import logging
import uuid
from typing import Any

from bookflow.errors import ValidationError
from bookflow.schemas.workflow_state import (
    WorkflowProgress,
    WorkflowStage,
    WorkflowState,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

STAGE_ORDER: tuple[WorkflowStage, ...] = (
    WorkflowStage.CONVERSATION,
    WorkflowStage.OUTLINE,
    WorkflowStage.UNIT_SPAWNING,
    WorkflowStage.UNIT_GENERATION,
    WorkflowStage.CONSISTENCY_REVIEW,
    WorkflowStage.QUALITY_REVIEW,
    WorkflowStage.FORMATTING,
    WorkflowStage.USER_REVIEW,
    WorkflowStage.COMPLETED,
)

# Overall percentage reached when the stage finishes.
STAGE_WEIGHTS: dict[WorkflowStage, int] = {
    WorkflowStage.CONVERSATION: 10,
    WorkflowStage.OUTLINE: 20,
    WorkflowStage.UNIT_SPAWNING: 25,
    WorkflowStage.UNIT_GENERATION: 60,
    WorkflowStage.CONSISTENCY_REVIEW: 75,
    WorkflowStage.QUALITY_REVIEW: 85,
    WorkflowStage.FORMATTING: 95,
    WorkflowStage.USER_REVIEW: 98,
    WorkflowStage.COMPLETED: 100,
    WorkflowStage.FAILED: 0,
}


def next_stage(stage: WorkflowStage) -> WorkflowStage | None:
    """The stage after ``stage`` in the fixed ordering, or None for terminal stages."""
    if stage.is_terminal():
        return None
    return STAGE_ORDER[STAGE_ORDER.index(stage) + 1]


def stage_start_weight(stage: WorkflowStage) -> int:
    """Overall percentage at the moment ``stage`` starts."""
    if stage == WorkflowStage.FAILED:
        return 0
    index = STAGE_ORDER.index(stage)
    return STAGE_WEIGHTS[STAGE_ORDER[index - 1]] if index > 0 else 0


def is_legal_transition(current: WorkflowStage, target: WorkflowStage) -> bool:
    if current.is_terminal():
        return False
    return target in (next_stage(current), WorkflowStage.FAILED, current)


def transition_to_stage(
    state: WorkflowState, target: WorkflowStage, **extra: Any
) -> WorkflowState:
    """
    Move ``state`` to ``target``.

    Legal targets are the next stage, ``failed``, and the current stage
    (retry in place). ``completed`` and ``failed`` are absorbing. The new
    state starts the stage at 0% with a fresh retry budget; ``extra`` is
    merged last.

    Raises:
        ValidationError: the transition is not legal
    """
    current = state.current_stage
    if not is_legal_transition(current, target):
        raise ValidationError(
            f"Illegal stage transition {current} -> {target}",
            context={"session_id": state.session_id, "from": str(current), "to": str(target)},
        )

    overall = state.progress.overall_progress
    if target == WorkflowStage.FAILED:
        status = WorkflowStatus.FAILED
        changes: dict[str, Any] = {"needs_retry": False}
    else:
        if target == WorkflowStage.COMPLETED:
            status = WorkflowStatus.COMPLETED
            overall = 100.0
        elif target == WorkflowStage.USER_REVIEW:
            status = WorkflowStatus.PAUSED
        else:
            status = WorkflowStatus.ACTIVE
        if target != current:
            overall = max(overall, float(stage_start_weight(target)))
        changes = {"retry_count": 0, "error": None, "needs_retry": False}

    progress = state.progress.model_copy(
        update={"current_stage_progress": 0.0, "overall_progress": overall}
    )
    logger.info(
        f"Stage transition {current} -> {target}",
        extra={"event": "stage_transition", "session_id": state.session_id, "stage": str(target)},
    )
    return state.evolve(
        current_stage=target,
        status=status,
        progress=progress,
        **{**changes, **extra},
    )


def update_progress(
    state: WorkflowState,
    current_stage_progress: float,
    *,
    units_completed: int | None = None,
    total_units: int | None = None,
    estimated_time_remaining: float | None = None,
) -> WorkflowState:
    """
    Set the in-stage progress and recompute ``overall_progress``.

    Inside a stage the overall value interpolates between the weight of the
    previous stage and the weight of this one. It never goes down while the
    session is active, and it is left alone once the session has failed.
    """
    pct = min(max(float(current_stage_progress), 0.0), 100.0)
    stage = state.current_stage
    previous_overall = state.progress.overall_progress

    if stage == WorkflowStage.FAILED or state.status == WorkflowStatus.FAILED:
        overall = previous_overall
    elif stage == WorkflowStage.COMPLETED:
        overall = 100.0
    else:
        start = stage_start_weight(stage)
        overall = start + (STAGE_WEIGHTS[stage] - start) * pct / 100.0
        if state.status in (WorkflowStatus.ACTIVE, WorkflowStatus.PAUSED):
            overall = max(overall, previous_overall)

    update: dict[str, Any] = {"current_stage_progress": pct, "overall_progress": round(overall, 2)}
    if units_completed is not None:
        update["units_completed"] = units_completed
    if total_units is not None:
        update["total_units"] = total_units
    if estimated_time_remaining is not None:
        update["estimated_time_remaining"] = estimated_time_remaining
    return state.evolve(progress=state.progress.model_copy(update=update))


def create_initial_state(
    user_prompt: str = "",
    *,
    session_id: str | None = None,
    user_id: str | None = None,
    source_document: bytes | None = None,
    base_content: str | None = None,
) -> WorkflowState:
    """Fresh session at the start of the conversation stage."""
    return WorkflowState(
        session_id=session_id or f"session_{uuid.uuid4().hex}",
        user_id=user_id,
        user_prompt=user_prompt,
        source_document=source_document,
        base_content=base_content,
        progress=WorkflowProgress(),
    )
