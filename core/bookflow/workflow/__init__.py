"""Workflow stages and the state machine that drives them.

The state machine lives in ``bookflow.workflow.machine``; it is not imported
here because it depends on the node framework, which depends on this
package's stage helpers.
"""

from bookflow.workflow.stages import (
    STAGE_ORDER,
    STAGE_WEIGHTS,
    create_initial_state,
    is_legal_transition,
    next_stage,
    transition_to_stage,
    update_progress,
)

__all__ = [
    "STAGE_ORDER",
    "STAGE_WEIGHTS",
    "create_initial_state",
    "is_legal_transition",
    "next_stage",
    "transition_to_stage",
    "update_progress",
]
