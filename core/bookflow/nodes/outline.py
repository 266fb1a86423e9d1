"""
Outline node - plans the document as a list of dependent work units.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from bookflow.errors import WorkflowError
from bookflow.graph.planner import resolve_dependency_layers
from bookflow.nodes.base import AgentStageNode
from bookflow.nodes.parsing import parse_json_object
from bookflow.schemas.work_unit import Outline
from bookflow.schemas.workflow_state import WorkflowStage, WorkflowState

logger = logging.getLogger(__name__)

MIN_UNITS = 1
MAX_UNITS = 40


class OutlineNode(AgentStageNode):
    name = "outline"
    description = "Plan the units and their dependencies"
    stage = WorkflowStage.OUTLINE

    def validate(self, state: WorkflowState) -> bool:
        return bool(state.requirements)

    async def execute_node(self, state: WorkflowState) -> WorkflowState:
        state = self.update_progress(state, 20, "Planning unit structure")
        response = await self.call_agent(state, self._build_prompt(state))

        state = self.update_progress(state, 80, "Validating outline structure")
        outline = self._parse_outline(state, response.content)

        # Fails fast on cycles and dangling references; neither is retried
        resolve_dependency_layers(outline.units)

        logger.info(
            f"Outline '{outline.title}' with {len(outline.units)} units, "
            f"~{outline.total_size} words",
            extra={"session_id": state.session_id, "node": self.name},
        )
        state = self.update_progress(state.evolve(outline=outline), 100)
        return state.with_progress(total_units=len(outline.units))

    def _parse_outline(self, state: WorkflowState, content: str) -> Outline:
        data = parse_json_object(content)
        if data is None:
            raise self._invalid(state, "Agent reply is not a JSON outline")

        data = {**data, "units": data.get("units") or data.get("chapters") or []}
        try:
            outline = Outline.model_validate(data)
        except PydanticValidationError as e:
            raise self._invalid(state, f"Outline failed validation: {e.error_count()} errors", cause=e) from e

        if not MIN_UNITS <= len(outline.units) <= MAX_UNITS:
            raise self._invalid(
                state, f"Outline must have {MIN_UNITS}-{MAX_UNITS} units, got {len(outline.units)}"
            )
        return outline

    def _invalid(self, state: WorkflowState, message: str, cause: BaseException | None = None) -> WorkflowError:
        return WorkflowError(
            message,
            session_id=state.session_id,
            stage=str(state.current_stage),
            node_name=self.name,
            code="OUTLINE_VALIDATION_FAILED",
            cause=cause,
        )

    def _build_prompt(self, state: WorkflowState) -> str:
        requirements: dict[str, Any] = state.requirements or {}
        target = requirements.get("word_count_target", 30_000)
        return "\n\n".join(
            [
                "Plan a book for the requirements below.",
                'Reply with JSON: {"title", "subtitle", "units": [{"unit_number", "title", '
                '"overview", "objectives", "research_topics", "dependencies", '
                '"estimated_size"}]}. Dependencies list earlier unit numbers only.',
                f"Total word count target: {target}",
                f"Requirements:\n{json.dumps(requirements, indent=2)}",
                f"Style guide:\n{json.dumps(state.style_guide or {}, indent=2)}",
            ]
        )
