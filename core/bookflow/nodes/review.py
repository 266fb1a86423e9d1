"""
Review and formatting nodes.

Each of these stages reads the generated units and stores a single text
artifact under ``state.artifacts[<stage>]``. Unit content dropped from a
recovered checkpoint is reloaded from the session store.
"""

import logging
from typing import Any

from bookflow.errors import CriticalWorkflowError
from bookflow.llm.agent import LLMAgent
from bookflow.nodes.base import AgentStageNode
from bookflow.schemas.workflow_state import UnitResult, WorkflowStage, WorkflowState
from bookflow.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


class ArtifactNode(AgentStageNode):
    """Runs one agent pass over all units and records the reply as an artifact."""

    instructions: str = ""

    def __init__(self, agent: LLMAgent, *, session_store: SessionStore | None = None, **kwargs: Any):
        super().__init__(agent, **kwargs)
        self.session_store = session_store

    def validate(self, state: WorkflowState) -> bool:
        return bool(state.units) and all(u.is_completed for u in state.units)

    async def load_units(self, state: WorkflowState) -> tuple[UnitResult, ...]:
        """Units with their full content, reloading stripped content from the store."""
        if all(u.content is not None for u in state.units):
            return state.units
        if self.session_store is None:
            raise CriticalWorkflowError(
                "Unit content is missing and no session store is configured",
                session_id=state.session_id,
                stage=str(state.current_stage),
                node_name=self.name,
            )
        stored = {u.unit_number: u for u in await self.session_store.list_unit_results(state.session_id)}
        units = []
        for unit in state.units:
            if unit.content is None:
                replacement = stored.get(unit.unit_number)
                if replacement is None or replacement.content is None:
                    raise CriticalWorkflowError(
                        f"Content of unit {unit.unit_number} is lost",
                        session_id=state.session_id,
                        stage=str(state.current_stage),
                        node_name=self.name,
                    )
                unit = replacement
            units.append(unit)
        return tuple(units)

    def build_prompt(self, state: WorkflowState, units: tuple[UnitResult, ...]) -> str:
        body = "\n\n".join(f"## Unit {u.unit_number}: {u.title}\n\n{u.content}" for u in units)
        title = state.outline.title if state.outline else "Untitled"
        return f"{self.instructions}\n\n# {title}\n\n{body}"

    async def execute_node(self, state: WorkflowState) -> WorkflowState:
        units = await self.load_units(state)
        state = self.update_progress(state, 20, f"Running {self.name}")
        response = await self.call_agent(state, self.build_prompt(state, units))
        artifacts = {**state.artifacts, str(self.stage): response.content.strip()}
        return self.update_progress(state.evolve(artifacts=artifacts), 100, f"{self.name} complete")


class ConsistencyReviewNode(ArtifactNode):
    name = "consistency_review"
    description = "Check terminology and cross-references across units"
    stage = WorkflowStage.CONSISTENCY_REVIEW
    instructions = (
        "Review the units below for inconsistent terminology, contradictions and "
        "broken cross-references. List each issue with the unit number it affects."
    )


class QualityReviewNode(ArtifactNode):
    name = "quality_review"
    description = "Assess clarity, accuracy and coverage of the objectives"
    stage = WorkflowStage.QUALITY_REVIEW
    instructions = (
        "Assess the units below for clarity and factual accuracy. "
        "Give an overall score from 1 to 10 and concrete revision suggestions."
    )


class FormattingNode(ArtifactNode):
    name = "formatting"
    description = "Assemble the final document"
    stage = WorkflowStage.FORMATTING
    instructions = (
        "Assemble the units below into one Markdown document with a title page "
        "and a table of contents. Do not rewrite the unit text."
    )

    def build_prompt(self, state: WorkflowState, units: tuple[UnitResult, ...]) -> str:
        prompt = super().build_prompt(state, units)
        review = state.artifacts.get(str(WorkflowStage.QUALITY_REVIEW))
        if review:
            prompt += f"\n\n# Reviewer notes\n\n{review}"
        return prompt
