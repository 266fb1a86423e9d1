"""
Conversation node - turns the user's prompt (and optional source document)
into structured requirements and a style guide.
"""

import copy
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from bookflow.errors import WorkflowError
from bookflow.errors.context import execute_with_tool_context
from bookflow.errors.retry import DEFAULT_RETRY_POLICIES, with_retry
from bookflow.graph.node import DegradationPolicy, WorkflowNode
from bookflow.nodes.base import AgentStageNode
from bookflow.nodes.parsing import parse_json_object
from bookflow.schemas.workflow_state import WorkflowStage, WorkflowState

logger = logging.getLogger(__name__)

DEFAULT_WORD_COUNT_TARGET = 30_000

DEFAULT_STYLE_GUIDE: dict[str, Any] = {
    "tone": "professional",
    "voice": "active",
    "perspective": "third_person",
    "formality": "formal",
    "technical_level": "intermediate",
}

DocumentExtractor = Callable[[bytes], Awaitable[str]]


def fallback_requirements(state: WorkflowState) -> dict[str, Any]:
    """Requirements derived from the prompt alone, used when the agent cannot deliver."""
    return {
        "topic": state.user_prompt.strip(),
        "audience": {"expertise_level": "intermediate"},
        "author": {"name": "Author"},
        "approach": "practical",
        "word_count_target": DEFAULT_WORD_COUNT_TARGET,
        "fallback": True,
    }


class RequirementsFallback(DegradationPolicy):
    """Tier 2 skips the agent and builds requirements from the prompt."""

    def apply(
        self, node: WorkflowNode, state: WorkflowState, tier: int
    ) -> tuple[WorkflowNode, WorkflowState]:
        if tier < 2 or not isinstance(node, ConversationNode):
            return node, state
        degraded = copy.copy(node)
        degraded.use_fallback = True
        return degraded, state


class ConversationNode(AgentStageNode):
    name = "conversation"
    description = "Collect requirements and style guide"
    stage = WorkflowStage.CONVERSATION

    def __init__(self, agent, *, extract_text: DocumentExtractor | None = None, **kwargs: Any):
        kwargs.setdefault("degradation", RequirementsFallback())
        super().__init__(agent, **kwargs)
        self.extract_text = extract_text
        self.use_fallback = False

    def validate(self, state: WorkflowState) -> bool:
        return bool(state.user_prompt.strip())

    async def execute_node(self, state: WorkflowState) -> WorkflowState:
        base_content = state.base_content
        if state.source_document and not base_content and self.extract_text:
            state = self.update_progress(state, 10, "Extracting source document")
            base_content = await self._extract(state)

        if self.use_fallback:
            logger.warning(
                "Requirements collected with fallback defaults",
                extra={"session_id": state.session_id, "node": self.name},
            )
            return self.update_progress(
                state.evolve(
                    requirements=fallback_requirements(state),
                    style_guide=dict(DEFAULT_STYLE_GUIDE),
                    base_content=base_content,
                ),
                100,
            )

        state = self.update_progress(state, 30, "Analyzing requirements")
        response = await self.call_agent(state, self._build_prompt(state, base_content))
        parsed = parse_json_object(response.content) or {}
        requirements = parsed.get("requirements")
        if not isinstance(requirements, dict) or not requirements.get("topic"):
            raise WorkflowError(
                "Agent reply did not contain requirements with a topic",
                session_id=state.session_id,
                stage=str(state.current_stage),
                node_name=self.name,
                code="INVALID_REQUIREMENTS",
            )

        requirements = dict(requirements)
        requirements.setdefault("word_count_target", DEFAULT_WORD_COUNT_TARGET)
        style_guide = {**DEFAULT_STYLE_GUIDE, **(parsed.get("style_guide") or {})}

        return self.update_progress(
            state.evolve(
                requirements=requirements,
                style_guide=style_guide,
                base_content=base_content,
            ),
            100,
            "Requirements collected",
        )

    async def _extract(self, state: WorkflowState) -> str:
        document = state.source_document or b""
        return await with_retry(
            lambda: execute_with_tool_context(
                "document_extract",
                {"bytes": len(document)},
                lambda: self.extract_text(document),
                session_id=state.session_id,
            ),
            DEFAULT_RETRY_POLICIES["file_processing"],
            operation_name="document_extract",
        )

    def _build_prompt(self, state: WorkflowState, base_content: str | None) -> str:
        sections = [
            "Extract the book requirements from the request below.",
            'Reply with JSON: {"requirements": {"topic", "audience", "author", '
            '"approach", "word_count_target"}, "style_guide": {"tone", "voice", '
            '"perspective", "formality", "technical_level"}}.',
            f"Request:\n{state.user_prompt}",
        ]
        if base_content:
            sections.append(f"Source material (excerpt):\n{base_content[:4000]}")
        if state.requirements:
            sections.append(f"Previously collected:\n{json.dumps(state.requirements)}")
        return "\n\n".join(sections)
