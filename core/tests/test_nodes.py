"""Tests for the stage nodes, driven by a scripted mock agent."""

import json

import pytest
from conftest import OUTLINE_REPLY, REQUIREMENTS_REPLY, scripted_reply

from bookflow.errors import (
    CriticalWorkflowError,
    DependencyCycleError,
    RetryExhaustedError,
    ToolError,
    ValidationError,
    WorkflowError,
)
from bookflow.errors.retry import RetryPolicy
from bookflow.llm import AgentResponse, MockAgent
from bookflow.nodes import (
    ConversationNode,
    FormattingNode,
    OutlineNode,
    QualityReviewNode,
    UnitDegradation,
    UnitGenerationNode,
    UnitNode,
    UnitSpawningNode,
    simplify_outline,
)
from bookflow.nodes.parsing import count_words, parse_json_object
from bookflow.schemas.work_unit import Outline, WorkUnit
from bookflow.schemas.workflow_state import UnitResult, UnitStatus, WorkflowStage
from bookflow.storage.backend import InMemoryStore
from bookflow.storage.session_store import SessionStore
from bookflow.workflow.stages import create_initial_state

NO_WAIT = RetryPolicy(max_retries=1, initial_delay=0.0, max_delay=0.0)

# === HELPERS ===


def state_at(stage: WorkflowStage, **changes):
    state = create_initial_state("A practical guide to home fermentation", session_id="session_nodes")
    return state.evolve(current_stage=stage, **changes)


def outline_of(*specs) -> Outline:
    return Outline(
        title="Fermentation",
        units=[
            WorkUnit(unit_number=n, title=f"Unit {n}", dependencies=frozenset(deps))
            for n, deps in specs
        ],
    )


async def spawned_state(outline: Outline):
    state = state_at(WorkflowStage.UNIT_SPAWNING, outline=outline, style_guide={"tone": "warm"})
    state = await UnitSpawningNode().execute(state)
    return state.evolve(current_stage=WorkflowStage.UNIT_GENERATION)


# === PARSING ===


class TestParsing:
    def test_fenced_json(self):
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_python_literals_and_single_quotes(self):
        assert parse_json_object("{'ok': True, 'missing': None}") == {"ok": True, "missing": None}

    def test_python_literals_with_double_quotes(self):
        assert parse_json_object('{"ok": True, "title": "Done"}') == {"ok": True, "title": "Done"}

    def test_string_values_keep_constant_words(self):
        reply = '{"title": "None Shall Pass", "overview": "True stories, False starts"}'

        assert parse_json_object(reply) == {
            "title": "None Shall Pass",
            "overview": "True stories, False starts",
        }

    def test_surrounding_prose(self):
        assert parse_json_object('Here you go: {"a": [1, 2]} Hope it helps.') == {"a": [1, 2]}

    def test_not_an_object(self):
        assert parse_json_object("[1, 2]") is None
        assert parse_json_object("no json here") is None

    def test_count_words(self):
        assert count_words("one two  three") == 3
        assert count_words(None) == 0


# === CONVERSATION ===


class TestConversationNode:
    @pytest.mark.asyncio
    async def test_collects_requirements(self):
        agent = MockAgent(json.dumps(REQUIREMENTS_REPLY))
        node = ConversationNode(agent, retry_policy=NO_WAIT)

        state = await node.execute(state_at(WorkflowStage.CONVERSATION))

        assert state.requirements["topic"] == "Home fermentation"
        assert state.requirements["word_count_target"] == 6000
        assert state.style_guide["tone"] == "friendly"
        assert state.style_guide["voice"] == "active"
        assert state.progress.current_stage_progress == 100
        assert agent.contexts[0]["session_id"] == "session_nodes"

    @pytest.mark.asyncio
    async def test_empty_prompt_fails_validation(self):
        node = ConversationNode(MockAgent("{}"), retry_policy=NO_WAIT)

        with pytest.raises(ValidationError):
            await node.execute(state_at(WorkflowStage.CONVERSATION, user_prompt="  "))

    @pytest.mark.asyncio
    async def test_falls_back_to_defaults_at_tier_two(self):
        agent = MockAgent("I would rather chat about the weather.")
        node = ConversationNode(agent, retry_policy=NO_WAIT, max_retries=2)

        state = await node.execute(state_at(WorkflowStage.CONVERSATION))

        assert agent.call_count == 2
        assert state.requirements["fallback"] is True
        assert state.requirements["topic"] == "A practical guide to home fermentation"
        assert state.retry_count == 2
        assert node.use_fallback is False

    @pytest.mark.asyncio
    async def test_falls_back_after_agent_outage(self):
        agent = MockAgent(ToolError.for_network("mock", "connection reset"))
        node = ConversationNode(agent, retry_policy=NO_WAIT, max_retries=2)

        state = await node.execute(state_at(WorkflowStage.CONVERSATION))

        # two with_retry attempts on the first try and on tier 1; tier 2 skips the agent
        assert agent.call_count == 4
        assert state.requirements["fallback"] is True
        assert state.retry_count == 2

    @pytest.mark.asyncio
    async def test_extracts_source_document(self):
        async def extract(document: bytes) -> str:
            return document.decode().upper()

        agent = MockAgent(json.dumps(REQUIREMENTS_REPLY))
        node = ConversationNode(agent, extract_text=extract, retry_policy=NO_WAIT)

        state = await node.execute(
            state_at(WorkflowStage.CONVERSATION, source_document=b"notes on kimchi")
        )

        assert state.base_content == "NOTES ON KIMCHI"
        assert "NOTES ON KIMCHI" in agent.prompts[0]


# === OUTLINE ===


class TestOutlineNode:
    @pytest.mark.asyncio
    async def test_builds_outline(self):
        node = OutlineNode(MockAgent(scripted_reply), retry_policy=NO_WAIT)

        state = await node.execute(
            state_at(WorkflowStage.OUTLINE, requirements=REQUIREMENTS_REPLY["requirements"])
        )

        assert state.outline.title == "Home Fermentation"
        assert [u.unit_number for u in state.outline.units] == [1, 2, 3, 4]
        assert state.outline.get_unit(4).dependencies == frozenset({2, 3})
        assert state.progress.total_units == 4

    @pytest.mark.asyncio
    async def test_accepts_chapters_key(self):
        reply = {"title": "T", "chapters": [{"unit_number": 1, "title": "Only"}]}
        node = OutlineNode(MockAgent(json.dumps(reply)), retry_policy=NO_WAIT)

        state = await node.execute(state_at(WorkflowStage.OUTLINE, requirements={"topic": "t"}))

        assert len(state.outline.units) == 1

    @pytest.mark.asyncio
    async def test_titles_are_kept_verbatim(self):
        reply = {
            "title": "None Shall Pass",
            "units": [{"unit_number": 1, "title": "True Grit", "overview": "False starts"}],
        }
        node = OutlineNode(MockAgent(json.dumps(reply)), retry_policy=NO_WAIT)

        state = await node.execute(state_at(WorkflowStage.OUTLINE, requirements={"topic": "t"}))

        assert state.outline.title == "None Shall Pass"
        assert state.outline.units[0].title == "True Grit"

    @pytest.mark.asyncio
    async def test_cycle_fails_immediately(self):
        reply = {
            "title": "Loop",
            "units": [
                {"unit_number": 1, "dependencies": [2]},
                {"unit_number": 2, "dependencies": [1]},
            ],
        }
        agent = MockAgent(json.dumps(reply))
        node = OutlineNode(agent, retry_policy=NO_WAIT)

        with pytest.raises(DependencyCycleError):
            await node.execute(state_at(WorkflowStage.OUTLINE, requirements={"topic": "t"}))

        assert agent.call_count == 1

    @pytest.mark.asyncio
    async def test_unparseable_outline_is_recoverable_until_exhausted(self):
        agent = MockAgent("Sorry, no outline today.")
        node = OutlineNode(agent, retry_policy=NO_WAIT, max_retries=1)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await node.execute(state_at(WorkflowStage.OUTLINE, requirements={"topic": "t"}))

        assert agent.call_count == 2
        assert isinstance(exc_info.value.cause, WorkflowError)
        assert exc_info.value.cause.code == "OUTLINE_VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_recovers_after_agent_outage(self):
        outage = ToolError.for_network("mock", "connection reset")
        agent = MockAgent([outage, outage, scripted_reply])
        node = OutlineNode(agent, retry_policy=NO_WAIT, max_retries=1)

        state = await node.execute(state_at(WorkflowStage.OUTLINE, requirements={"topic": "t"}))

        assert agent.call_count == 3
        assert state.retry_count == 1
        assert len(state.outline.units) == len(OUTLINE_REPLY["units"])

    @pytest.mark.asyncio
    async def test_empty_reply_is_an_error(self):
        node = OutlineNode(MockAgent(AgentResponse(content="   ")), retry_policy=NO_WAIT, max_retries=0)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await node.execute(state_at(WorkflowStage.OUTLINE, requirements={"topic": "t"}))

        assert exc_info.value.cause.code == "EMPTY_RESPONSE"


# === SPAWNING ===


class TestUnitSpawningNode:
    @pytest.mark.asyncio
    async def test_builds_plan_and_pending_units(self):
        state = await spawned_state(outline_of((1, []), (2, [1]), (3, [1])))

        metadata = state.spawning_metadata
        assert metadata.total_nodes == 3
        assert metadata.dependency_layers == 2
        assert metadata.node_ids == ("unit_1", "unit_2", "unit_3")
        assert [u.status for u in state.units] == [UnitStatus.PENDING] * 3
        assert state.progress.total_units == 3
        assert state.progress.estimated_time_remaining > 0

    def test_simplify_outline(self):
        units = [
            WorkUnit(unit_number=n, dependencies=frozenset(range(1, n)), estimated_size=5000)
            for n in range(1, 15)
        ]
        outline = Outline(title="Big", units=units)

        simplified = simplify_outline(outline)

        assert len(simplified.units) == 10
        assert all(not u.dependencies for u in simplified.units)
        assert all(u.estimated_size == 1500 for u in simplified.units)


# === GENERATION ===


class TestUnitDegradation:
    def test_tiers(self):
        unit = WorkUnit(unit_number=3, dependencies=frozenset({1, 2}), estimated_size=2000)
        node = UnitNode(MockAgent("x"), unit)
        state = state_at(WorkflowStage.UNIT_GENERATION)

        tier1, _ = UnitDegradation().apply(node, state, 1)
        tier2, _ = UnitDegradation().apply(node, state, 2)

        assert tier1.unit.estimated_size == 1600
        assert tier1.unit.dependencies == frozenset({1, 2})
        assert tier2.unit.estimated_size == 1500
        assert tier2.unit.dependencies == frozenset()
        assert node.unit.estimated_size == 2000

    def test_shrink_never_goes_below_floor(self):
        node = UnitNode(MockAgent("x"), WorkUnit(unit_number=1, estimated_size=1100))

        degraded, _ = UnitDegradation().apply(node, state_at(WorkflowStage.UNIT_GENERATION), 1)

        assert degraded.unit.estimated_size == 1000


class TestUnitGenerationNode:
    @pytest.mark.asyncio
    async def test_generates_every_unit(self):
        state = await spawned_state(outline_of((1, []), (2, [1]), (3, [1])))
        agent = MockAgent(scripted_reply)
        store = SessionStore(InMemoryStore())
        node = UnitGenerationNode(agent, unit_retry_policy=NO_WAIT, session_store=store)

        result = await node.execute(state)

        assert [u.status for u in result.units] == [UnitStatus.COMPLETED] * 3
        assert result.units[1].content.startswith("Content of unit 2")
        assert result.units[1].word_count > 0
        assert result.spawning_metadata is None
        assert result.needs_retry is False
        assert result.progress.units_completed == 3
        assert result.retry_count == 0
        assert len(await store.list_unit_results(state.session_id)) == 3
        # Dependent prompts carry the dependency's summary
        prompt_2 = next(p for p in agent.prompts if p.startswith("Write unit 2"))
        assert "Builds on unit 1" in prompt_2

    @pytest.mark.asyncio
    async def test_partial_failure_marks_units_and_requests_retry(self):
        state = await spawned_state(outline_of((1, []), (2, []), (3, [2])))

        def reply(prompt: str) -> str:
            if prompt.startswith("Write unit 2"):
                raise ToolError.for_validation("mock", "content policy")
            return scripted_reply(prompt)

        node = UnitGenerationNode(MockAgent(reply), unit_retry_policy=NO_WAIT)

        result = await node.execute(state)

        statuses = {u.unit_number: u.status for u in result.units}
        assert statuses == {1: UnitStatus.COMPLETED, 2: UnitStatus.FAILED, 3: UnitStatus.SKIPPED}
        assert result.needs_retry is True
        assert result.error == "2 of 3 units failed to generate: [2, 3]"
        assert result.spawning_metadata is not None
        assert result.progress.units_completed == 1

    @pytest.mark.asyncio
    async def test_exhausted_unit_needs_revision(self):
        state = await spawned_state(outline_of((1, [])))
        agent = MockAgent(ToolError.for_network("mock", "connection reset"))
        node = UnitGenerationNode(agent, unit_retry_policy=NO_WAIT, unit_max_retries=1, max_retries=1)

        result = await node.execute(state)

        assert result.units[0].status == UnitStatus.NEEDS_REVISION
        # two with_retry attempts per try, one recovery
        assert agent.call_count == 4

    @pytest.mark.asyncio
    async def test_retry_reuses_completed_units(self):
        state = await spawned_state(outline_of((1, []), (2, [])))
        calls = {"unit 2": 0}

        def flaky(prompt: str) -> str:
            if prompt.startswith("Write unit 2"):
                calls["unit 2"] += 1
                if calls["unit 2"] == 1:
                    raise ToolError.for_validation("mock", "refused")
            return scripted_reply(prompt)

        agent = MockAgent(flaky)
        node = UnitGenerationNode(agent, unit_retry_policy=NO_WAIT)

        first = await node.execute(state)
        prompts_after_first = len(agent.prompts)
        second = await node.execute(first.evolve(error=None, needs_retry=False))

        assert first.needs_retry is True
        assert all(u.is_completed for u in second.units)
        new_prompts = agent.prompts[prompts_after_first:]
        assert len(new_prompts) == 1
        assert new_prompts[0].startswith("Write unit 2")


# === REVIEW ===


class TestReviewNodes:
    def completed_state(self, content: str | None = "Body text."):
        units = tuple(
            UnitResult(unit_number=n, title=f"Unit {n}", content=content, status=UnitStatus.COMPLETED)
            for n in (1, 2)
        )
        return state_at(WorkflowStage.QUALITY_REVIEW, units=units, outline=outline_of((1, []), (2, [])))

    @pytest.mark.asyncio
    async def test_stores_artifact(self):
        node = QualityReviewNode(MockAgent(scripted_reply), retry_policy=NO_WAIT)

        state = await node.execute(self.completed_state())

        assert state.artifacts["quality_review"].startswith("Score: 8/10")

    @pytest.mark.asyncio
    async def test_incomplete_units_fail_validation(self):
        state = self.completed_state().evolve(
            units=(UnitResult(unit_number=1, status=UnitStatus.NEEDS_REVISION),)
        )

        with pytest.raises(ValidationError):
            await QualityReviewNode(MockAgent("x"), retry_policy=NO_WAIT).execute(state)

    @pytest.mark.asyncio
    async def test_reloads_stripped_content_from_session_store(self):
        store = SessionStore(InMemoryStore())
        for n in (1, 2):
            await store.save_unit_result(
                "session_nodes",
                UnitResult(unit_number=n, title=f"Unit {n}", content=f"Stored {n}", status=UnitStatus.COMPLETED),
            )
        agent = MockAgent("Formatted.")
        node = FormattingNode(agent, session_store=store, retry_policy=NO_WAIT)
        state = self.completed_state(content=None).evolve(
            current_stage=WorkflowStage.FORMATTING,
            artifacts={"quality_review": "Shorten unit 2."},
        )

        result = await node.execute(state)

        assert result.artifacts["formatting"] == "Formatted."
        assert "Stored 2" in agent.prompts[0]
        assert "Shorten unit 2." in agent.prompts[0]

    @pytest.mark.asyncio
    async def test_lost_content_is_critical(self):
        node = FormattingNode(MockAgent("x"), retry_policy=NO_WAIT)
        state = self.completed_state(content=None).evolve(current_stage=WorkflowStage.FORMATTING)

        with pytest.raises(CriticalWorkflowError):
            await node.execute(state)
