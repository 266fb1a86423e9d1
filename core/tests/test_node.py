"""Tests for the node execution framework and three-tier recovery."""

import pytest

from bookflow.errors import (
    CriticalWorkflowError,
    ErrorKind,
    RetryExhaustedError,
    TransientOperationError,
    ValidationError,
)
from bookflow.graph.node import DegradationPolicy, WorkflowNode, execute_with_metrics
from bookflow.observability import get_trace_context
from bookflow.observability.metrics import InMemoryMetricsSink
from bookflow.schemas.workflow_state import WorkflowStage
from bookflow.workflow.stages import create_initial_state

# === HELPERS ===


class RecordingDegradation(DegradationPolicy):
    def __init__(self):
        self.tiers: list[int] = []

    def apply(self, node, state, tier):
        self.tiers.append(tier)
        return node, state.evolve(artifacts={**state.artifacts, "tier": str(tier)})


class ScriptedNode(WorkflowNode):
    """Raises the scripted errors in order, then succeeds."""

    name = "scripted"
    stage = WorkflowStage.OUTLINE

    def __init__(self, errors=(), *, valid=True, **kwargs):
        super().__init__(**kwargs)
        self.errors = list(errors)
        self.valid = valid
        self.calls = 0
        self.seen_retry_counts: list[int] = []

    def validate(self, state):
        return self.valid

    async def execute_node(self, state):
        self.calls += 1
        self.seen_retry_counts.append(state.retry_count)
        if self.errors:
            raise self.errors.pop(0)
        return self.update_progress(state, 100, "done")


def outline_state(**changes):
    state = create_initial_state("Write a book", session_id="session_test")
    return state.evolve(current_stage=WorkflowStage.OUTLINE, **changes)


# === EXECUTE ===


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_without_recovery(self):
        node = ScriptedNode()

        result = await node.execute(outline_state())

        assert node.calls == 1
        assert result.retry_count == 0
        assert result.progress.current_stage_progress == 100

    @pytest.mark.asyncio
    async def test_node_name_reaches_log_context(self):
        seen = {}

        class TracedNode(ScriptedNode):
            async def execute_node(self, state):
                seen.update(get_trace_context())
                return await super().execute_node(state)

        node = TracedNode()
        await node.execute(outline_state())

        assert seen["node"] == "scripted"
        assert seen["stage"] == "outline"
        assert get_trace_context() == {}
        assert node.last_metrics.success is True
        assert node.last_metrics.recovery_attempts == 0

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self):
        node = ScriptedNode([TransientOperationError("blip")])

        result = await node.execute(outline_state())

        assert node.calls == 2
        assert result.retry_count == 1
        assert node.seen_retry_counts == [0, 1]
        assert node.last_metrics.recovery_attempts == 1

    @pytest.mark.asyncio
    async def test_failed_validation_is_never_retried(self):
        node = ScriptedNode(valid=False)

        with pytest.raises(ValidationError) as exc_info:
            await node.execute(outline_state())

        assert node.calls == 0
        assert exc_info.value.context["node_name"] == "scripted"
        assert exc_info.value.context["session_id"] == "session_test"

    @pytest.mark.asyncio
    async def test_validation_error_from_execute_node_skips_recovery(self):
        node = ScriptedNode([ValidationError("bad outline")])

        with pytest.raises(ValidationError):
            await node.execute(outline_state())

        assert node.calls == 1

    @pytest.mark.asyncio
    async def test_non_recoverable_error_propagates(self):
        node = ScriptedNode([CriticalWorkflowError("state corrupted")])

        with pytest.raises(CriticalWorkflowError) as exc_info:
            await node.execute(outline_state())

        assert node.calls == 1
        assert exc_info.value.context["stage"] == "outline"
        assert node.last_metrics.error_code == "WORKFLOW_CRITICAL_ERROR"

    @pytest.mark.asyncio
    async def test_plain_exception_is_judged_by_message(self):
        node = ScriptedNode([ConnectionError("connection reset")])

        result = await node.execute(outline_state())

        assert result.retry_count == 1

    @pytest.mark.asyncio
    async def test_persistent_failure_exhausts_budget(self):
        node = ScriptedNode([TransientOperationError(f"blip {i}") for i in range(5)], max_retries=2)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await node.execute(outline_state())

        error = exc_info.value
        assert node.calls == 3
        assert "Maximum retries exceeded" in error.message
        assert error.kind == ErrorKind.RETRY_EXHAUSTED
        assert error.recoverable is False
        assert error.context["recovery_attempts"] == 2
        assert node.last_metrics.recovery_attempts == 2


class TestRecover:
    @pytest.mark.asyncio
    async def test_cap_reached_raises_without_calling_execute_node(self):
        node = ScriptedNode(max_retries=2)

        with pytest.raises(RetryExhaustedError, match="Maximum retries exceeded"):
            await node.recover(outline_state(retry_count=3), TransientOperationError("blip"))

        assert node.calls == 0

    @pytest.mark.asyncio
    async def test_cap_holds_across_repeated_recovery(self):
        node = ScriptedNode([TransientOperationError("again")], max_retries=1)
        state = outline_state()

        with pytest.raises(RetryExhaustedError):
            await node.recover(state, TransientOperationError("first"))
        calls_after_first = node.calls

        # Recovering from the state the first recovery reached cannot grant a new budget
        with pytest.raises(RetryExhaustedError):
            await node.recover(state.evolve(retry_count=1), TransientOperationError("second"))

        assert node.calls == calls_after_first == 1

    @pytest.mark.asyncio
    async def test_degradation_tiers(self):
        policy = RecordingDegradation()
        node = ScriptedNode(
            [TransientOperationError("one"), TransientOperationError("two")],
            max_retries=3,
            degradation=policy,
        )

        result = await node.execute(outline_state())

        assert policy.tiers == [1, 2]
        assert result.artifacts["tier"] == "2"
        assert result.retry_count == 2

    @pytest.mark.asyncio
    async def test_reduced_complexity_applied_once(self):
        policy = RecordingDegradation()
        node = ScriptedNode(
            [TransientOperationError(str(i)) for i in range(3)],
            max_retries=5,
            degradation=policy,
        )

        result = await node.execute(outline_state())

        assert policy.tiers == [1, 2]
        assert result.retry_count == 3

    @pytest.mark.asyncio
    async def test_zero_max_retries_never_recovers(self):
        node = ScriptedNode([TransientOperationError("blip")], max_retries=0)

        with pytest.raises(RetryExhaustedError):
            await node.execute(outline_state())

        assert node.calls == 1


class TestExecuteWithMetrics:
    @pytest.mark.asyncio
    async def test_records_completion(self):
        sink = InMemoryMetricsSink()

        state, metrics = await execute_with_metrics(ScriptedNode(), outline_state(), sink)

        assert metrics.success
        assert state.progress.current_stage_progress == 100
        [event] = sink.named("node_completed")
        assert event["node_name"] == "scripted"
        assert event["session_id"] == "session_test"

    @pytest.mark.asyncio
    async def test_records_failure_and_reraises(self):
        sink = InMemoryMetricsSink()

        with pytest.raises(ValidationError):
            await execute_with_metrics(ScriptedNode(valid=False), outline_state(), sink)

        [event] = sink.named("node_failed")
        assert event["error_code"] == "VALIDATION_ERROR"
        assert sink.named("node_completed") == []

    @pytest.mark.asyncio
    async def test_broken_sink_does_not_break_execution(self):
        class BrokenSink:
            def record(self, event_name, fields):
                raise RuntimeError("sink down")

        state, _ = await execute_with_metrics(ScriptedNode(), outline_state(), BrokenSink())

        assert state.retry_count == 0
