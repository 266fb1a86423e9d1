"""
Workflow State Machine - drives a session through the stages.

    machine = create_state_machine(agent, backend=FileStore(path))
    state = await machine.start("A practical guide to home fermentation")
    ...
    state = await machine.approve(state)

Each ``step`` runs the node registered for the current stage, then either
advances to the next stage or records the failure on the state:

- retry exhausted, transient or recoverable generic errors leave the session
  ``active`` at the same stage with ``needs_retry=True``; ``retry_stage``
  re-runs it
- validation, dependency-cycle and critical errors move the session to the
  absorbing ``failed`` stage with ``needs_retry=False``

A checkpoint is written after every node boundary (success or recoverable
failure).
"""

import logging
from collections.abc import Mapping
from typing import Any

from bookflow.config import RuntimeConfig
from bookflow.errors import BaseError, ErrorKind, ValidationError, to_base_error
from bookflow.errors.context import error_scope
from bookflow.graph.checkpoint_config import CheckpointConfig
from bookflow.graph.node import WorkflowNode, execute_with_metrics
from bookflow.llm.agent import LLMAgent
from bookflow.nodes import (
    ConsistencyReviewNode,
    ConversationNode,
    FormattingNode,
    OutlineNode,
    QualityReviewNode,
    UnitGenerationNode,
    UnitSpawningNode,
)
from bookflow.nodes.conversation import DocumentExtractor
from bookflow.observability.metrics import MetricsSink, NullMetricsSink, emit
from bookflow.schemas.workflow_state import WorkflowStage, WorkflowState, WorkflowStatus
from bookflow.storage.backend import InMemoryStore, StoreBackend
from bookflow.storage.checkpoint_store import CheckpointStore
from bookflow.storage.session_store import SessionStore
from bookflow.workflow.stages import create_initial_state, next_stage, transition_to_stage, update_progress

logger = logging.getLogger(__name__)


def classify_failure(error: BaseException) -> bool:
    """True if a failure leaves the session retryable, False if it is terminal."""
    error = to_base_error(error)
    match error.kind:
        case ErrorKind.RETRY_EXHAUSTED | ErrorKind.TRANSIENT | ErrorKind.PERSISTENCE:
            return True
        case ErrorKind.VALIDATION | ErrorKind.DEPENDENCY_CYCLE | ErrorKind.CRITICAL:
            return False
        case ErrorKind.GENERIC:
            return error.recoverable


class WorkflowStateMachine:
    """Routes a session's state to stage nodes and applies the transitions."""

    def __init__(
        self,
        nodes: Mapping[WorkflowStage, WorkflowNode],
        *,
        checkpoint_store: CheckpointStore | None = None,
        session_store: SessionStore | None = None,
        metrics: MetricsSink | None = None,
    ):
        self.nodes = dict(nodes)
        self.checkpoint_store = checkpoint_store
        self.session_store = session_store
        self.metrics = metrics or NullMetricsSink()

    # -- routing --------------------------------------------------------------

    def route(self, state: WorkflowState) -> WorkflowNode | None:
        """Node registered for the current stage, or None (terminal / waiting on the user)."""
        if state.is_terminal:
            return None
        return self.nodes.get(state.current_stage)

    def is_waiting(self, state: WorkflowState) -> bool:
        """True when ``run`` has nothing left to do without outside input."""
        return (
            state.is_terminal
            or state.needs_retry
            or state.status == WorkflowStatus.PAUSED
            or self.route(state) is None
        )

    # -- driving --------------------------------------------------------------

    async def start(self, user_prompt: str, **kwargs: Any) -> WorkflowState:
        """Create a session for ``user_prompt`` and run it as far as it goes."""
        state = create_initial_state(user_prompt, **kwargs)
        if self.session_store is not None:
            await self.session_store.create_session(state)
        emit(self.metrics, "workflow_started", session_id=state.session_id)
        return await self.run(state)

    async def step(self, state: WorkflowState) -> WorkflowState:
        """
        Run the node for the current stage once.

        Raises:
            ValidationError: the state is terminal or has no node to run
        """
        node = self.route(state)
        if node is None:
            raise ValidationError(
                f"No node to run at stage {state.current_stage} (status {state.status})",
                context={"session_id": state.session_id, "stage": str(state.current_stage)},
            )

        with error_scope(
            state.session_id,
            session_id=state.session_id,
            user_id=state.user_id,
            stage=str(state.current_stage),
        ):
            logger.info(
                f"▶ Stage {state.current_stage}: {node.name}",
                extra={"event": "stage_started", "session_id": state.session_id},
            )
            try:
                result, _ = await execute_with_metrics(node, state, self.metrics)
            except Exception as e:
                return await self._record_failure(state, node, e)

            if result.needs_retry:
                # Partial failure reported by the node itself
                await self._checkpoint(result, node.name, failure=True)
                await self._update_session(result)
                return result

            advanced = self._advance(result)
            await self._checkpoint(advanced, node.name)
            await self._update_session(advanced)
            return advanced

    async def run(self, state: WorkflowState) -> WorkflowState:
        """Step until the session is terminal, paused for review or awaiting a retry."""
        while not self.is_waiting(state):
            state = await self.step(state)
        if state.status == WorkflowStatus.PAUSED:
            logger.info(
                "⏸ Waiting for user review",
                extra={"event": "workflow_paused", "session_id": state.session_id},
            )
        return state

    async def retry_stage(self, state: WorkflowState) -> WorkflowState:
        """User-triggered retry of the current stage with a fresh retry budget."""
        if state.is_terminal:
            raise ValidationError(
                f"Session {state.session_id} is {state.status}; start a new session instead",
                context={"session_id": state.session_id},
            )
        logger.info(
            f"🔄 Retrying stage {state.current_stage}",
            extra={"event": "stage_retry", "session_id": state.session_id},
        )
        return await self.run(transition_to_stage(state, state.current_stage))

    async def approve(self, state: WorkflowState) -> WorkflowState:
        """Complete a session that is waiting at ``user_review``."""
        if state.current_stage != WorkflowStage.USER_REVIEW:
            raise ValidationError(
                f"Only a session in user_review can be approved (stage {state.current_stage})",
                context={"session_id": state.session_id},
            )
        completed = transition_to_stage(state, WorkflowStage.COMPLETED)
        await self._checkpoint(completed, "user_review")
        await self._update_session(completed)
        emit(self.metrics, "workflow_completed", session_id=state.session_id)
        return completed

    async def resume(self, session_id: str) -> WorkflowState | None:
        """Restore the latest checkpoint of ``session_id`` and continue; None if there is none."""
        if self.checkpoint_store is None:
            raise ValidationError("Resuming requires a checkpoint store")
        state = await self.checkpoint_store.recover_workflow(session_id)
        if state is None:
            return None
        return await self.run(state)

    async def restart(self, state: WorkflowState) -> WorkflowState:
        """Fresh session for the same request. The old session is left untouched."""
        fresh = create_initial_state(
            state.user_prompt,
            user_id=state.user_id,
            source_document=state.source_document,
            base_content=state.base_content,
        )
        if self.session_store is not None:
            await self.session_store.create_session(fresh)
        logger.info(
            f"Restarted session {state.session_id} as {fresh.session_id}",
            extra={"event": "workflow_restarted", "session_id": fresh.session_id},
        )
        return fresh

    # -- internals ------------------------------------------------------------

    def _advance(self, state: WorkflowState) -> WorkflowState:
        target = next_stage(state.current_stage)
        finished = update_progress(state, 100)
        advanced = transition_to_stage(finished, target)
        emit(
            self.metrics,
            "stage_completed",
            session_id=state.session_id,
            stage=str(state.current_stage),
            next_stage=str(target),
            overall_progress=advanced.progress.overall_progress,
        )
        return advanced

    async def _record_failure(
        self, state: WorkflowState, node: WorkflowNode, error: BaseException
    ) -> WorkflowState:
        structured: BaseError = to_base_error(error)
        if classify_failure(structured):
            failed = state.evolve(error=structured.message, needs_retry=True)
            logger.warning(
                f"Stage {state.current_stage} needs a retry: {structured.message}",
                extra={"event": "stage_needs_retry", "session_id": state.session_id},
            )
            await self._checkpoint(failed, node.name, failure=True)
        else:
            failed = transition_to_stage(state, WorkflowStage.FAILED, error=structured.message)
            logger.error(
                f"✗ Session failed at {state.current_stage}: {structured.message}",
                extra={"event": "workflow_failed", "session_id": state.session_id},
            )
        emit(
            self.metrics,
            "stage_failed",
            session_id=state.session_id,
            stage=str(state.current_stage),
            error_code=structured.code,
            needs_retry=failed.needs_retry,
        )
        await self._update_session(failed)
        return failed

    async def _checkpoint(self, state: WorkflowState, node_name: str, *, failure: bool = False) -> None:
        if self.checkpoint_store is None:
            return
        config = self.checkpoint_store.config
        wanted = config.should_checkpoint_failure() if failure else config.should_checkpoint_node_complete()
        if wanted:
            await self.checkpoint_store.save_checkpoint(state.session_id, node_name, state)

    async def _update_session(self, state: WorkflowState) -> None:
        if self.session_store is None:
            return
        try:
            await self.session_store.update_session_status(
                state.session_id,
                state.status,
                current_stage=str(state.current_stage),
                error=state.error,
            )
        except BaseError as e:
            # Session rows are a status mirror; the checkpoint history is authoritative
            logger.warning(
                f"Could not update session status: {e}",
                extra={"event": "session_update_failed", "session_id": state.session_id},
            )


def create_state_machine(
    agent: LLMAgent,
    *,
    backend: StoreBackend | None = None,
    config: RuntimeConfig | None = None,
    metrics: MetricsSink | None = None,
    extract_text: DocumentExtractor | None = None,
    checkpoint_config: CheckpointConfig | None = None,
) -> WorkflowStateMachine:
    """Wire the standard stage nodes to one agent and one store backend."""
    config = config or RuntimeConfig.load()
    backend = backend or InMemoryStore()
    api_policy = config.retry_policy("api")
    session_store = SessionStore(backend, retry_policy=config.retry_policy("storage"))
    checkpoint_store = CheckpointStore(
        backend,
        config=checkpoint_config or config.checkpoint,
        retry_policy=config.retry_policy("storage"),
    )

    common = {"retry_policy": api_policy, "max_retries": config.max_retries}
    nodes: dict[WorkflowStage, WorkflowNode] = {
        WorkflowStage.CONVERSATION: ConversationNode(agent, extract_text=extract_text, **common),
        WorkflowStage.OUTLINE: OutlineNode(agent, **common),
        WorkflowStage.UNIT_SPAWNING: UnitSpawningNode(max_retries=config.max_retries),
        WorkflowStage.UNIT_GENERATION: UnitGenerationNode(
            agent,
            max_concurrency=config.max_concurrency,
            unit_retry_policy=config.retry_policy("unit_generation"),
            session_store=session_store,
            max_retries=config.max_retries,
        ),
        WorkflowStage.CONSISTENCY_REVIEW: ConsistencyReviewNode(
            agent, session_store=session_store, **common
        ),
        WorkflowStage.QUALITY_REVIEW: QualityReviewNode(agent, session_store=session_store, **common),
        WorkflowStage.FORMATTING: FormattingNode(agent, session_store=session_store, **common),
    }
    return WorkflowStateMachine(
        nodes,
        checkpoint_store=checkpoint_store,
        session_store=session_store,
        metrics=metrics,
    )
