"""
Base class for stage nodes that call an LLM agent.
"""

import logging

from bookflow.errors import RetryExhaustedError, WorkflowError
from bookflow.errors.context import execute_with_tool_context, get_current_context
from bookflow.errors.retry import DEFAULT_RETRY_POLICIES, RetryPolicy, with_retry
from bookflow.graph.node import DEFAULT_MAX_RETRIES, DegradationPolicy, WorkflowNode
from bookflow.llm.agent import AgentResponse, LLMAgent
from bookflow.schemas.workflow_state import WorkflowState

logger = logging.getLogger(__name__)


class AgentStageNode(WorkflowNode):
    """
    A node whose work is one or more agent calls.

    Every call goes through ``with_retry`` (the ``api`` preset unless
    overridden) and ``execute_with_tool_context``, so transient failures are
    retried locally and every failure leaves with session and tool context.
    """

    retry_policy_name = "api"

    def __init__(
        self,
        agent: LLMAgent,
        *,
        retry_policy: RetryPolicy | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        degradation: DegradationPolicy | None = None,
    ):
        super().__init__(max_retries=max_retries, degradation=degradation)
        self.agent = agent
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICIES[self.retry_policy_name]

    def is_recoverable_error(self, error: BaseException) -> bool:
        # An agent outage that outlasted with_retry may still pass on a degraded attempt
        if isinstance(error, RetryExhaustedError) and error.cause is not None:
            return super().is_recoverable_error(error.cause)
        return super().is_recoverable_error(error)

    async def call_agent(self, state: WorkflowState, prompt: str) -> AgentResponse:
        """
        Call the agent and return a non-empty response.

        Raises:
            RetryExhaustedError: transient failures outlasted the retry policy
            WorkflowError: the agent replied with empty content (recoverable)
            BaseError: any other agent failure, enriched
        """
        error_context = get_current_context(state.session_id).as_dict()

        async def _attempt() -> AgentResponse:
            return await execute_with_tool_context(
                self.agent.name,
                {"node": self.name, "prompt_chars": len(prompt)},
                lambda: self.agent.execute(prompt, error_context),
                session_id=state.session_id,
            )

        response = await with_retry(
            _attempt, self.retry_policy, operation_name=f"{self.name}_agent"
        )
        if not response.content or not response.content.strip():
            raise WorkflowError(
                f"Empty response from agent {self.agent.name}",
                session_id=state.session_id,
                stage=str(state.current_stage),
                node_name=self.name,
                code="EMPTY_RESPONSE",
            )
        if response.usage:
            logger.debug(
                f"[{self.name}] agent used {response.usage.total_tokens} tokens",
                extra={"node": self.name},
            )
        return response
