"""LLM agent abstraction - the only way stage nodes talk to a model."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentUsage:
    """Token accounting reported by an agent."""

    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class AgentResponse:
    """Response from an agent call."""

    content: str
    usage: AgentUsage | None = None
    reasoning: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class LLMAgent(ABC):
    """
    Abstract agent - plug in any model backend.

    Implementations own prompt templates and model parameters. The
    orchestration core only relies on two things:
    - failures raise (ideally a ``ToolError`` with a transient code when a
      retry may help)
    - successes return non-empty ``content``
    """

    name: str = "agent"

    @abstractmethod
    async def execute(self, prompt: str, error_context: dict[str, Any] | None = None) -> AgentResponse:
        """
        Run the agent on ``prompt``.

        Args:
            prompt: Fully rendered prompt
            error_context: Diagnostic fields (session, stage, ...) the agent
                may attach to the errors it raises

        Returns:
            AgentResponse with the generated content
        """
        raise NotImplementedError
