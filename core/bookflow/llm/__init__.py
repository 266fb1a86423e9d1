"""LLM agent abstraction."""

from bookflow.llm.agent import AgentResponse, AgentUsage, LLMAgent
from bookflow.llm.mock import MockAgent

__all__ = [
    "AgentResponse",
    "AgentUsage",
    "LLMAgent",
    "MockAgent",
]
