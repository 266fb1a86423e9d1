"""
Mock agent for tests and dry runs.

Replies are taken from a script in order; once the script runs out the last
reply is repeated. A scripted ``Exception`` is raised instead of returned.
"""

from collections.abc import Callable
from typing import Any

from bookflow.llm.agent import AgentResponse, AgentUsage, LLMAgent

Reply = str | AgentResponse | Exception | Callable[[str], str]


class MockAgent(LLMAgent):
    """Agent that plays back canned replies and records every prompt."""

    def __init__(self, replies: list[Reply] | Reply = "", name: str = "mock"):
        self.replies: list[Reply] = list(replies) if isinstance(replies, list) else [replies]
        self.name = name
        self.prompts: list[str] = []
        self.contexts: list[dict[str, Any] | None] = []

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    async def execute(self, prompt: str, error_context: dict[str, Any] | None = None) -> AgentResponse:
        self.prompts.append(prompt)
        self.contexts.append(error_context)
        index = min(len(self.prompts) - 1, len(self.replies) - 1)
        reply = self.replies[index] if self.replies else ""

        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, AgentResponse):
            return reply
        content = reply(prompt) if callable(reply) else reply
        return AgentResponse(
            content=content,
            usage=AgentUsage(input_tokens=len(prompt.split()), output_tokens=len(content.split())),
        )
