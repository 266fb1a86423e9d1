"""Shared fixtures for the bookflow tests."""

import json
from dataclasses import replace

import pytest

from bookflow.config import RuntimeConfig
from bookflow.errors.context import error_context_store
from bookflow.errors.retry import DEFAULT_RETRY_POLICIES
from bookflow.graph.checkpoint_config import CheckpointConfig
from bookflow.observability.logging import clear_trace_context
from bookflow.schemas.work_unit import WorkUnit


@pytest.fixture(autouse=True)
def _clean_context():
    error_context_store.clear_all_contexts()
    clear_trace_context()
    yield
    error_context_store.clear_all_contexts()
    clear_trace_context()


@pytest.fixture
def no_sleep(monkeypatch):
    """Replace the retry sleep with a recorder; returns the list of delays."""
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("bookflow.errors.retry._sleep", fake_sleep)
    return delays


@pytest.fixture
def runtime_config(tmp_path):
    """Config with zero retry delays, independent of ~/.bookflow."""
    return RuntimeConfig(
        max_concurrency=3,
        max_retries=2,
        storage_path=tmp_path / "store",
        checkpoint=CheckpointConfig(),
        retry_policies={
            name: replace(policy, initial_delay=0.0, max_delay=0.0)
            for name, policy in DEFAULT_RETRY_POLICIES.items()
        },
        log_level="DEBUG",
    )


def make_units(*specs: tuple[int, list[int]]) -> list[WorkUnit]:
    return [
        WorkUnit(unit_number=number, title=f"Unit {number}", dependencies=frozenset(deps))
        for number, deps in specs
    ]


OUTLINE_REPLY = {
    "title": "Home Fermentation",
    "subtitle": "A practical guide",
    "units": [
        {"unit_number": 1, "title": "Basics", "dependencies": [], "estimated_size": 1200},
        {"unit_number": 2, "title": "Vegetables", "dependencies": [1], "estimated_size": 1500},
        {"unit_number": 3, "title": "Drinks", "dependencies": [1], "estimated_size": 1500},
        {"unit_number": 4, "title": "Troubleshooting", "dependencies": [2, 3]},
    ],
}

REQUIREMENTS_REPLY = {
    "requirements": {
        "topic": "Home fermentation",
        "audience": {"expertise_level": "beginner"},
        "word_count_target": 6000,
    },
    "style_guide": {"tone": "friendly"},
}


def scripted_reply(prompt: str) -> str:
    """Answer each stage's prompt the way a well-behaved model would."""
    if prompt.startswith("Extract the book requirements"):
        return json.dumps(REQUIREMENTS_REPLY)
    if prompt.startswith("Plan a book"):
        return "```json\n" + json.dumps(OUTLINE_REPLY) + "\n```"
    if prompt.startswith("Write unit"):
        number = prompt.split(":", 1)[0].removeprefix("Write unit ").strip()
        return f"Content of unit {number}. " + "words " * 20
    if prompt.startswith("Review the units"):
        return "No consistency issues found."
    if prompt.startswith("Assess the units"):
        return "Score: 8/10. Tighten the introduction."
    if prompt.startswith("Assemble the units"):
        return "# Home Fermentation\n\nFormatted document."
    return "ok"
