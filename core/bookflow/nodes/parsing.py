"""
Helpers for reading structured data out of agent replies.
"""

import json
import re
from typing import Any


def parse_json_object(text: str) -> dict[str, Any] | None:
    """
    Extract a JSON object from an agent reply without another model call.

    Valid JSON is parsed as is. Otherwise common errors are repaired:
    - Markdown code fences
    - Python constants (True / False / None)
    - Single quotes instead of double quotes
    """
    if not isinstance(text, str):
        return None

    # 1. Strip Markdown code fences
    text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.MULTILINE)
    text = re.sub(r"\s*```$", "", text, flags=re.MULTILINE)
    text = text.strip()

    # 2. Outermost object (greedy)
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        return None
    candidate = match.group(0)

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        parsed = _repair(candidate)

    return parsed if isinstance(parsed, dict) else None


def _repair(candidate: str) -> Any:
    # 3. Python constants
    candidate = re.sub(r"\bTrue\b", "true", candidate)
    candidate = re.sub(r"\bFalse\b", "false", candidate)
    candidate = re.sub(r"\bNone\b", "null", candidate)

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    # 4. Single quotes, only when no double quotes are present
    if "'" not in candidate or '"' in candidate:
        return None
    try:
        return json.loads(candidate.replace("'", '"'))
    except json.JSONDecodeError:
        return None


def count_words(text: str | None) -> int:
    return len(text.split()) if text else 0
