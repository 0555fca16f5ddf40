"""Extraction of structured JSON from free-form agent output."""

from __future__ import annotations

import json
import re
from typing import Any

FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)\n?```", re.DOTALL)


def extract_json_block(text: str) -> Any:
    """
    Extract the JSON payload from agent output.

    Tries, in order: the whole text, the last fenced ```json block, and the
    widest {...} span.

    Raises:
        ValueError: If no parseable JSON object is found.
    """
    stripped = text.strip()
    if not stripped:
        raise ValueError("Agent output is empty")

    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    for block in reversed(FENCED_JSON.findall(stripped)):
        try:
            return json.loads(block)
        except json.JSONDecodeError:
            continue

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(stripped[start:end + 1])
        except json.JSONDecodeError as e:
            raise ValueError(f"Agent output contains malformed JSON: {e}")

    raise ValueError("Agent output contains no JSON object")
