"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
from typing import Any, List


def parse_llm_json(raw: str) -> dict:
    """Parse a JSON object from an LLM response.

    Handles markdown code fences and preamble text. Returns an empty dict
    when nothing parseable is found or the payload is not an object.
    """
    if not raw:
        return {}

    text = raw.strip()
    if text.startswith("```"):
        lines = [l for l in text.split("\n") if not l.strip().startswith("```")]
        text = "\n".join(lines)

    candidates = [text]
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        candidates.append(raw[start:end])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    return {}


def as_str_list(value: Any, limit: int = 10) -> List[str]:
    """Coerce a model-provided field into a short list of non-empty strings"""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v).strip() for v in value if str(v).strip()][:limit]
