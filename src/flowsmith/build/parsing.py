"""Parse model output into JSON objects as a tagged result.

Model output shape is never guaranteed, so parsing returns either
``Parsed(value)`` or ``ParseFailure(raw_text, reason)`` and every caller
branches on which one it got.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


@dataclass(frozen=True)
class Parsed:
    value: dict


@dataclass(frozen=True)
class ParseFailure:
    raw_text: str
    reason: str

    @property
    def preview(self) -> str:
        return self.raw_text[:200]


ParseResult = Parsed | ParseFailure


def _candidates(text: str) -> list[str]:
    stripped = text.strip()
    candidates = []
    match = _FENCE.search(stripped)
    if match:
        candidates.append(match.group(1).strip())
    candidates.append(stripped)
    start, end = stripped.find("{"), stripped.rfind("}")
    if 0 <= start < end:
        candidates.append(stripped[start : end + 1])
    return candidates


def parse_model_json(text: str | None) -> ParseResult:
    """Extract a JSON object from model output.

    Tries a fenced code block first, then the whole text, then the span
    from the first "{" to the last "}".
    """
    if not text or not text.strip():
        return ParseFailure(text or "", "empty response")

    last_error = "no JSON object found"
    for candidate in _candidates(text):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = f"invalid JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})"
            continue
        if isinstance(value, dict):
            return Parsed(value)
        last_error = f"expected a JSON object, got {type(value).__name__}"
    return ParseFailure(text, last_error)


def check_workflow_shape(value: dict) -> ParseResult:
    """A synthesized workflow needs a non-empty node list and a connections object."""
    raw = json.dumps(value)[:2000]
    nodes = value.get("nodes")
    if not isinstance(nodes, list) or not nodes:
        return ParseFailure(raw, "workflow must contain a non-empty 'nodes' list")
    if not all(isinstance(n, dict) for n in nodes):
        return ParseFailure(raw, "every workflow node must be an object")
    if not isinstance(value.get("connections"), dict):
        return ParseFailure(raw, "workflow must contain a 'connections' object")
    return Parsed(value)
