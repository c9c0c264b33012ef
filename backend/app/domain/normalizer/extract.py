"""Locate the JSON payload inside a provider response."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .types import Resolution, Resolved, Unresolved

__all__ = [
    "collect_output_text",
    "extract_json_object",
    "resolve_payload",
]

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)


def resolve_payload(response: Mapping[str, Any]) -> Resolution[Dict[str, Any]]:
    """Return the structured payload carried by ``response``.

    Order: provider ``output_parsed``, a ``parsed`` content part inside
    ``output[]``, then JSON recovered from the response text.
    """

    parsed = response.get("output_parsed")
    if isinstance(parsed, dict) and parsed:
        return Resolved(parsed, "output_parsed")

    for part in _iter_content_parts(response):
        candidate = part.get("parsed")
        if isinstance(candidate, dict) and candidate:
            return Resolved(candidate, "content_parsed")

    text = collect_output_text(response)
    if not text:
        return Unresolved("response carried no parsed output and no text")
    return extract_json_object(text)


def collect_output_text(response: Mapping[str, Any]) -> Optional[str]:
    """Return ``output_text`` or the joined text content parts."""

    text = response.get("output_text")
    if isinstance(text, str) and text.strip():
        return text
    chunks: List[str] = []
    for part in _iter_content_parts(response):
        value = part.get("text")
        if isinstance(value, str) and value:
            chunks.append(value)
    return "\n".join(chunks) or None


def extract_json_object(text: str) -> Resolution[Dict[str, Any]]:
    """Recover a JSON object from free text.

    Tries fenced code blocks, then each outermost balanced ``{...}`` span,
    then the span from the first ``{`` to the last ``}``.
    """

    for match in _FENCE_PATTERN.finditer(text):
        outcome = _parse_object(match.group(1))
        if isinstance(outcome, Resolved):
            return Resolved(outcome.value, "fenced_block")

    for start, end in _balanced_spans(text):
        outcome = _parse_object(text[start:end])
        if isinstance(outcome, Resolved):
            return Resolved(outcome.value, "balanced_span")

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        outcome = _parse_object(text[first : last + 1])
        if isinstance(outcome, Resolved):
            return Resolved(outcome.value, "brace_span")

    return Unresolved("no JSON object found in response text")


def _parse_object(candidate: str) -> Resolution[Dict[str, Any]]:
    try:
        value = json.loads(candidate.strip())
    except json.JSONDecodeError as exc:
        return Unresolved(f"invalid json: {exc.msg}")
    if not isinstance(value, dict):
        return Unresolved("json value is not an object")
    return Resolved(value, "json")


def _balanced_spans(text: str) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, end)`` of each top-level balanced brace span.

    Braces inside JSON string literals do not count toward nesting.
    """

    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield start, index + 1


def _iter_content_parts(response: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    output = response.get("output")
    if not isinstance(output, list):
        return
    for item in output:
        if not isinstance(item, Mapping):
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        for part in content:
            if isinstance(part, Mapping):
                yield part
