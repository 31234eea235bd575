"""JSON object extraction from free-form agent output."""

from __future__ import annotations

import json
import logging
import re

log = logging.getLogger(__name__)

_FENCED = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)


def extract_json(text: str) -> dict[str, object] | None:
    """Return the first JSON object embedded in *text*, or ``None``.

    Fenced ```json blocks are tried first, then every ``{`` in the text is
    tried as the start of an object, matching braces by counting (string
    literals and escapes are skipped so braces inside strings don't count).
    """
    if not text:
        return None

    for match in _FENCED.finditer(text):
        obj = _loads_object(match.group(1))
        if obj is not None:
            return obj

    start = text.find("{")
    while start != -1:
        end = _matching_brace(text, start)
        if end is None:
            return None
        obj = _loads_object(text[start : end + 1])
        if obj is not None:
            return obj
        start = text.find("{", start + 1)
    return None


def _loads_object(candidate: str) -> dict[str, object] | None:
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _matching_brace(text: str, start: int) -> int | None:
    """Index of the ``}`` closing the ``{`` at *start*, or ``None`` if unbalanced."""
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
        elif ch == "\\":
            escape = in_string
        elif ch == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None
