"""Locate JSON objects embedded in free-form agent replies.

Agents wrap their structured answer in prose or code fences, so the whole
reply is rarely valid JSON. ``extract_json_object`` scans for the first
balanced ``{...}`` span that mentions the wanted key and parses to an object
holding that key at its top level.
"""

from __future__ import annotations

import json
from typing import Any


def find_balanced_end(text: str, start: int) -> int | None:
    """Return the index of the ``}`` closing the ``{`` at ``start``.

    Braces inside JSON string literals are ignored. Returns ``None`` when the
    object is never closed.
    """
    if start >= len(text) or text[start] != "{":
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def extract_json_object(text: str, required_key: str) -> dict[str, Any] | None:
    needle = json.dumps(required_key)
    if needle not in text:
        return None

    start = text.find("{")
    while 0 <= start < len(text):
        end = find_balanced_end(text, start)
        if end is not None and needle in text[start : end + 1]:
            try:
                payload = json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                payload = None
            if isinstance(payload, dict) and required_key in payload:
                return payload
        start = text.find("{", start + 1)
    return None

