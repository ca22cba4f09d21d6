"""Pull a JSON object/array out of free-form LLM output."""

import json
import re
from typing import Any

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def _strip_fences(text: str) -> str:
    match = _FENCE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_json_block(text: str, opener: str = "{") -> str | None:
    """Return the first balanced {...} (or [...]) block, ignoring braces inside strings."""
    closer = "}" if opener == "{" else "]"
    body = _strip_fences(text or "")
    start = body.find(opener)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(body)):
        ch = body[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return body[start : i + 1]
    return None


def _loads_lenient(block: str) -> Any:
    cleaned = re.sub(r",\s*}", "}", block)
    cleaned = re.sub(r",\s*]", "]", cleaned)
    return json.loads(cleaned)


def parse_json_object(text: str, default: dict[str, Any] | None = None) -> dict[str, Any] | None:
    block = extract_json_block(text, "{")
    if block is None:
        return default
    try:
        value = _loads_lenient(block)
    except (json.JSONDecodeError, TypeError):
        return default
    return value if isinstance(value, dict) else default


def parse_json_array(text: str, default: list[Any] | None = None) -> list[Any] | None:
    block = extract_json_block(text, "[")
    if block is None:
        return default
    try:
        value = _loads_lenient(block)
    except (json.JSONDecodeError, TypeError):
        return default
    return value if isinstance(value, list) else default
