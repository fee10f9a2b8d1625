"""Helpers for the loosely-typed values that flow between graph nodes.

Node outputs are plain JSON-like values (dicts, lists, strings, numbers).
These helpers read paths out of them and turn them into prompt text.
"""

import json
import re
from typing import Any

_INDEX_PART = re.compile(r"^(?P<key>[^\[\]]*)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")

_MISSING = object()


def get_by_path(value: Any, path: str) -> Any:
    """
    Read ``a.b[0].c`` style paths out of nested dicts and lists.

    An empty path returns the value itself. Any missing segment yields None.
    """
    if not path or not path.strip():
        return value

    current = value
    for part in (p for p in path.split(".") if p):
        match = _INDEX_PART.match(part)
        if match is None:
            return None
        key = match.group("key")
        if key:
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        for index in _INDEX.findall(part):
            if not isinstance(current, list):
                return None
            i = int(index)
            if i >= len(current):
                return None
            current = current[i]
    return current


def stringify(value: Any) -> str:
    """Render a node value as text. Strings pass through; structures become JSON."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def extract_final_answer(value: Any) -> str:
    """Pull the human-facing answer out of a node output."""
    for path in ("text", "completion.text", "final_draft", "result"):
        found = get_by_path(value, path)
        if isinstance(found, str) and found.strip():
            return found
    return stringify(value)


def try_parse_json(text: str) -> Any:
    """Parse JSON text, returning None instead of raising."""
    stripped = text.strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def replace_input_placeholder(template: str, value: str) -> str:
    return template.replace("{{input}}", value)


def normalize_whitespace(text: str) -> str:
    return " ".join(str(text or "").split())


def clip_text(value: Any, max_chars: int = 2800) -> str:
    text = stringify(value).strip()
    if not text:
        return "(none)"
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n...(truncated)"
