from __future__ import annotations

import re
from typing import Any

# Not an HTML sanitizer; rendered output must still be encoded.
_ANGLE_BRACKETS = re.compile(r"[<>]")
_JAVASCRIPT_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+=", re.IGNORECASE)


def sanitize_input(text: str) -> str:
    text = text.strip()
    text = _ANGLE_BRACKETS.sub("", text)
    text = _JAVASCRIPT_SCHEME.sub("", text)
    return _EVENT_HANDLER.sub("", text)


def sanitize_value(value: Any) -> Any:
    """Recursively sanitize every string inside dicts and lists."""
    if isinstance(value, str):
        return sanitize_input(value)
    if isinstance(value, dict):
        return {key: sanitize_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    return value


__all__ = ["sanitize_input", "sanitize_value"]
