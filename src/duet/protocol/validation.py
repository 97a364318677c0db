"""Defensive JSON handling for frames arriving from the network."""
from __future__ import annotations
import json
from typing import Any, Dict

from .constants import MAX_MSG_BYTES, MAX_JSON_DEPTH, MAX_JSON_KEYS


def _limit_keys(pairs):
    if len(pairs) > MAX_JSON_KEYS:
        raise ValueError(f"object has more than {MAX_JSON_KEYS} keys")
    return dict(pairs)


def _nesting(value: Any) -> int:
    deepest = 0
    stack = [(value, 0)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        if deepest > MAX_JSON_DEPTH:
            break
        if isinstance(node, dict):
            stack.extend((v, depth + 1) for v in node.values())
        elif isinstance(node, list):
            stack.extend((v, depth + 1) for v in node)
    return deepest


def fuzz_resistant_json_loads(s: str | bytes) -> Any:
    """``json.loads`` bounded in size, key count and nesting depth.

    Raises ``ValueError`` (``JSONDecodeError`` included) for anything outside
    those bounds, so callers only need one except clause.
    """
    if isinstance(s, bytes):
        s = s.decode("utf-8")
    if len(s) > MAX_MSG_BYTES * 2:
        raise ValueError("frame too large")
    parsed = json.loads(s, object_pairs_hook=_limit_keys)
    if _nesting(parsed) > MAX_JSON_DEPTH:
        raise ValueError("JSON nesting too deep")
    return parsed


def json_dumps(o: Any) -> str:
    return json.dumps(o, ensure_ascii=False, separators=(",", ":"))


def require_str(body: Dict[str, Any], key: str, allow_empty: bool = False) -> str:
    value = body.get(key)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise ValueError(f"{key} must be a non-empty string")
    return value


def optional_str(body: Dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value
