"""Recursive helpers over arbitrary JSON tool input.

estimate_json_tokens() feeds the window size estimator; simplify_json()
shrinks oversized tool input when a conversation is optimized for cache.
"""

from __future__ import annotations

from typing import Any

SIMPLIFY_MAX_STRING = 200
SIMPLIFY_MAX_ITEMS = 5


def estimate_json_tokens(value: Any) -> int:
    """Rough token-like size of a JSON value.

    Scalars count 1, strings a quarter of their length, containers add a
    fixed overhead of 10 plus their members (object keys included).
    """
    if value is None or isinstance(value, (bool, int, float)):
        return 1
    if isinstance(value, str):
        return max(1, len(value) // 4)
    if isinstance(value, (list, tuple)):
        return 10 + sum(estimate_json_tokens(item) for item in value)
    if isinstance(value, dict):
        return 10 + sum(len(str(k)) // 4 + estimate_json_tokens(v) for k, v in value.items())
    return max(1, len(str(value)) // 4)


def simplify_json(value: Any) -> Any:
    """Return a reduced copy: long strings cut, arrays and objects capped at 5 members."""
    if isinstance(value, str):
        if len(value) > SIMPLIFY_MAX_STRING:
            return value[:SIMPLIFY_MAX_STRING] + "..."
        return value
    if isinstance(value, (list, tuple)):
        return [simplify_json(item) for item in value[:SIMPLIFY_MAX_ITEMS]]
    if isinstance(value, dict):
        return {k: simplify_json(v) for k, v in list(value.items())[:SIMPLIFY_MAX_ITEMS]}
    return value
