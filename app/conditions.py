"""Condition evaluation for list filters.

A condition is a dict tree, e.g.::

    {"op": "and", "conditions": [
        {"op": "eq", "field": "account_type", "value": "Customer"},
        {"op": "like", "field": "name", "value": "Acme%"},
    ]}
"""

from __future__ import annotations

import re
from typing import Any


ALLOWED_OPS = {"eq", "neq", "gt", "gte", "lt", "lte", "in", "like", "contains", "and", "or"}


def _get_by_path(data: dict, path: str) -> Any:
    if not isinstance(data, dict):
        return None
    if path in data:
        return data.get(path)
    cur: Any = data
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur.get(part)
        else:
            return None
    return cur


def like_to_regex(pattern: str) -> re.Pattern:
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def condition_fields(condition: dict | None) -> list[str]:
    """Field ids referenced by a condition tree, in first-seen order."""
    if not isinstance(condition, dict):
        return []
    op = condition.get("op")
    if op in ("and", "or"):
        found: list[str] = []
        for item in condition.get("conditions") or []:
            for field_id in condition_fields(item):
                if field_id not in found:
                    found.append(field_id)
        return found
    field = condition.get("field")
    return [field] if isinstance(field, str) else []


def _compare(left: Any, right: Any, op: str) -> bool:
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        return left <= right
    except TypeError:
        return False


def _as_text(value: Any) -> str | None:
    # Matches the JSON text Postgres yields for ``data ->> field``.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value if isinstance(value, str) else None


def eval_condition(condition: dict | None, context: dict) -> bool:
    if not condition or not isinstance(condition, dict):
        return False
    op = condition.get("op")
    if op not in ALLOWED_OPS:
        return False

    if op == "and":
        items = condition.get("conditions") or []
        return all(eval_condition(c, context) for c in items)
    if op == "or":
        items = condition.get("conditions") or []
        return any(eval_condition(c, context) for c in items)

    field = condition.get("field")
    left = _get_by_path(context.get("record", {}), field) if isinstance(field, str) else None
    right = condition.get("value")

    if op == "eq":
        return left == right
    if op == "neq":
        return left != right
    if op in ("gt", "gte", "lt", "lte"):
        return _compare(left, right, op)
    if op == "in":
        return isinstance(right, list) and left in right
    if op == "like":
        text = _as_text(left)
        if text is None or not isinstance(right, str):
            return False
        return bool(like_to_regex(right).match(text))
    if op == "contains":
        if isinstance(left, list):
            return right in left
        text = _as_text(left)
        return text is not None and isinstance(right, str) and right in text
    return False
