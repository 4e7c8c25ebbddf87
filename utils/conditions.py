"""
Shared condition evaluator and path helpers, used by response mapping
(array filters, conditional mappings and conditional transforms).

A condition is a dict `{field, operator, value}` checked against a data
dictionary. Field paths support dot notation, list indices (`items[0]`),
a leading `$.` and `.` for the data itself.
"""
from __future__ import annotations

import re
import operator as op
from typing import Any, Optional

import structlog

logger = structlog.get_logger()

_INDEX_RE = re.compile(r'^([^\[\]]*)((?:\[\d+\])+)$')


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _numeric(fn):
    def compare(a, b):
        left, right = _to_float(a), _to_float(b)
        if left is None or right is None:
            return False
        return fn(left, right)
    return compare


def _as_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _has_length(a, b) -> bool:
    length = len(a) if isinstance(a, (list, dict)) else len(_as_text(a))
    expected = _to_float(b)
    return expected is not None and length == expected


OPERATORS: dict[str, Any] = {
    "equals": op.eq,
    "eq": op.eq,
    "notEquals": op.ne,
    "ne": op.ne,
    "gt": _numeric(op.gt),
    "gte": _numeric(op.ge),
    "lt": _numeric(op.lt),
    "lte": _numeric(op.le),
    "greaterThan": _numeric(op.gt),
    "greaterThanOrEqual": _numeric(op.ge),
    "lessThan": _numeric(op.lt),
    "lessThanOrEqual": _numeric(op.le),
    "in": lambda a, b: isinstance(b, list) and a in b,
    "contains": lambda a, b: _as_text(b) in _as_text(a),
    "startsWith": lambda a, b: _as_text(a).startswith(_as_text(b)),
    "endsWith": lambda a, b: _as_text(a).endswith(_as_text(b)),
    "matches": lambda a, b: bool(re.search(str(b), _as_text(a))),
    "exists": lambda a, b: a is not None,
    "notExists": lambda a, b: a is None,
    "hasLength": _has_length,
    "isArray": lambda a, b: isinstance(a, list),
    "isObject": lambda a, b: isinstance(a, dict),
    "isString": lambda a, b: isinstance(a, str),
    "isNumber": lambda a, b: isinstance(a, (int, float)) and not isinstance(a, bool) and a == a,
}


def get_nested_value(data: Any, field: str) -> Any:
    """Get a value using dot notation, e.g. 'order.items[0].sku' or '$.order.status'."""
    if not field or field in (".", "$"):
        return data
    if field.startswith("$."):
        field = field[2:]
    current = data
    for part in field.split("."):
        if current is None:
            return None
        match = _INDEX_RE.match(part)
        if match:
            key, indices = match.group(1), re.findall(r'\[(\d+)\]', match.group(2))
            if key:
                current = current.get(key) if isinstance(current, dict) else None
            for index in indices:
                i = int(index)
                if isinstance(current, list) and i < len(current):
                    current = current[i]
                else:
                    return None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def set_nested_value(data: dict, field: str, value: Any):
    """Set a value using dot notation, creating intermediate dicts."""
    parts = field.split(".")
    current = data
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def evaluate_condition(condition: dict[str, Any], data: Any) -> bool:
    """Evaluate a single condition against data."""
    if not isinstance(condition, dict):
        return False
    operator = condition.get("operator", "equals")
    fn = OPERATORS.get(operator)
    if fn is None:
        logger.warning("condition_operator_unknown", operator=operator)
        return False
    val = get_nested_value(data, condition.get("field", "."))
    try:
        return bool(fn(val, condition.get("value")))
    except (TypeError, ValueError, re.error):
        return False


def evaluate_conditions(conditions: list[dict[str, Any]], data: Any) -> bool:
    """Evaluate all conditions (AND logic). Returns True if all pass."""
    if not conditions:
        return True
    return all(evaluate_condition(c, data) for c in conditions)
