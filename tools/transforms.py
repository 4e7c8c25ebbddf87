"""
Value transforms applied to fields extracted by response mappings.

A transform is a dict with a `type` and type-specific options:

    {type: parseInt}                         "42 items" → 42
    {type: concat, prefix: "$", suffix: ""}
    {type: regex, pattern: "(\\d+)", group: 1}
    {type: date, format: "%Y-%m-%d"}
    {type: sum, field: amount}               [{amount: 2}, {amount: 3}] → 5

A failing transform returns its `fallback` (or the input unchanged) and
logs a warning; it never raises.
"""
from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from utils.conditions import evaluate_condition, get_nested_value

logger = structlog.get_logger()

_INT_PREFIX = re.compile(r'^\s*([+-]?\d+)')
_FLOAT_PREFIX = re.compile(r'^\s*([+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?)')
_TEMPLATE = re.compile(r'\{\{([^}]+)\}\}')


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"not a number: {value!r}")
    return float(value)


def _whole(value: float) -> int | float:
    return int(value) if value.is_integer() else value


def _parse_int(value, t, args):
    match = _INT_PREFIX.match(_text(value))
    if match:
        return int(match.group(1))
    return t.get("fallback", 0)


def _parse_float(value, t, args):
    match = _FLOAT_PREFIX.match(_text(value))
    if match:
        return _whole(float(match.group(1)))
    return t.get("fallback", 0.0)


def _replace(value, t, args):
    pattern = t.get("pattern")
    if not pattern:
        return value
    flags = re.IGNORECASE if "i" in t.get("flags", "") else 0
    count = 0 if "g" in t.get("flags", "g") else 1
    return re.sub(pattern, t.get("replacement", ""), _text(value), count=count, flags=flags)


def _regex(value, t, args):
    pattern = t.get("pattern")
    if not pattern:
        return value
    match = re.search(pattern, _text(value))
    if not match:
        return t.get("fallback", "")
    return match.group(t.get("group", 0))


def _date(value, t, args):
    moment = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        moment = datetime.fromtimestamp(value / 1000.0 if value > 1e11 else value, tz=timezone.utc)
    elif value:
        text = _text(value).replace("Z", "+00:00")
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            moment = None
    if moment is None:
        if "fallback" in t:
            return t["fallback"]
        moment = datetime.now(timezone.utc)
    fmt = t.get("format")
    return moment.strftime(fmt) if fmt else moment.isoformat()


def _default(value, t, args):
    return value if value is not None else t.get("value")


def _conditional(value, t, args):
    for branch in t.get("conditions", []):
        condition = dict(branch.get("if", {}))
        field = condition.get("field") or "."
        data = value if field == "." else {field: value}
        condition["field"] = field
        if evaluate_condition(condition, data):
            return branch.get("then")
    if "else" in t:
        return t["else"]
    if "condition" in t:
        matched = evaluate_condition({**t["condition"], "field": "value"}, {"value": value})
        key = "trueValue" if matched else "falseValue"
        return t.get(key, value)
    return value


def _substring(value, t, args):
    text = _text(value)
    start = int(t.get("start", 0))
    end = t.get("end")
    return text[start:int(end) if end is not None else len(text)]


def _split(value, t, args):
    delimiter = t.get("delimiter")
    if not delimiter:
        return value
    parts = _text(value).split(delimiter)
    index = t.get("index")
    if index is None:
        return parts
    return parts[index] if -len(parts) <= index < len(parts) else None


def _join(value, t, args):
    if not isinstance(value, list):
        return value
    return t.get("delimiter", ",").join(_text(v) for v in value)


def _template(value, t, args):
    template = t.get("template")
    if not isinstance(template, str):
        return value

    def replacer(match):
        path = match.group(1).strip()
        if path == ".":
            return _text(value)
        if path.startswith("$args."):
            found = get_nested_value(args, path[6:])
        else:
            found = get_nested_value(value, path) if isinstance(value, (dict, list)) else None
        return _text(found) if found is not None else match.group(0)

    return _TEMPLATE.sub(replacer, template)


def _aggregate(kind: str) -> Callable:
    def run(value, t, args):
        if not isinstance(value, list):
            return t.get("fallback", 0)
        field = t.get("field")
        items = [get_nested_value(v, field) if field else v for v in value]
        if kind == "count":
            return len([v for v in items if v is not None])
        numbers = [_number(v) for v in items if v is not None]
        if not numbers:
            return t.get("fallback", 0)
        if kind == "sum":
            result = math.fsum(numbers)
        elif kind == "avg":
            result = math.fsum(numbers) / len(numbers)
        elif kind == "min":
            result = min(numbers)
        else:
            result = max(numbers)
        return _whole(result)
    return run


TRANSFORMS: dict[str, Callable[[Any, dict, dict], Any]] = {
    "parseInt": _parse_int,
    "parseFloat": _parse_float,
    "toLowerCase": lambda v, t, a: _text(v).lower(),
    "toUpperCase": lambda v, t, a: _text(v).upper(),
    "trim": lambda v, t, a: _text(v).strip(),
    "replace": _replace,
    "concat": lambda v, t, a: f"{t.get('prefix', '')}{_text(v)}{t.get('suffix', '')}",
    "regex": _regex,
    "date": _date,
    "default": _default,
    "conditional": _conditional,
    "substring": _substring,
    "split": _split,
    "join": _join,
    "abs": lambda v, t, a: _whole(abs(_number(v))),
    "round": lambda v, t, a: math.floor(_number(v) + 0.5),
    "floor": lambda v, t, a: math.floor(_number(v)),
    "ceil": lambda v, t, a: math.ceil(_number(v)),
    "template": _template,
    "sum": _aggregate("sum"),
    "avg": _aggregate("avg"),
    "min": _aggregate("min"),
    "max": _aggregate("max"),
    "count": _aggregate("count"),
}


def apply_transform(value: Any, transform: Any, args: dict[str, Any] | None = None) -> Any:
    """Apply one transform config to a value."""
    if not isinstance(transform, dict):
        return value
    kind = transform.get("type")
    fn = TRANSFORMS.get(kind)
    if fn is None:
        logger.warning("transform_unknown", type=kind)
        return value
    try:
        return fn(value, transform, args or {})
    except (TypeError, ValueError, IndexError, KeyError, re.error, OverflowError) as e:
        logger.warning("transform_failed", type=kind, error=str(e))
        return transform.get("fallback", value)
