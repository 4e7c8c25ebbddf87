"""
Value model and coercion rules for the expression language.

Expressions operate on plain JSON-like Python values (str, int, float,
bool, None, list, dict) plus the UNDEFINED sentinel for names that do not
resolve. There is exactly one numeric-parse path, `to_number`, and no
operator ever coerces a string to a number implicitly:

    "a" + "b"        → "ab"           (both strings: concatenation)
    "2" + 3          → 5              (otherwise numeric: both via to_number)
    "abc" * 2        → ARITHMETIC error
    "150" > 100      → TYPE_MISMATCH error (relational needs same kind)
    "1" == 1         → false          (no cross-type equality)
    null == undefined → true
"""
from __future__ import annotations

import json
import math
import re
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

from models.errors import EvalReason, ExpressionRuntimeError


class Undefined:
    """Typed marker for a name or member that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = Undefined()

_NUMERIC_RE = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$')


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_nullish(value: Any) -> bool:
    return value is None or value is UNDEFINED


def type_name(value: Any) -> str:
    """JavaScript-flavoured type name used in error messages."""
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def js_typeof(value: Any) -> str:
    """Result of the `typeof` operator; null, arrays and objects are all "object"."""
    name = type_name(value)
    if name in ("null", "array", "object"):
        return "object"
    if name in ("undefined", "boolean", "number", "string"):
        return name
    return "function" if callable(value) else "object"


def to_number(value: Any, expression: str = "") -> int | float:
    """The single numeric-parse function used by every arithmetic operator."""
    if is_number(value):
        if isinstance(value, float) and math.isnan(value):
            raise ExpressionRuntimeError("NaN is not a usable number", EvalReason.ARITHMETIC, expression)
        return value
    if isinstance(value, str):
        text = value.strip()
        if _NUMERIC_RE.match(text):
            if any(c in text for c in ".eE"):
                return float(text)
            return int(text)
        raise ExpressionRuntimeError(
            f"Cannot convert string '{value}' to a number", EvalReason.ARITHMETIC, expression,
        )
    raise ExpressionRuntimeError(
        f"Cannot convert {type_name(value)} to a number", EvalReason.ARITHMETIC, expression,
    )


def to_integer(value: Any, expression: str = "") -> int:
    number = to_number(value, expression)
    return int(number)


def truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    # lists and objects are truthy even when empty
    return True


def strict_equals(left: Any, right: Any) -> bool:
    if is_number(left) and is_number(right):
        return left == right
    if type_name(left) != type_name(right):
        return False
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    if is_nullish(left) and is_nullish(right):
        return True
    return strict_equals(left, right)


def compare(op: str, left: Any, right: Any, expression: str = "") -> bool:
    if is_number(left) and is_number(right):
        pass
    elif isinstance(left, str) and isinstance(right, str):
        pass
    else:
        raise ExpressionRuntimeError(
            f"Cannot compare {type_name(left)} {op} {type_name(right)}; "
            f"convert explicitly with Number() or String()",
            EvalReason.TYPE_MISMATCH, expression,
        )
    if op == "<":
        return left < right
    if op == ">":
        return left > right
    if op == "<=":
        return left <= right
    return left >= right


def normalize_number(value: int | float) -> int | float:
    """Collapse integral floats produced by arithmetic back to int."""
    if isinstance(value, float) and value.is_integer() and abs(value) < 2 ** 53:
        return int(value)
    return value


def render(value: Any) -> str:
    """Render a value the way it appears when spliced into text."""
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 2 ** 53:
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
    return str(value)


def to_storable(value: Any) -> Any:
    """
    Convert a value into the JSON-safe form kept in session variables.

    Whatever is stored must read back identically after
    `Session.from_json(session.to_json())`:

        undefined, NaN, ±Infinity   → None
        datetime / date / time      → ISO-8601 string
        Decimal                     → int when integral, else float
        tuple / set / frozenset     → list
        Enum                        → its value
        pydantic model              → its JSON dump
        bytes                       → UTF-8 text
        anything else non-JSON      → str(value)
    """
    if value is UNDEFINED or value is None:
        return None
    if isinstance(value, Enum):
        return to_storable(value.value)
    if isinstance(value, (str, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {str(k): to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((to_storable(v) for v in value), key=render)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        if not value.is_finite():
            return None
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, BaseModel):
        return to_storable(value.model_dump(mode="json"))
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)
