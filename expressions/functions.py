"""
Whitelisted call targets for expressions.

Only what is listed here, plus pure functions the host registers at engine
construction, can be called from an expression:

- string methods, array methods and number methods (`call_method`)
- the `Math` namespace (`MATH_FUNCTIONS`, `MATH_CONSTANTS`)
- global functions (`parseInt`, `parseFloat`, `Number`, `String`,
  `Boolean`, `currentTime`)

Each implementation receives already-evaluated argument values.
"""
from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from models.errors import EvalReason, ExpressionBlocked, ExpressionRuntimeError
from expressions.values import (
    UNDEFINED, is_nullish, is_number, normalize_number, render, strict_equals,
    to_integer, to_number, truthy, type_name,
)

logger = structlog.get_logger()


class Namespace:
    """A read-only bag of functions and constants, such as `Math`."""

    def __init__(self, name: str, functions: dict[str, Callable], constants: dict[str, Any]):
        self.name = name
        self.functions = functions
        self.constants = constants

    def __repr__(self) -> str:
        return f"[{self.name}]"


# ──────────────────────────────────────────────────────────────
#  Argument helpers
# ──────────────────────────────────────────────────────────────

def _arg(args: list, index: int, default: Any = UNDEFINED) -> Any:
    if index < len(args) and args[index] is not UNDEFINED:
        return args[index]
    return default


def _str_arg(args: list, index: int, default: str = "") -> str:
    value = _arg(args, index, None)
    return default if value is None else render(value)


def _slice_bounds(length: int, start: Any, end: Any) -> tuple[int, int]:
    def clamp(value: int) -> int:
        if value < 0:
            return max(length + value, 0)
        return min(value, length)

    lo = clamp(to_integer(start)) if start is not UNDEFINED else 0
    hi = clamp(to_integer(end)) if end is not UNDEFINED else length
    return lo, hi


# ──────────────────────────────────────────────────────────────
#  String methods
# ──────────────────────────────────────────────────────────────

def _substring(s: str, args: list) -> str:
    length = len(s)
    start = min(max(to_integer(_arg(args, 0, 0)), 0), length)
    end = min(max(to_integer(_arg(args, 1, length)), 0), length)
    if start > end:
        start, end = end, start
    return s[start:end]


def _split(s: str, args: list) -> list:
    sep = _arg(args, 0)
    if sep is UNDEFINED:
        parts = [s]
    elif render(sep) == "":
        parts = list(s)
    else:
        parts = s.split(render(sep))
    limit = _arg(args, 1)
    if limit is not UNDEFINED:
        parts = parts[:max(to_integer(limit), 0)]
    return parts


def _index_of(s: str, args: list) -> int:
    start = to_integer(_arg(args, 1, 0))
    return s.find(_str_arg(args, 0, "undefined"), max(start, 0))


def _last_index_of(s: str, args: list) -> int:
    return s.rfind(_str_arg(args, 0, "undefined"))


def _char_at(s: str, args: list) -> str:
    index = to_integer(_arg(args, 0, 0))
    return s[index] if 0 <= index < len(s) else ""


def _pad(s: str, args: list, at_start: bool) -> str:
    target = to_integer(_arg(args, 0, 0))
    fill = _str_arg(args, 1, " ")
    if target <= len(s) or fill == "":
        return s
    needed = target - len(s)
    padding = (fill * (needed // len(fill) + 1))[:needed]
    return padding + s if at_start else s + padding


STRING_METHODS: dict[str, Callable[[str, list], Any]] = {
    "toLowerCase": lambda s, a: s.lower(),
    "toUpperCase": lambda s, a: s.upper(),
    "trim": lambda s, a: s.strip(),
    "trimStart": lambda s, a: s.lstrip(),
    "trimEnd": lambda s, a: s.rstrip(),
    "slice": lambda s, a: s[slice(*_slice_bounds(len(s), _arg(a, 0), _arg(a, 1)))],
    "substring": _substring,
    "split": _split,
    "replace": lambda s, a: s.replace(_str_arg(a, 0, "undefined"), _str_arg(a, 1, "undefined"), 1),
    "replaceAll": lambda s, a: s.replace(_str_arg(a, 0, "undefined"), _str_arg(a, 1, "undefined")),
    "includes": lambda s, a: _str_arg(a, 0, "undefined") in s[max(to_integer(_arg(a, 1, 0)), 0):],
    "startsWith": lambda s, a: s.startswith(_str_arg(a, 0, "undefined"), max(to_integer(_arg(a, 1, 0)), 0)),
    "endsWith": lambda s, a: s[:to_integer(_arg(a, 1, len(s)))].endswith(_str_arg(a, 0, "undefined")),
    "indexOf": _index_of,
    "lastIndexOf": _last_index_of,
    "charAt": _char_at,
    "padStart": lambda s, a: _pad(s, a, at_start=True),
    "padEnd": lambda s, a: _pad(s, a, at_start=False),
    "concat": lambda s, a: s + "".join(render(v) for v in a),
    "toString": lambda s, a: s,
}


# ──────────────────────────────────────────────────────────────
#  Array methods
# ──────────────────────────────────────────────────────────────

def _join(items: list, args: list) -> str:
    sep = _str_arg(args, 0, ",")
    return sep.join("" if is_nullish(v) else render(v) for v in items)


def _array_index_of(items: list, args: list) -> int:
    target = _arg(args, 0)
    for i, item in enumerate(items):
        if strict_equals(item, target):
            return i
    return -1


def _array_concat(items: list, args: list) -> list:
    result = list(items)
    for value in args:
        if isinstance(value, list):
            result.extend(value)
        else:
            result.append(value)
    return result


ARRAY_METHODS: dict[str, Callable[[list, list], Any]] = {
    "join": _join,
    "slice": lambda items, a: items[slice(*_slice_bounds(len(items), _arg(a, 0), _arg(a, 1)))],
    "includes": lambda items, a: _array_index_of(items, a) >= 0,
    "indexOf": _array_index_of,
    "concat": _array_concat,
    "toString": lambda items, a: _join(items, []),
}


# ──────────────────────────────────────────────────────────────
#  Number methods
# ──────────────────────────────────────────────────────────────

def _to_fixed(n, args: list) -> str:
    digits = to_integer(_arg(args, 0, 0))
    if not 0 <= digits <= 100:
        raise ValueError("toFixed() digits argument must be between 0 and 100")
    return f"{n:.{digits}f}"


NUMBER_METHODS: dict[str, Callable[[Any, list], Any]] = {
    "toFixed": _to_fixed,
    "toString": lambda n, a: render(n),
}


# ──────────────────────────────────────────────────────────────
#  Math namespace
# ──────────────────────────────────────────────────────────────

def _math_round(x) -> int:
    # halves round toward positive infinity: round(-2.5) == -2
    return int(math.floor(to_number(x) + 0.5))


def _math_sqrt(x):
    number = to_number(x)
    if number < 0:
        raise ValueError("Math.sqrt of a negative number")
    return normalize_number(math.sqrt(number))


def _math_sign(x) -> int:
    number = to_number(x)
    return (number > 0) - (number < 0)


def _math_max(*values):
    if not values:
        return float("-inf")
    return max(to_number(v) for v in values)


def _math_min(*values):
    if not values:
        return float("inf")
    return min(to_number(v) for v in values)


MATH_FUNCTIONS: dict[str, Callable] = {
    "abs": lambda x=UNDEFINED: abs(to_number(x)),
    "ceil": lambda x=UNDEFINED: math.ceil(to_number(x)),
    "floor": lambda x=UNDEFINED: math.floor(to_number(x)),
    "round": _math_round,
    "max": _math_max,
    "min": _math_min,
    "pow": lambda x, y: normalize_number(float(to_number(x)) ** to_number(y)),
    "sqrt": _math_sqrt,
    "trunc": lambda x=UNDEFINED: math.trunc(to_number(x)),
    "sign": _math_sign,
}

MATH_CONSTANTS: dict[str, float] = {
    "PI": math.pi,
    "E": math.e,
}

MATH = Namespace("Math", MATH_FUNCTIONS, MATH_CONSTANTS)


# ──────────────────────────────────────────────────────────────
#  Global functions
# ──────────────────────────────────────────────────────────────

_INT_PREFIX = re.compile(r'^\s*([+-]?\d+)')
_FLOAT_PREFIX = re.compile(r'^\s*([+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?)')


def _parse_int(value=UNDEFINED, radix=UNDEFINED) -> int:
    if is_number(value):
        return math.trunc(value)
    text = render(value)
    if radix is not UNDEFINED and to_integer(radix) != 10:
        return int(text.strip(), to_integer(radix))
    match = _INT_PREFIX.match(text)
    if not match:
        raise ValueError(f"parseInt: '{text}' is not a number")
    return int(match.group(1))


def _parse_float(value=UNDEFINED):
    if is_number(value):
        return value
    text = render(value)
    match = _FLOAT_PREFIX.match(text)
    if not match:
        raise ValueError(f"parseFloat: '{text}' is not a number")
    return normalize_number(float(match.group(1)))


def _number(value=0):
    if isinstance(value, bool):
        return int(value)
    if value is None:
        return 0
    if isinstance(value, str) and value.strip() == "":
        return 0
    return to_number(value)


def _current_time() -> str:
    return datetime.now(timezone.utc).isoformat()


GLOBAL_FUNCTIONS: dict[str, Callable] = {
    "parseInt": _parse_int,
    "parseFloat": _parse_float,
    "Number": _number,
    "String": lambda value="": render(value),
    "Boolean": lambda value=False: truthy(value),
    "currentTime": _current_time,
}


# ══════════════════════════════════════════════════════════════
#  Registry
# ══════════════════════════════════════════════════════════════

class FunctionRegistry:
    """
    Resolves call targets for the evaluator.

    Host functions are registered by name at engine construction and must be
    synchronous and side-effect free. A host function can never shadow a
    builtin; the collision is logged and the builtin wins.
    """

    def __init__(self, functions: Optional[dict[str, Callable]] = None):
        self._functions: dict[str, Callable] = dict(GLOBAL_FUNCTIONS)
        for name, fn in (functions or {}).items():
            self.register(name, fn)

    def register(self, name: str, fn: Callable):
        if not callable(fn):
            raise TypeError(f"Expression function '{name}' is not callable")
        if name in GLOBAL_FUNCTIONS or name == MATH.name:
            logger.warning("expression_function_shadowed", name=name)
            return
        self._functions[name] = fn

    def has(self, name: str) -> bool:
        return name in self._functions

    @property
    def names(self) -> list[str]:
        return sorted(self._functions)

    def call(self, name: str, args: list, expression: str = "") -> Any:
        fn = self._functions.get(name)
        if fn is None:
            raise ExpressionBlocked(f"Function '{name}' is not registered", expression)
        return _invoke(fn, args, f"{name}()", expression)

    def call_namespace(self, namespace: Namespace, name: str, args: list, expression: str = "") -> Any:
        fn = namespace.functions.get(name)
        if fn is None:
            raise ExpressionBlocked(f"Function '{namespace.name}.{name}' is not registered", expression)
        return _invoke(fn, args, f"{namespace.name}.{name}()", expression)


def call_method(receiver: Any, name: str, args: list, expression: str = "") -> Any:
    """Call a whitelisted method on a string, array or number."""
    if is_nullish(receiver):
        raise ExpressionRuntimeError(
            f"Cannot call '{name}' on {type_name(receiver)}", EvalReason.UNDEFINED_ACCESS, expression,
        )
    if isinstance(receiver, str):
        table = STRING_METHODS
    elif isinstance(receiver, list):
        table = ARRAY_METHODS
    elif is_number(receiver):
        table = NUMBER_METHODS
    else:
        table = {}

    method = table.get(name)
    if method is None:
        if any(name in t for t in (STRING_METHODS, ARRAY_METHODS, NUMBER_METHODS)):
            raise ExpressionRuntimeError(
                f"'{name}' is not a method of {type_name(receiver)}", EvalReason.TYPE_MISMATCH, expression,
            )
        raise ExpressionBlocked(f"Method '{name}' is not whitelisted", expression)
    return _invoke(lambda *a: method(receiver, list(a)), args, f".{name}()", expression)


def _invoke(fn: Callable, args: list, label: str, expression: str) -> Any:
    try:
        result = fn(*args)
    except ExpressionRuntimeError:
        raise
    except ExpressionBlocked:
        raise
    except Exception as e:
        raise ExpressionRuntimeError(
            f"{label} failed: {e}", EvalReason.FUNCTION_ERROR, expression,
        ) from e
    if isinstance(result, float):
        return normalize_number(result)
    return result
