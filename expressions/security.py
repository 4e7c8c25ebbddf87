"""
Expression security policy.

Two gates protect the evaluator:

1. A fixed deny-list scanned over the raw expression text (with the contents
   of quoted string literals masked out) before anything is parsed. It
   applies at every security level.
2. A structural check over the parsed tree that enforces what the
   configured `SecurityLevel` allows.

Calls to anything that is not a registered function or whitelisted method
are rejected later, by the evaluator, when the call target is known.
"""
from __future__ import annotations

import re
from enum import Enum

from models.errors import ExpressionBlocked
from expressions.ast import (
    ArrayLiteral, Binary, Call, Conditional, Index, Literal, Logical, Node, Unary, walk,
)


class SecurityLevel(str, Enum):
    STRICT = "strict"            # variables, member access, arithmetic
    STANDARD = "standard"        # + logic, comparison, ternary, whitelisted calls, literal subscripts
    PERMISSIVE = "permissive"    # + computed subscripts


COMPARISON_OPS = {"===", "!==", "==", "!=", "<", ">", "<=", ">="}

# (pattern, reason) pairs checked in order; the first hit blocks the expression
DENY_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r'\b(constructor|prototype)\b'), "prototype access"),
    (re.compile(r'(?<![A-Za-z0-9$])__\w*'), "dunder access"),
    (re.compile(r'\b(eval|Function|exec|compile|require|fetch)\s*\('), "dynamic code execution"),
    (re.compile(r'\bimport\b'), "module import"),
    (re.compile(r'\b(process|global|window|document)\s*\.'), "host object access"),
    (re.compile(r'\bglobalThis\b'), "host object access"),
    (re.compile(r'\b(setTimeout|setInterval|setImmediate)\b'), "timer access"),
    (re.compile(r'\bXMLHttpRequest\b'), "network access"),
    (re.compile(r'\b(localStorage|sessionStorage|indexedDB)\b'), "storage access"),
    (re.compile(r'\+\+|--'), "increment/decrement"),
    (re.compile(r'=>'), "arrow function"),
    (re.compile(r'\b(new|delete|throw|instanceof|void)\b'), "forbidden operator"),
    (re.compile(r';'), "statement separator"),
    (re.compile(r'\b(for|while|do|switch|try|catch|finally|return|function|class|var|let|const|if|else)\b'),
     "statement keyword"),
]

_COMPARISON_RE = re.compile(r'===|!==|==|!=|<=|>=')


def mask_string_literals(expression: str) -> str:
    """Blank out quoted string contents so their text is never scanned."""
    out: list[str] = []
    quote = None
    i = 0
    while i < len(expression):
        ch = expression[i]
        if quote is None:
            if ch in "\"'`":
                quote = ch
            out.append(ch)
        elif ch == "\\" and i + 1 < len(expression):
            out.append("  ")
            i += 2
            continue
        elif ch == quote:
            quote = None
            out.append(ch)
        else:
            out.append(" ")
        i += 1
    return "".join(out)


def check_deny_list(expression: str):
    """Raise ExpressionBlocked if the raw text contains a forbidden construct."""
    masked = mask_string_literals(expression)
    for pattern, reason in DENY_PATTERNS:
        match = pattern.search(masked)
        if match:
            raise ExpressionBlocked(
                f"Blocked {reason}: '{match.group(0).strip()}'", expression,
            )
    if "=" in _COMPARISON_RE.sub("", masked):
        raise ExpressionBlocked("Blocked assignment", expression)
    if "`" in masked:
        raise ExpressionBlocked("Blocked template literal", expression)


def check_policy(node: Node, level: SecurityLevel, expression: str = ""):
    """Raise ExpressionBlocked if the tree uses a construct above `level`."""
    if level == SecurityLevel.PERMISSIVE:
        return
    for child in walk(node):
        if level == SecurityLevel.STRICT:
            if isinstance(child, (Logical, Conditional, Call, ArrayLiteral, Index)):
                raise ExpressionBlocked(
                    f"{type(child).__name__} is not allowed at security level 'strict'", expression,
                )
            if isinstance(child, Binary) and child.op in COMPARISON_OPS:
                raise ExpressionBlocked(
                    f"Comparison '{child.op}' is not allowed at security level 'strict'", expression,
                )
            if isinstance(child, Unary) and child.op in ("!", "typeof"):
                raise ExpressionBlocked(
                    f"Operator '{child.op}' is not allowed at security level 'strict'", expression,
                )
        elif isinstance(child, Index) and not isinstance(child.index, Literal):
            raise ExpressionBlocked(
                "Computed subscripts require security level 'permissive'", expression,
            )


def coerce_level(level) -> SecurityLevel:
    if isinstance(level, SecurityLevel):
        return level
    try:
        return SecurityLevel(str(level).lower())
    except ValueError:
        return SecurityLevel.STANDARD
