"""
Two-phase expression evaluator.

Phase 1 (substitution): every `{{a.b.c}}` path is replaced by a typed slot
holding the looked-up value; any other `{{ ... }}` is unwrapped into a
parenthesised sub-expression. Slot values are never re-read as source text,
so a variable containing `"); eval(...)` stays an inert string.

Phase 2 (evaluation): the segment stream is tokenized, parsed by a
recursive-descent parser and walked. The deny-list runs before phase 1 and
the security-level check runs on the parsed tree.

Callers pick their failure policy from the returned EvalResult:
templates degrade to visible placeholders, conditions fall back to false.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from models.errors import (
    EvalReason, ExpressionBlocked, ExpressionError, ExpressionRuntimeError, ExpressionSyntaxError,
)
from expressions.ast import (
    ArrayLiteral, Binary, Call, Conditional, Identifier, Index, Literal,
    Logical, Member, Node, SlotRef, Unary,
)
from expressions.environment import VariableEnvironment, get_member
from expressions.functions import MATH, FunctionRegistry, Namespace, call_method
from expressions.lexer import Segment, Slot, tokenize
from expressions.parser import parse
from expressions.security import SecurityLevel, check_deny_list, check_policy, coerce_level
from expressions.values import (
    UNDEFINED, compare, is_nullish, is_number, loose_equals, normalize_number,
    js_typeof, render, strict_equals, to_number, truthy, type_name,
)

logger = structlog.get_logger()

PATH_RE = re.compile(r'^[a-zA-Z_$][a-zA-Z0-9_$]*(\.[a-zA-Z_$][a-zA-Z0-9_$]*)*$')


@dataclass
class EvalResult:
    value: Any = UNDEFINED
    error: Optional[ExpressionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def blocked(self) -> bool:
        return isinstance(self.error, ExpressionBlocked)


def find_closing_braces(text: str, start: int) -> int:
    """Index of the `}}` matching the `{{` at `start`, or -1."""
    depth = 0
    i = start
    while i < len(text) - 1:
        pair = text[i:i + 2]
        if pair == "{{":
            depth += 1
            i += 2
        elif pair == "}}":
            depth -= 1
            if depth == 0:
                return i
            i += 2
        else:
            i += 1
    return -1


class ExpressionEvaluator:
    """Evaluates expressions and templates against a VariableEnvironment."""

    def __init__(
        self,
        security_level: str | SecurityLevel = SecurityLevel.STANDARD,
        functions: Optional[dict[str, Callable]] = None,
        max_interpolation_passes: int = 10,
    ):
        self.security_level = coerce_level(security_level)
        self.functions = FunctionRegistry(functions)
        self.max_interpolation_passes = max_interpolation_passes

    # ── public API ────────────────────────────────────

    def evaluate(
        self,
        expression: Any,
        env: VariableEnvironment,
        security_level: str | SecurityLevel | None = None,
    ) -> EvalResult:
        if not isinstance(expression, str):
            return EvalResult(value=expression)
        level = coerce_level(security_level) if security_level is not None else self.security_level
        try:
            check_deny_list(expression)
            segments = self._substitute(expression, env, expression, 0)
            tree = parse(tokenize(segments, expression), expression)
            check_policy(tree, level, expression)
            value = _TreeWalker(self.functions, env, expression).visit(tree)
            return EvalResult(value=value)
        except ExpressionBlocked as e:
            logger.warning("expression_blocked", expression=expression, reason=str(e))
            return EvalResult(error=e)
        except ExpressionError as e:
            logger.debug("expression_failed", expression=expression, reason=e.reason.value, error=str(e))
            return EvalResult(error=e)
        except RecursionError:
            return EvalResult(error=ExpressionSyntaxError("Expression nested too deeply", expression))

    def evaluate_condition(self, expression: Any, env: VariableEnvironment) -> bool:
        if isinstance(expression, bool):
            return expression
        if isinstance(expression, str) and not expression.strip():
            return False
        result = self.evaluate(expression, env)
        if not result.ok:
            logger.warning(
                "condition_evaluation_failed",
                expression=expression, reason=result.error.reason.value, error=str(result.error),
            )
            return False
        return truthy(result.value)

    def interpolate(self, template: Any, env: VariableEnvironment) -> str:
        """Replace each `{{...}}` in `template` with its rendered value."""
        if template is None:
            return ""
        if not isinstance(template, str):
            return render(template)
        out: list[str] = []
        i = 0
        while i < len(template):
            start = template.find("{{", i)
            if start < 0:
                out.append(template[i:])
                break
            end = find_closing_braces(template, start)
            if end < 0:
                out.append(template[i:])
                break
            out.append(template[i:start])
            out.append(self._render_placeholder(template[start:end + 2], env))
            i = end + 2
        return "".join(out)

    def resolve_value(self, value: Any, env: VariableEnvironment) -> Any:
        """
        Typed resolution used by SET, RETURN and tool arguments.

        A string that is exactly one `{{expr}}` yields the expression's typed
        value; text mixing literals and placeholders is interpolated; plain
        text is returned as-is; lists and dicts are resolved element-wise.
        """
        if isinstance(value, dict):
            return {k: self.resolve_value(v, env) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v, env) for v in value]
        if not isinstance(value, str):
            return value
        stripped = value.strip()
        if stripped.startswith("{{") and find_closing_braces(stripped, 0) == len(stripped) - 2:
            result = self.evaluate(stripped, env)
            if result.ok:
                return result.value
            return self._placeholder(stripped[2:-2].strip(), result)
        if "{{" in value:
            return self.interpolate(value, env)
        return value

    # ── internals ─────────────────────────────────────

    def _render_placeholder(self, placeholder: str, env: VariableEnvironment) -> str:
        result = self.evaluate(placeholder, env)
        inner = placeholder[2:-2].strip()
        if not result.ok:
            return self._placeholder(inner, result)
        if result.value is UNDEFINED:
            return f"[undefined: {inner}]"
        return render(result.value)

    @staticmethod
    def _placeholder(inner: str, result: EvalResult) -> str:
        if result.blocked:
            return f"[blocked: {inner}]"
        return f"[error: {inner}]"

    def _substitute(self, text: str, env: VariableEnvironment, expression: str, depth: int) -> list[Segment]:
        segments: list[Segment] = []
        buffer: list[str] = []

        def flush():
            if buffer:
                segments.append("".join(buffer))
                buffer.clear()

        i = 0
        while i < len(text):
            if text.startswith("{{", i):
                end = find_closing_braces(text, i)
                if end < 0:
                    raise ExpressionSyntaxError("Unclosed '{{'", expression, i)
                inner = text[i + 2:end].strip()
                flush()
                if PATH_RE.match(inner):
                    segments.append(Slot(env.resolve_path(inner), inner))
                else:
                    if depth >= self.max_interpolation_passes:
                        raise ExpressionSyntaxError("Placeholders nested too deeply", expression, i)
                    segments.append("(")
                    segments.extend(self._substitute(inner, env, expression, depth + 1))
                    segments.append(")")
                i = end + 2
            elif text.startswith("}}", i):
                raise ExpressionSyntaxError("Unmatched '}}'", expression, i)
            else:
                buffer.append(text[i])
                i += 1
        flush()
        return segments


# ══════════════════════════════════════════════════════════════
#  Tree walker
# ══════════════════════════════════════════════════════════════

class _TreeWalker:

    def __init__(self, functions: FunctionRegistry, env: VariableEnvironment, expression: str):
        self.functions = functions
        self.env = env
        self.expression = expression

    def visit(self, node: Node) -> Any:
        method = getattr(self, f"_visit_{type(node).__name__}")
        return method(node)

    def _error(self, message: str, reason: EvalReason):
        raise ExpressionRuntimeError(message, reason, self.expression)

    # ── leaves ────────────────────────────────────────

    def _visit_Literal(self, node: Literal) -> Any:
        return node.value

    def _visit_SlotRef(self, node: SlotRef) -> Any:
        return node.value

    def _visit_Identifier(self, node: Identifier) -> Any:
        # bare identifiers only appear inside unwrapped {{ }} groups or raw
        # conditions, and resolve through the same slot lookup
        if node.name == MATH.name:
            return MATH
        return self.env.resolve_path(node.name)

    def _visit_ArrayLiteral(self, node: ArrayLiteral) -> list:
        return [self.visit(element) for element in node.elements]

    # ── access ────────────────────────────────────────

    def _visit_Member(self, node: Member) -> Any:
        obj = self.visit(node.obj)
        if isinstance(obj, Namespace):
            return obj.constants.get(node.name, UNDEFINED)
        if is_nullish(obj):
            self._error(
                f"Cannot read property '{node.name}' of {type_name(obj)}", EvalReason.UNDEFINED_ACCESS,
            )
        return get_member(obj, node.name)

    def _visit_Index(self, node: Index) -> Any:
        obj = self.visit(node.obj)
        key = self.visit(node.index)
        if is_nullish(obj):
            self._error(
                f"Cannot read index '{render(key)}' of {type_name(obj)}", EvalReason.UNDEFINED_ACCESS,
            )
        if isinstance(obj, (list, str)) and is_number(key):
            if isinstance(key, float) and not key.is_integer():
                return UNDEFINED
            index = int(key)
            return obj[index] if 0 <= index < len(obj) else UNDEFINED
        if isinstance(obj, dict):
            return obj.get(render(key), UNDEFINED)
        if isinstance(key, str):
            return get_member(obj, key)
        return UNDEFINED

    def _visit_Call(self, node: Call) -> Any:
        callee = node.callee
        if isinstance(callee, Identifier):
            args = [self.visit(arg) for arg in node.args]
            return self.functions.call(callee.name, args, self.expression)
        if isinstance(callee, Member):
            receiver = self.visit(callee.obj)
            args = [self.visit(arg) for arg in node.args]
            if isinstance(receiver, Namespace):
                return self.functions.call_namespace(receiver, callee.name, args, self.expression)
            return call_method(receiver, callee.name, args, self.expression)
        raise ExpressionBlocked("Only registered functions and whitelisted methods can be called", self.expression)

    # ── operators ─────────────────────────────────────

    def _visit_Unary(self, node: Unary) -> Any:
        operand = self.visit(node.operand)
        if node.op == "!":
            return not truthy(operand)
        if node.op == "typeof":
            return js_typeof(operand)
        number = to_number(operand, self.expression)
        return -number if node.op == "-" else number

    def _visit_Binary(self, node: Binary) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        op = node.op

        if op == "===":
            return strict_equals(left, right)
        if op == "!==":
            return not strict_equals(left, right)
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        if op in ("<", ">", "<=", ">="):
            return compare(op, left, right, self.expression)

        if op == "+" and isinstance(left, str) and isinstance(right, str):
            return left + right

        a = to_number(left, self.expression)
        b = to_number(right, self.expression)
        if op == "+":
            return normalize_number(a + b)
        if op == "-":
            return normalize_number(a - b)
        if op == "*":
            return normalize_number(a * b)
        if b == 0:
            self._error(f"{'Division' if op == '/' else 'Modulo'} by zero", EvalReason.ARITHMETIC)
        if op == "/":
            return normalize_number(a / b)
        return normalize_number(math.fmod(a, b))

    def _visit_Logical(self, node: Logical) -> Any:
        left = self.visit(node.left)
        if node.op == "&&":
            return self.visit(node.right) if truthy(left) else left
        return left if truthy(left) else self.visit(node.right)

    def _visit_Conditional(self, node: Conditional) -> Any:
        if truthy(self.visit(node.test)):
            return self.visit(node.consequent)
        return self.visit(node.alternate)
