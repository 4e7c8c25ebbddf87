"""
Engine error hierarchy.

Every failure the engine can name has a type here so callers can route on
it: expression errors degrade to placeholders, tool errors feed onFail
selection, and flow errors trigger recovery in the controller.

    EngineError
    ├── ExpressionError
    │   ├── ExpressionBlocked
    │   ├── ExpressionSyntaxError
    │   └── ExpressionRuntimeError
    ├── ToolError
    │   ├── ToolNotFound
    │   ├── ToolValidationError
    │   ├── ToolTransportError
    │   └── ToolRateLimited
    └── FlowError
        ├── FlowNotFound
        ├── BranchNotMatched
        ├── CircularFlowReference
        ├── FlowDepthExceeded
        └── FlowStepLimitExceeded
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class EngineError(Exception):
    """Base exception for all engine operations."""

    code = "engine_error"

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  EXPRESSIONS
# ══════════════════════════════════════════════════════════════

class EvalReason(str, Enum):
    """Why an expression could not produce a value."""
    SYNTAX = "syntax"
    BLOCKED = "blocked"
    UNDEFINED_ACCESS = "undefined_access"
    TYPE_MISMATCH = "type_mismatch"
    ARITHMETIC = "arithmetic"
    FUNCTION_ERROR = "function_error"


class ExpressionError(EngineError):
    code = "expression_error"

    def __init__(self, message: str, reason: EvalReason, expression: str = ""):
        self.reason = reason
        self.expression = expression
        super().__init__(message)


class ExpressionBlocked(ExpressionError):
    code = "expression_blocked"

    def __init__(self, message: str, expression: str = ""):
        super().__init__(message, EvalReason.BLOCKED, expression)


class ExpressionSyntaxError(ExpressionError):
    code = "expression_syntax"

    def __init__(self, message: str, expression: str = "", position: int = -1):
        self.position = position
        super().__init__(message, EvalReason.SYNTAX, expression)


class ExpressionRuntimeError(ExpressionError):
    code = "expression_runtime"


# ══════════════════════════════════════════════════════════════
#  TOOLS
# ══════════════════════════════════════════════════════════════

class ToolError(EngineError):
    code = "tool_error"

    def __init__(self, message: str, tool_id: str = "", retryable: bool = False):
        self.tool_id = tool_id
        super().__init__(message, retryable=retryable)


class ToolNotFound(ToolError):
    code = "tool_not_found"

    def __init__(self, tool_id: str):
        super().__init__(f"Tool '{tool_id}' is not registered", tool_id)


class ToolValidationError(ToolError):
    code = "tool_validation"

    def __init__(self, tool_id: str, errors: list[str]):
        self.errors = errors
        super().__init__(
            f"Invalid arguments for tool '{tool_id}': {'; '.join(errors)}", tool_id,
        )


class ToolTransportError(ToolError):
    """Timeout, network failure or non-2xx HTTP response."""
    code = "tool_transport"

    def __init__(
        self,
        message: str,
        tool_id: str = "",
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.body = body
        retryable = status_code is None or status_code >= 500 or status_code in (408, 409, 429)
        super().__init__(message, tool_id, retryable=retryable)


class ToolRateLimited(ToolError):
    code = "tool_rate_limited"

    def __init__(self, tool_id: str, limit: int = 0, window_ms: int = 0):
        self.limit = limit
        self.window_ms = window_ms
        super().__init__(
            f"Rate limit exceeded for tool '{tool_id}' ({limit} requests per {window_ms}ms)",
            tool_id,
        )


# ══════════════════════════════════════════════════════════════
#  FLOWS
# ══════════════════════════════════════════════════════════════

class FlowError(EngineError):
    code = "flow_error"

    def __init__(self, message: str, flow_name: str = ""):
        self.flow_name = flow_name
        super().__init__(message)


class FlowNotFound(FlowError):
    code = "flow_not_found"

    def __init__(self, flow_name: str):
        super().__init__(f"Flow '{flow_name}' is not registered", flow_name)


class BranchNotMatched(FlowError):
    code = "branch_not_matched"

    def __init__(self, step_type: str, value: Any, flow_name: str = ""):
        self.step_type = step_type
        self.value = value
        super().__init__(
            f"{step_type} step: no branch found for value '{value}' and no default branch defined",
            flow_name,
        )


class CircularFlowReference(FlowError):
    code = "circular_flow_reference"

    def __init__(self, flow_name: str, chain: list[str]):
        self.chain = chain
        super().__init__(
            f"Circular flow reference: {' -> '.join(chain + [flow_name])}", flow_name,
        )


class FlowDepthExceeded(FlowError):
    code = "flow_depth_exceeded"

    def __init__(self, flow_name: str, depth: int):
        self.depth = depth
        super().__init__(f"Maximum flow stack depth {depth} exceeded starting '{flow_name}'", flow_name)


class FlowStepLimitExceeded(FlowError):
    code = "flow_step_limit"

    def __init__(self, flow_name: str, limit: int):
        self.limit = limit
        super().__init__(f"Flow '{flow_name}' ran more than {limit} steps in one turn", flow_name)
