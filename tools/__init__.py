"""
Tools — declarative capabilities that CALL-TOOL steps invoke.

Definitions live in a ToolRegistry; the ToolInvoker validates arguments,
applies per-tool rate limits, dispatches to a local capability, an HTTP
endpoint or a canned mock response, and reshapes the payload with the
response-mapping DSL.
"""
from tools.invoker import ToolInvoker, classify_failure, failure_text
from tools.mapping import ResponseMapper
from tools.models import FailureClass, ToolDefinition, ToolResult
from tools.registry import ToolRegistry

__all__ = [
    "ToolInvoker",
    "ToolRegistry",
    "ToolDefinition",
    "ToolResult",
    "ResponseMapper",
    "FailureClass",
    "classify_failure",
    "failure_text",
]
