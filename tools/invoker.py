"""
Tool Invoker — validate, rate-limit, dispatch, map.

    invoke(tool_id, raw_args)
      1. Resolve the definition               ToolNotFound
      2. Validate + coerce arguments          ToolValidationError
      3. Sliding-window rate limit            ToolRateLimited
      4. Dispatch local / http / mock         ToolTransportError, ToolError
      5. Apply the declarative response mapping

`try_invoke` wraps the same pipeline and returns a ToolResult instead of
raising. `classify_failure` tells CALL-TOOL whether a failure is worth
retrying.
"""
from __future__ import annotations

import asyncio
import copy
import inspect
import time
from typing import Any, Callable, Optional

import httpx
import structlog

from config.settings import ToolConfig
from expressions.environment import VariableEnvironment
from expressions.evaluator import ExpressionEvaluator
from models.errors import (
    ToolError, ToolNotFound, ToolRateLimited, ToolTransportError, ToolValidationError,
)
from models.schemas import sanitize_for_log
from tools.http import HttpDispatcher
from tools.mapping import ResponseMapper
from tools.models import FailureClass, ImplementationType, ToolDefinition, ToolResult
from tools.rate_limit import SlidingWindowRateLimiter
from tools.registry import ToolRegistry
from tools.schema import validate_arguments

logger = structlog.get_logger()

_RECOVERABLE_STATUS = (408, 409)


def classify_failure(error: BaseException) -> FailureClass:
    """Deterministic mapping from a tool failure to its handling class."""
    if isinstance(error, (ToolValidationError, ToolRateLimited, ToolNotFound)):
        return FailureClass.UNRECOVERABLE
    if isinstance(error, ToolTransportError):
        status = error.status_code
        if status is None or status >= 500 or status in _RECOVERABLE_STATUS:
            return FailureClass.RECOVERABLE
        return FailureClass.UNRECOVERABLE
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return FailureClass.RECOVERABLE
    cause = error.__cause__
    if isinstance(cause, (asyncio.TimeoutError, ConnectionError)):
        return FailureClass.RECOVERABLE
    return FailureClass.GENERIC


def failure_text(error: BaseException) -> str:
    """The innermost "Failed ..." clause of a wrapped error message."""
    message = str(error)
    index = message.rfind("Failed ")
    return message[index:] if index >= 0 else message


class ToolInvoker:

    def __init__(
        self,
        registry: ToolRegistry,
        capabilities: Optional[dict[str, Callable]] = None,
        config: Optional[ToolConfig] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self.registry = registry
        self.capabilities = dict(capabilities or {})
        self.config = config or ToolConfig()
        self.mapper = ResponseMapper()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.http = HttpDispatcher(self.config, evaluator, http_transport)

    def register_capability(self, name: str, fn: Callable):
        self.capabilities[name] = fn

    async def close(self):
        await self.http.close()

    # ── Invocation ────────────────────────────────────

    async def invoke(
        self,
        tool_id: str,
        raw_args: Optional[dict[str, Any]] = None,
        env: Optional[VariableEnvironment] = None,
        scope: str = "",
    ) -> Any:
        tool = self.registry.get(tool_id)
        if tool is None:
            raise ToolNotFound(tool_id)

        args = validate_arguments(tool, raw_args or {})

        if tool.security.rate_limit is not None:
            left = await self.rate_limiter.acquire(tool.id, tool.security.rate_limit, scope)
            logger.debug("tool_rate_limit_checked", tool_id=tool.id, scope=scope, remaining=left)

        if tool.security.audit_level == "high":
            logger.info("tool_invocation_audit", tool_id=tool.id, scope=scope, args=sanitize_for_log(args))

        payload = await self._dispatch(tool, args, env)
        return self._map(tool, payload, args)

    async def try_invoke(
        self,
        tool_id: str,
        raw_args: Optional[dict[str, Any]] = None,
        env: Optional[VariableEnvironment] = None,
        scope: str = "",
    ) -> ToolResult:
        started = time.monotonic()
        try:
            value = await self.invoke(tool_id, raw_args, env, scope)
        except Exception as e:
            logger.warning("tool_invocation_failed", tool_id=tool_id, error=str(e),
                           error_type=type(e).__name__)
            return ToolResult(
                tool_id=tool_id,
                ok=False,
                error=failure_text(e),
                error_code=getattr(e, "code", "error"),
                failure_class=classify_failure(e),
                duration_ms=(time.monotonic() - started) * 1000,
            )
        return ToolResult(tool_id=tool_id, value=value, duration_ms=(time.monotonic() - started) * 1000)

    # ── Dispatch ──────────────────────────────────────

    async def _dispatch(self, tool: ToolDefinition, args: dict[str, Any], env: Optional[VariableEnvironment]) -> Any:
        kind = tool.implementation.type
        if kind == ImplementationType.MOCK:
            return self._mock(tool, args)
        if kind == ImplementationType.HTTP:
            return await self.http.send(tool, args, env)
        return await self._call_local(tool, args)

    @staticmethod
    def _mock(tool: ToolDefinition, args: dict[str, Any]) -> Any:
        data = copy.deepcopy(tool.implementation.mock_response)
        variant = args.get("testType")
        if isinstance(data, dict) and variant and variant in data:
            data = data[variant]
        logger.info("mock_tool_called", tool_id=tool.id)
        return data

    async def _call_local(self, tool: ToolDefinition, args: dict[str, Any]) -> Any:
        impl = tool.implementation
        name = impl.function or tool.id
        fn = self.capabilities.get(name)
        if fn is None:
            raise ToolError(f"Failed to call tool {tool.display_name}: capability '{name}' is not registered",
                            tool.id)

        timeout_ms = impl.timeout_ms or self.config.local_timeout_ms
        attempts = max(0, impl.retries or 0) + 1
        for attempt in range(1, attempts + 1):
            try:
                result = fn(dict(args))
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(result, timeout=timeout_ms / 1000.0)
                return result
            except asyncio.TimeoutError as e:
                error: Exception = ToolTransportError(
                    f"Failed to call tool {tool.display_name}: Tool execution timeout after {timeout_ms}ms",
                    tool.id,
                )
                error.__cause__ = e
            except ToolError as e:
                error = e
            except Exception as e:
                error = ToolError(f"Failed to call tool {tool.display_name}: {e}", tool.id)
                error.__cause__ = e
            if attempt < attempts:
                logger.info("local_tool_retry", tool_id=tool.id, attempt=attempt, error=str(error))
                continue
            raise error

    def _map(self, tool: ToolDefinition, payload: Any, args: dict[str, Any]) -> Any:
        mapping = tool.implementation.response_mapping
        if not mapping:
            return payload
        try:
            return self.mapper.apply(mapping, payload, args)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error("response_mapping_failed",
                         tool_id=tool.id,
                         mapping_type=mapping.get("type", "path") if isinstance(mapping, dict) else "path",
                         payload_type=type(payload).__name__,
                         error=str(e))
            return payload
