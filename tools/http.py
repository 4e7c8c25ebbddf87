"""
HTTP tool dispatch.

Turns a validated invocation into one HTTP request:

  URL      `{{var}}` templates interpolated from the flow environment,
           then `{param}` placeholders filled (percent-encoded) from args.
           Args consumed by the path are not sent again.
  Query    GET/HEAD send every remaining arg in the query string; other
           methods send only `query_params` there. `custom_query` is
           appended verbatim.
  Body     Non-GET/HEAD with args left: JSON, form-urlencoded or raw text
           per `content_type`.
  Headers  User-Agent, Content-Type (non-GET/HEAD), auth, declared
           headers (with `{{var}}` interpolation).
  Signing  `hash_auth` HMACs the listed arg fields joined with "|" and
           sends the digest as a header or as an extra arg.

Transport retries use tenacity with exponential backoff on timeouts,
connection errors, 5xx and 429. Other 4xx responses fail immediately.
"""
from __future__ import annotations

import base64
import hmac
import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote, urlencode

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import ToolConfig
from expressions.environment import VariableEnvironment
from expressions.evaluator import ExpressionEvaluator
from expressions.values import render
from models.errors import ToolTransportError, ToolValidationError
from tools.models import AuthType, ToolDefinition
from utils.conditions import get_nested_value

logger = structlog.get_logger()

_PLACEHOLDER = re.compile(r'\{([^{}]+)\}')
_NO_BODY_METHODS = ("GET", "HEAD")


def _text(value: Any) -> str:
    return "" if value is None else render(value)


@dataclass
class PreparedRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    content: Optional[str] = None


def _should_retry(error: BaseException) -> bool:
    if not isinstance(error, ToolTransportError):
        return False
    status = error.status_code
    return status is None or status >= 500 or status == 429


class HttpDispatcher:
    """Builds and sends HTTP tool requests through a shared httpx client."""

    def __init__(
        self,
        config: Optional[ToolConfig] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or ToolConfig()
        self.evaluator = evaluator or ExpressionEvaluator()
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(transport=self.transport)
        return self.client

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()

    # ── Request construction ──────────────────────────

    def build_request(
        self,
        tool: ToolDefinition,
        args: dict[str, Any],
        env: Optional[VariableEnvironment] = None,
    ) -> PreparedRequest:
        impl = tool.implementation
        method = (impl.method or "GET").upper()
        remaining = {k: v for k, v in args.items()}
        signature_header = self._sign(tool, remaining)

        url = impl.url
        if "{{" in url and env is not None:
            url = self.evaluator.interpolate(url, env)
        url = self._fill_path(tool, url, remaining)

        pairs: list[tuple[str, str]] = []
        if method in _NO_BODY_METHODS:
            for key in list(remaining):
                pairs.extend(self._query_pairs(key, remaining.pop(key)))
        else:
            for key in impl.query_params:
                if key in remaining:
                    pairs.extend(self._query_pairs(key, remaining.pop(key)))
        if pairs:
            url += ("&" if "?" in url else "?") + urlencode(pairs)
        if impl.custom_query:
            url += ("&" if "?" in url else "?") + impl.custom_query.lstrip("?&")

        headers = {"User-Agent": self.config.user_agent}
        content_type = impl.content_type or "application/json"
        if method not in _NO_BODY_METHODS:
            headers["Content-Type"] = content_type
        headers.update(self._auth_headers(tool))
        if signature_header:
            headers.update(signature_header)
        for name, value in impl.headers.items():
            if "{{" in str(value) and env is not None:
                value = self.evaluator.interpolate(str(value), env)
            headers[name] = str(value)

        content = None
        if method not in _NO_BODY_METHODS and remaining:
            content = self._encode_body(content_type, remaining)

        return PreparedRequest(method=method, url=url, headers=headers, content=content)

    def _fill_path(self, tool: ToolDefinition, url: str, args: dict[str, Any]) -> str:
        for name in tool.implementation.path_params:
            if args.get(name) is not None:
                url = url.replace("{" + name + "}", quote(render(args.pop(name)), safe=""))
            else:
                logger.warning("tool_path_param_missing", tool_id=tool.id, param=name)

        def replacer(match):
            name = match.group(1)
            if args.get(name) is None:
                raise ToolValidationError(tool.id, [f"Missing required path parameter: {name}"])
            return quote(render(args.pop(name)), safe="")

        return _PLACEHOLDER.sub(replacer, url)

    @staticmethod
    def _query_pairs(key: str, value: Any) -> list[tuple[str, str]]:
        if value is None:
            return []
        if isinstance(value, list):
            return [(key, render(v)) for v in value]
        return [(key, render(value))]

    @staticmethod
    def _encode_body(content_type: str, args: dict[str, Any]) -> str:
        kind = content_type.split(";")[0].strip().lower()
        if kind == "application/x-www-form-urlencoded":
            return urlencode([(k, render(v)) for k, v in args.items() if v is not None])
        if kind in ("text/plain", "text/xml", "application/xml"):
            raw = args.get("body") or args.get("data")
            return str(raw) if raw else json.dumps(args, ensure_ascii=False)
        return json.dumps(args, ensure_ascii=False)

    @staticmethod
    def _auth_headers(tool: ToolDefinition) -> dict[str, str]:
        headers: dict[str, str] = {}
        if tool.api_key:
            headers["Authorization"] = f"Bearer {tool.api_key}"
        auth = tool.auth
        if auth is None:
            return headers
        if auth.type == AuthType.BEARER:
            token = auth.token or auth.api_key
            if token:
                headers["Authorization"] = f"Bearer {token}"
        elif auth.type == AuthType.BASIC:
            credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
            headers["Authorization"] = f"Basic {credentials}"
        elif auth.type == AuthType.API_KEY_HEADER:
            headers[auth.header_name] = auth.api_key
        return headers

    @staticmethod
    def _sign(tool: ToolDefinition, args: dict[str, Any]) -> dict[str, str]:
        """HMAC the configured fields; returns the header to add, if any."""
        config = tool.hash_auth or tool.implementation.hash_auth
        if config is None:
            return {}
        raw = "|".join(_text(get_nested_value(args, field)) for field in config.fields)
        try:
            digest = hmac.new(config.secret.encode(), raw.encode(), config.algorithm.lower()).digest()
        except ValueError as e:
            raise ToolValidationError(tool.id, [f"Unsupported hash algorithm: {config.algorithm}"]) from e
        signature = base64.b64encode(digest).decode() if config.encoding == "base64" else digest.hex()
        if config.location == "header":
            return {config.key_name: signature}
        args[config.key_name] = signature
        return {}

    # ── Sending ───────────────────────────────────────

    async def send(
        self,
        tool: ToolDefinition,
        args: dict[str, Any],
        env: Optional[VariableEnvironment] = None,
    ) -> Any:
        """Send the request and return the decoded payload (unmapped)."""
        request = self.build_request(tool, args, env)
        impl = tool.implementation
        timeout_ms = impl.timeout_ms or self.config.http_timeout_ms
        retries = impl.retries if impl.retries is not None else self.config.http_retries

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(0, retries) + 1),
            wait=wait_exponential(multiplier=self.config.backoff_multiplier,
                                  max=self.config.backoff_max_seconds),
            retry=retry_if_exception(_should_retry),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send_once(tool, request, timeout_ms,
                                                 attempt.retry_state.attempt_number, retries + 1)
        except ToolTransportError as e:
            logger.warning("http_tool_failed", tool_id=tool.id, url=request.url,
                           status=e.status_code, error=str(e))
            raise ToolTransportError(
                f"Failed to call HTTP tool {tool.display_name}: {e}",
                tool.id, status_code=e.status_code, body=e.body,
            ) from e

    async def _send_once(
        self,
        tool: ToolDefinition,
        request: PreparedRequest,
        timeout_ms: int,
        attempt: int,
        attempts: int,
    ) -> Any:
        client = await self._get_client()
        logger.info("http_tool_request", tool_id=tool.id, method=request.method,
                    url=request.url, attempt=attempt, attempts=attempts)
        try:
            response = await client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.content,
                timeout=timeout_ms / 1000.0,
            )
        except httpx.TimeoutException as e:
            raise ToolTransportError(f"Request timeout after {timeout_ms}ms", tool.id) from e
        except httpx.HTTPError as e:
            raise ToolTransportError(f"Request failed: {e}", tool.id) from e

        logger.info("http_tool_response", tool_id=tool.id, status=response.status_code)
        if response.is_error:
            raise ToolTransportError(
                f"HTTP {response.status_code} {response.reason_phrase}: {response.text}",
                tool.id, status_code=response.status_code, body=response.text,
            )
        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            return response.json()
        if "text/" in content_type or "xml" in content_type:
            return response.text
        try:
            return response.json()
        except ValueError:
            return response.text
