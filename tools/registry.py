"""
Tool Registry — Declarative catalog of the tools flows can call.

CALL-TOOL steps reference tools by id. The registry parses tool
definitions from config (snake_case or the camelCase keys used by
existing tool files: `pathParams`, `queryParams`, `contentType`,
`customQuery`, `responseMapping`, `mockResponse`, `apiKey`,
`basicAuth`, `apiKeyHeader`, `hashAuth`, `rateLimit`, ...) and answers lookups for
the invoker, the interpreter (argument inference) and flow validation.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from tools.models import (
    AuthType, HashAuth, ImplementationType, RateLimit, ToolAuth, ToolDefinition,
    ToolImplementation, ToolParameters, ToolSecurity,
)

logger = structlog.get_logger()

_IMPLEMENTATION_ALIASES = {
    "contentType": "content_type",
    "pathParams": "path_params",
    "queryParams": "query_params",
    "customQuery": "custom_query",
    "responseMapping": "response_mapping",
    "timeout": "timeout_ms",
    "timeoutMs": "timeout_ms",
    "mockResponse": "mock_response",
    "hashAuth": "hash_auth",
}

_SECURITY_ALIASES = {
    "requiresAuth": "requires_auth",
    "auditLevel": "audit_level",
    "rateLimit": "rate_limit",
}


class ToolRegistry:
    """Central catalog of tool definitions, keyed by id."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}

    # ── Registration ──────────────────────────────────

    def register(self, tool: ToolDefinition | dict[str, Any]) -> ToolDefinition:
        """Register a tool definition (model or raw config dict)."""
        if isinstance(tool, dict):
            tool = self.parse_tool(tool)
        if tool.id in self._tools:
            logger.warning("tool_redefined", tool_id=tool.id)
        self._tools[tool.id] = tool
        logger.info("tool_registered",
                    tool_id=tool.id,
                    implementation=tool.implementation.type.value)
        return tool

    def register_from_config(self, config: list[ToolDefinition | dict[str, Any]]):
        for raw in config:
            self.register(raw)
        logger.info("tools_loaded", count=len(config))

    # ── Lookup ────────────────────────────────────────

    def get(self, tool_id: str) -> Optional[ToolDefinition]:
        return self._tools.get(tool_id)

    def list_all(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    @property
    def ids(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # ── Parsing ───────────────────────────────────────

    @classmethod
    def parse_tool(cls, raw: dict[str, Any]) -> ToolDefinition:
        """Parse a raw tool dict from YAML or JSON."""
        tool_id = str(raw.get("id") or raw.get("name") or "")
        if not tool_id:
            raise ValueError("Tool id is required")

        implementation = dict(raw.get("implementation") or {})
        auth = cls._parse_auth(raw, implementation)

        return ToolDefinition(
            id=tool_id,
            name=raw.get("name", ""),
            description=raw.get("description", ""),
            parameters=ToolParameters(**(raw.get("parameters") or {})),
            implementation=cls._parse_implementation(implementation),
            security=cls._parse_security(raw.get("security") or {}),
            api_key=raw.get("apiKey") or raw.get("api_key") or "",
            auth=auth,
            hash_auth=cls._parse_hash_auth(raw.get("hashAuth") or raw.get("hash_auth")),
        )

    @staticmethod
    def _parse_implementation(raw: dict[str, Any]) -> ToolImplementation:
        data: dict[str, Any] = {}
        for key, value in raw.items():
            data[_IMPLEMENTATION_ALIASES.get(key, key)] = value
        data["type"] = ImplementationType(str(data.get("type", "local")).lower())
        if "method" in data:
            data["method"] = str(data["method"]).upper()
        data["hash_auth"] = ToolRegistry._parse_hash_auth(data.get("hash_auth"))
        known = set(ToolImplementation.model_fields)
        return ToolImplementation(**{k: v for k, v in data.items() if k in known})

    @staticmethod
    def _parse_hash_auth(raw: Any) -> Optional[HashAuth]:
        if not isinstance(raw, dict):
            return None
        data = {("key_name" if k == "keyName" else k): v for k, v in raw.items()}
        if not data.get("secret") or not data.get("fields"):
            raise ValueError("Hash authentication requires secret and fields configuration")
        return HashAuth(**{k: v for k, v in data.items() if k in HashAuth.model_fields})

    @staticmethod
    def _parse_security(raw: dict[str, Any]) -> ToolSecurity:
        data = {_SECURITY_ALIASES.get(k, k): v for k, v in raw.items()}
        rate = data.get("rate_limit")
        if isinstance(rate, dict):
            data["rate_limit"] = RateLimit(**rate)
        known = set(ToolSecurity.model_fields)
        return ToolSecurity(**{k: v for k, v in data.items() if k in known})

    @staticmethod
    def _parse_auth(raw: dict[str, Any], implementation: dict[str, Any]) -> Optional[ToolAuth]:
        """Auth may sit on the tool or inside the implementation."""
        explicit = raw.get("auth") or implementation.pop("authentication", None) or implementation.pop("auth", None)
        if isinstance(explicit, dict):
            data = dict(explicit)
            data["type"] = AuthType(str(data.get("type", "bearer")).lower().replace("-", "_"))
            if "headerName" in data:
                data["header_name"] = data.pop("headerName")
            if "apiKey" in data:
                data["api_key"] = data.pop("apiKey")
            return ToolAuth(**{k: v for k, v in data.items() if k in ToolAuth.model_fields})

        basic = raw.get("basicAuth") or implementation.pop("basicAuth", None)
        if isinstance(basic, dict):
            return ToolAuth(type=AuthType.BASIC,
                            username=basic.get("username", ""),
                            password=basic.get("password", ""))

        header = raw.get("apiKeyHeader") or implementation.pop("apiKeyHeader", None)
        if isinstance(header, dict):
            return ToolAuth(type=AuthType.API_KEY_HEADER,
                            header_name=header.get("name") or header.get("headerName") or "X-API-Key",
                            api_key=header.get("value") or header.get("key") or "")
        return None
