"""
Tool Definition Models — what a flow can call and how.

A tool is declared once (id, parameter schema, implementation) and
invoked by CALL-TOOL steps. Implementations come in three kinds:

  - local  A host capability looked up by name (sync or async callable)
  - http   A declarative HTTP request built from the invocation args
  - mock   A canned response, useful for demos and tests

Either way the raw payload can be reshaped by a declarative response
mapping before it is stored in the step's variable.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ImplementationType(str, Enum):
    LOCAL = "local"
    HTTP = "http"
    MOCK = "mock"


class AuthType(str, Enum):
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY_HEADER = "api_key_header"


class FailureClass(str, Enum):
    """How a tool failure is handled by CALL-TOOL."""
    RECOVERABLE = "recoverable"        # timeouts, 5xx: retry, then apologise
    UNRECOVERABLE = "unrecoverable"    # validation, 4xx, rate limit: stop immediately
    GENERIC = "generic"                # anything else: one retry


# ──────────────────────────────────────────────────────────────
#  Definition parts
# ──────────────────────────────────────────────────────────────

class ToolParameters(BaseModel):
    """JSON-Schema-like description of the tool's arguments."""
    type: str = "object"
    properties: dict[str, dict[str, Any]] = {}    # name → {type, pattern, minimum, enum, default, ...}
    required: list[str] = []


class ToolAuth(BaseModel):
    type: AuthType = AuthType.BEARER
    token: str = ""
    username: str = ""
    password: str = ""
    header_name: str = "X-API-Key"
    api_key: str = ""


class HashAuth(BaseModel):
    """HMAC signature over selected argument fields, joined with "|"."""
    secret: str = ""
    fields: list[str] = []                        # dotted paths into the args
    algorithm: str = "sha256"
    encoding: str = "hex"                         # hex | base64
    location: str = "body"                        # header, or added to the args
    key_name: str = "signature"


class ToolImplementation(BaseModel):
    type: ImplementationType = ImplementationType.LOCAL
    function: str = ""                            # local: capability name
    url: str = ""                                 # http: may contain {param} and {{var}}
    method: str = "GET"
    content_type: str = "application/json"
    path_params: list[str] = []
    query_params: list[str] = []                  # non-GET: args sent in the query string
    headers: dict[str, str] = {}                  # values may contain {{var}}
    custom_query: str = ""                        # appended verbatim to the query string
    response_mapping: Any = None
    timeout_ms: Optional[int] = None
    retries: Optional[int] = None                 # transport-level retries
    mock_response: Any = None
    hash_auth: Optional[HashAuth] = None


class RateLimit(BaseModel):
    requests: int
    window: int = 60000                           # milliseconds


class ToolSecurity(BaseModel):
    requires_auth: bool = False
    audit_level: str = ""                         # e.g. "high" logs arguments (sanitized)
    rate_limit: Optional[RateLimit] = None


class ToolDefinition(BaseModel):
    """
    A tool flows can invoke.

    Example:
        id: get_weather
        name: Get Weather
        parameters:
          type: object
          properties:
            city: {type: string, minLength: 2}
          required: [city]
        implementation:
          type: http
          url: https://api.example.com/weather/{city}
          path_params: [city]
          response_mapping:
            type: object
            mappings:
              temp: current.temp_c
    """
    id: str
    name: str = ""
    description: str = ""
    parameters: ToolParameters = Field(default_factory=ToolParameters)
    implementation: ToolImplementation = Field(default_factory=ToolImplementation)
    security: ToolSecurity = Field(default_factory=ToolSecurity)
    api_key: str = ""                             # shorthand for bearer auth
    auth: Optional[ToolAuth] = None
    hash_auth: Optional[HashAuth] = None            # takes precedence over the implementation's

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def parameter_names(self) -> list[str]:
        return list(self.parameters.properties)


class ToolResult(BaseModel):
    """Outcome of `ToolInvoker.try_invoke`."""
    tool_id: str
    ok: bool = True
    value: Any = None
    error: Optional[str] = None
    error_code: str = ""
    failure_class: Optional[FailureClass] = None
    duration_ms: float = 0.0
