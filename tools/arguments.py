"""
Argument inference for CALL-TOOL steps without an explicit `args` map.

Stages run in order; each fills only the parameters still missing:

  1. Variables   a visible variable named like the parameter. Account
                 parameters also take a variable whose name contains
                 "account" (or an object carrying `accountId`); amount
                 parameters a variable mentioning "amount" or "payment".
  2. User input  the trimmed turn for city / location / q parameters, a
                 digits-only turn for account parameters, the first number
                 in the turn for amount / price parameters, otherwise the
                 turn goes to the first required string parameter.
  3. AI          the interpreter asks the host callback for the rest
                 (IntentResolver.generate_tool_args), coerced here.
  4. Fallback    nothing found at all: {"userInput": <turn>}.

Tools that declare no parameters get no inferred arguments.
"""
from __future__ import annotations

import re
from typing import Any

import structlog

from expressions.environment import VariableEnvironment
from expressions.values import UNDEFINED, is_nullish, render, to_storable
from tools.models import ToolDefinition

logger = structlog.get_logger()

_NUMBER_RE = re.compile(r'\d+(?:\.\d+)?')
_DIGITS_RE = re.compile(r'^\d+$')
_NUMERIC_TYPES = ("number", "integer")


def missing_required(tool: ToolDefinition, args: dict[str, Any]) -> list[str]:
    return [name for name in tool.parameters.required if args.get(name) is None]


def args_from_variables(tool: ToolDefinition, env: VariableEnvironment) -> dict[str, Any]:
    args: dict[str, Any] = {}
    visible = {**env.globals, **env.local}
    for name in tool.parameter_names:
        value = env.lookup(name)
        if value is UNDEFINED or is_nullish(value):
            value = _smart_match(name, visible)
        if value is not None:
            args[name] = to_storable(value)
    return args


def _smart_match(name: str, variables: dict[str, Any]) -> Any:
    lowered = name.lower()
    if "account" in lowered:
        for key, value in variables.items():
            if isinstance(value, dict) and value.get("accountId") is not None:
                return value["accountId"]
            if "account" in key.lower() and not isinstance(value, (dict, list)) and not is_nullish(value):
                return value
    if "amount" in lowered or "payment" in lowered:
        for key, value in variables.items():
            key = key.lower()
            if ("amount" in key or "payment" in key) and not isinstance(value, (dict, list)) \
                    and not is_nullish(value):
                return value
    return None


def args_from_input(tool: ToolDefinition, text: str, missing: list[str]) -> dict[str, Any]:
    text = (text or "").strip()
    if not text:
        return {}
    args: dict[str, Any] = {}
    properties = tool.parameters.properties
    for name in missing:
        kind = properties.get(name, {}).get("type", "string")
        lowered = name.lower()
        if kind == "string" and ("city" in lowered or "location" in lowered or lowered == "q"):
            args[name] = text
        elif "account" in lowered and _DIGITS_RE.match(text):
            args[name] = text
        elif kind in _NUMERIC_TYPES and ("amount" in lowered or "price" in lowered):
            match = _NUMBER_RE.search(text)
            if match:
                args[name] = _number(match.group(0))

    leftover = [n for n in missing if n not in args and properties.get(n, {}).get("type", "string") == "string"]
    if leftover and not any(isinstance(v, str) and v == text for v in args.values()):
        args[leftover[0]] = text
    return args


def coerce_to_schema(tool: ToolDefinition, data: dict[str, Any]) -> dict[str, Any]:
    """Coerce AI-generated values to the declared property types; drop the rest."""
    args: dict[str, Any] = {}
    for name, spec in tool.parameters.properties.items():
        if data.get(name) is None:
            continue
        value = data[name]
        kind = spec.get("type")
        if kind in _NUMERIC_TYPES and isinstance(value, str):
            match = _NUMBER_RE.search(value.replace(",", ""))
            if match is None:
                logger.debug("generated_arg_dropped", tool_id=tool.id, param=name)
                continue
            value = _number(match.group(0))
        elif kind == "boolean" and isinstance(value, str):
            value = value.strip().lower() in ("true", "yes", "1")
        elif kind == "string" and not isinstance(value, str):
            value = render(value)
        args[name] = to_storable(value)
    return args


def _number(text: str) -> int | float:
    return float(text) if "." in text else int(text)
