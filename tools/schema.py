"""
Argument validation against a tool's JSON-Schema-like parameter block.

Supported property keywords: type (string, number, integer, boolean,
array, object), pattern, minimum, maximum, minLength, maxLength, enum,
default. Numeric strings are accepted for number/integer parameters and
converted explicitly; every other type mismatch is an error. All problems
are collected and raised together as one ToolValidationError.
"""
from __future__ import annotations

import math
import re
from typing import Any

from models.errors import ToolValidationError
from tools.models import ToolDefinition

_INT_RE = re.compile(r'^[+-]?\d+$')
_FLOAT_RE = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$')


def validate_arguments(tool: ToolDefinition, args: dict[str, Any]) -> dict[str, Any]:
    """Return validated (and coerced) args or raise ToolValidationError."""
    schema = tool.parameters
    validated = dict(args or {})
    errors: list[str] = []

    for name in schema.required:
        if validated.get(name) is None:
            errors.append(f"'{name}' is required")

    for name, spec in schema.properties.items():
        if validated.get(name) is None:
            if "default" in spec:
                validated[name] = spec["default"]
            continue
        value, problems = _check_property(name, validated[name], spec)
        validated[name] = value
        errors.extend(problems)

    if errors:
        raise ToolValidationError(tool.id, errors)
    return validated


def _check_property(name: str, value: Any, spec: dict[str, Any]) -> tuple[Any, list[str]]:
    errors: list[str] = []
    expected = spec.get("type")

    if expected in ("number", "integer"):
        value, error = _coerce_number(value, expected)
        if error:
            return value, [f"'{name}' {error}"]
        if "minimum" in spec and value < spec["minimum"]:
            errors.append(f"'{name}' must be >= {spec['minimum']}")
        if "maximum" in spec and value > spec["maximum"]:
            errors.append(f"'{name}' must be <= {spec['maximum']}")

    elif expected == "string":
        if not isinstance(value, str):
            return value, [f"'{name}' must be a string"]
        if "minLength" in spec and len(value) < spec["minLength"]:
            errors.append(f"'{name}' must be at least {spec['minLength']} characters")
        if "maxLength" in spec and len(value) > spec["maxLength"]:
            errors.append(f"'{name}' must be at most {spec['maxLength']} characters")
        if "pattern" in spec and not re.search(spec["pattern"], value):
            errors.append(f"'{name}' does not match pattern {spec['pattern']}")

    elif expected == "boolean":
        if not isinstance(value, bool):
            return value, [f"'{name}' must be a boolean"]

    elif expected == "array":
        if not isinstance(value, list):
            return value, [f"'{name}' must be an array"]
        if "minItems" in spec and len(value) < spec["minItems"]:
            errors.append(f"'{name}' must have at least {spec['minItems']} items")
        if "maxItems" in spec and len(value) > spec["maxItems"]:
            errors.append(f"'{name}' must have at most {spec['maxItems']} items")

    elif expected == "object":
        if not isinstance(value, dict):
            return value, [f"'{name}' must be an object"]

    if "enum" in spec and value not in spec["enum"]:
        errors.append(f"'{name}' must be one of {spec['enum']}")
    return value, errors


def _coerce_number(value: Any, expected: str) -> tuple[Any, str]:
    if isinstance(value, bool):
        return value, f"must be a {expected}"
    if isinstance(value, str):
        text = value.strip()
        if _INT_RE.match(text):
            value = int(text)
        elif _FLOAT_RE.match(text):
            value = float(text)
        else:
            return value, f"must be a {expected}"
    if not isinstance(value, (int, float)) or (isinstance(value, float) and math.isnan(value)):
        return value, f"must be a {expected}"
    if expected == "integer":
        if isinstance(value, float):
            if not value.is_integer():
                return value, "must be an integer"
            value = int(value)
    return value, ""
