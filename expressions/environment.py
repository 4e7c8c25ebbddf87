"""
Variable lookup for expressions.

Names resolve in priority order: flow-local variables, engine globals,
session cargo, then engine-provided system values (`userInput`,
`sessionId`, `userId`, `flowName`). A name that resolves nowhere is
UNDEFINED, never an error.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from expressions.values import UNDEFINED, is_nullish


@dataclass
class VariableEnvironment:
    local: dict[str, Any] = field(default_factory=dict)
    globals: dict[str, Any] = field(default_factory=dict)
    cargo: dict[str, Any] = field(default_factory=dict)
    system: dict[str, Any] = field(default_factory=dict)

    def lookup(self, name: str) -> Any:
        for scope in (self.local, self.globals, self.cargo, self.system):
            if name in scope:
                return scope[name]
        return UNDEFINED

    def has(self, name: str) -> bool:
        return self.lookup(name) is not UNDEFINED

    def resolve_path(self, path: str) -> Any:
        """Resolve `a.b.c` by pure lookup; any missing link yields UNDEFINED."""
        head, *rest = path.split(".")
        value = self.lookup(head)
        for part in rest:
            value = get_member(value, part)
            if value is UNDEFINED:
                break
        return value

    def with_locals(self, extra: dict[str, Any]) -> "VariableEnvironment":
        merged = dict(self.local)
        merged.update(extra)
        return VariableEnvironment(local=merged, globals=self.globals, cargo=self.cargo, system=self.system)


def get_member(value: Any, name: str) -> Any:
    if is_nullish(value):
        return UNDEFINED
    if isinstance(value, dict):
        return value.get(name, UNDEFINED)
    if isinstance(value, (list, str)):
        if name == "length":
            return len(value)
        if isinstance(value, list) and name.isdigit():
            index = int(name)
            return value[index] if index < len(value) else UNDEFINED
    return UNDEFINED
