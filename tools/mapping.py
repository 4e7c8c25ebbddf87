"""
Declarative response mapping.

Reshapes a tool's raw payload before it is stored in a flow variable.
A mapping is one of:

  "path.to[0].field"                     bare string: path extraction
  {path, transform, fallback}            path config
  {type: object, mappings: {...}}        output key → path / nested mapping /
                                         path config / static dict / literal
  {type: jsonPath, mappings: {...}}      output key (dotted → nested) →
                                         {path, transform, fallback};
                                         `$args.x` reads invocation args,
                                         `{x}` in a path is filled from args
  {type: array, source, filter, sort,    list reshaping
   offset, limit, item_mapping, fallback}
  {type: conditional, conditions:        first branch whose `if` (one condition
     [{if, then}], else}                 or a list, all must hold) picks `then`
  {type: template, template}             `{{path}}` from the payload
                                         (`{{response}}` = whole payload),
                                         `{$args.x}` from args
"""
from __future__ import annotations

import re
from functools import cmp_to_key
from typing import Any

import structlog

from expressions.values import render
from tools.transforms import apply_transform
from utils.conditions import evaluate_condition, evaluate_conditions, get_nested_value, set_nested_value

logger = structlog.get_logger()

_DATA_TEMPLATE = re.compile(r'\{\{([^}]+)\}\}')
_ARGS_TEMPLATE = re.compile(r'\{\$args\.([^}]+)\}')
_PATH_PLACEHOLDER = re.compile(r'\{([^{}$]+)\}')

ARGS_PREFIX = "$args."


def _text(value: Any) -> str:
    return "" if value is None else render(value)


class ResponseMapper:

    def apply(self, mapping: Any, data: Any, args: dict[str, Any] | None = None) -> Any:
        """Apply a mapping config to `data`; no mapping returns data as-is."""
        args = args or {}
        if mapping is None or mapping == {}:
            return data
        if isinstance(mapping, str):
            return self.extract(data, mapping, args)
        if not isinstance(mapping, dict):
            return data

        kind = mapping.get("type")
        if kind == "object":
            return self._object(data, mapping, args)
        if kind == "jsonPath":
            return self._json_path(data, mapping, args)
        if kind == "array":
            return self._array(data, mapping, args)
        if kind == "conditional":
            return self._conditional(data, mapping, args)
        if kind == "template":
            return self._template(data, mapping.get("template", ""), args)
        if "path" in mapping:
            return self._path_config(data, mapping, args)
        logger.debug("response_mapping_unmatched", mapping_type=kind)
        return data

    # ── Paths ─────────────────────────────────────────

    def extract(self, data: Any, path: str, args: dict[str, Any]) -> Any:
        if path.startswith(ARGS_PREFIX):
            return get_nested_value(args, path[len(ARGS_PREFIX):])
        return get_nested_value(data, path)

    def _path_config(self, data: Any, config: dict[str, Any], args: dict[str, Any]) -> Any:
        value = self.extract(data, self._fill_path(config.get("path", ""), args), args)
        if config.get("transform"):
            value = apply_transform(value, config["transform"], args)
        if value is None and "fallback" in config:
            fallback = config["fallback"]
            if isinstance(fallback, str) and fallback.startswith(ARGS_PREFIX):
                value = get_nested_value(args, fallback[len(ARGS_PREFIX):])
            else:
                value = fallback
        return value

    @staticmethod
    def _fill_path(path: str, args: dict[str, Any]) -> str:
        if not path or path.startswith(ARGS_PREFIX):
            return path

        def replacer(match):
            value = args.get(match.group(1))
            return _text(value) if value not in (None, "") else match.group(0)

        return _PATH_PLACEHOLDER.sub(replacer, path)

    # ── Mapping types ─────────────────────────────────

    def _object(self, data: Any, config: dict[str, Any], args: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, spec in (config.get("mappings") or {}).items():
            if isinstance(spec, str):
                result[key] = self.extract(data, spec, args)
            elif isinstance(spec, dict) and "type" in spec:
                result[key] = self.apply(spec, data, args)
            elif isinstance(spec, dict) and "path" in spec:
                result[key] = self._path_config(data, spec, args)
            elif isinstance(spec, (dict, list)):
                result[key] = self._interpolate_static(spec, data, args)
            else:
                result[key] = spec
        return result

    def _json_path(self, data: Any, config: dict[str, Any], args: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for output_field, spec in (config.get("mappings") or {}).items():
            if isinstance(spec, str):
                spec = {"path": spec}
            set_nested_value(result, output_field, self._path_config(data, spec, args))
        return result

    def _array(self, data: Any, config: dict[str, Any], args: dict[str, Any]) -> Any:
        source = get_nested_value(data, config["source"]) if config.get("source") else data
        if not isinstance(source, list):
            logger.warning("array_mapping_source_not_list", source=config.get("source"))
            return config.get("fallback", [])

        items = list(source)
        if config.get("filter"):
            items = [item for item in items if evaluate_condition(config["filter"], item)]

        sort = config.get("sort")
        if isinstance(sort, dict) and sort.get("field"):
            descending = sort.get("order", "asc") == "desc"
            items.sort(key=cmp_to_key(lambda a, b: _compare(a, b, sort["field"])), reverse=descending)

        offset = config.get("offset")
        if isinstance(offset, int) and offset > 0:
            items = items[offset:]
        limit = config.get("limit")
        if isinstance(limit, int) and limit > 0:
            items = items[:limit]

        item_mapping = config.get("item_mapping") or config.get("itemMapping")
        if item_mapping:
            items = [
                self.apply(item_mapping, item, {**args, "index": index, "$index": index})
                for index, item in enumerate(items)
            ]
        return items

    def _conditional(self, data: Any, config: dict[str, Any], args: dict[str, Any]) -> Any:
        conditions = config.get("conditions")
        if not isinstance(conditions, list):
            raise ValueError("Conditional mapping requires a conditions array")
        for branch in conditions:
            # "if" is one condition or a list of them (all must hold)
            clauses = branch.get("if") or {}
            if isinstance(clauses, dict):
                clauses = [clauses]
            on_data, on_args = [], []
            for clause in clauses:
                clause = dict(clause)
                field = clause.get("field", "")
                if field.startswith(ARGS_PREFIX):
                    clause["field"] = field[len(ARGS_PREFIX):]
                    on_args.append(clause)
                else:
                    on_data.append(clause)
            if evaluate_conditions(on_data, data) and evaluate_conditions(on_args, args):
                return self.apply(branch.get("then"), data, args)
        if "else" in config:
            return self.apply(config["else"], data, args)
        return data

    def _template(self, data: Any, template: str, args: dict[str, Any]) -> str:
        def from_data(match):
            path = match.group(1).strip()
            value = data if path == "response" else get_nested_value(data, path)
            return _text(value)

        def from_args(match):
            return _text(get_nested_value(args, match.group(1).strip()))

        return _ARGS_TEMPLATE.sub(from_args, _DATA_TEMPLATE.sub(from_data, template))

    def _interpolate_static(self, value: Any, data: Any, args: dict[str, Any]) -> Any:
        if isinstance(value, str):
            return self._template(data, value, args)
        if isinstance(value, list):
            return [self._interpolate_static(v, data, args) for v in value]
        if isinstance(value, dict):
            return {k: self._interpolate_static(v, data, args) for k, v in value.items()}
        return value


def _compare(a: Any, b: Any, field: str) -> int:
    left, right = get_nested_value(a, field), get_nested_value(b, field)
    numeric = all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (left, right))
    if not numeric:
        left, right = _text(left), _text(right)
    return (left > right) - (left < right)
