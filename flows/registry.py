"""
Flow Registry — Loads and resolves flow definitions.

Flows are loaded from YAML/JSON-style config (or passed in as models) and
indexed by id and by name so FLOW steps, intent resolution and control
commands can find them.

Resolution order for a reference:
  1. Exact id
  2. Exact name
  3. Case-insensitive id or name

Config input accepts both snake_case and the camelCase keys used by
existing flow files (`nextFlow`, `callType`, `onFail`, `maxRetries`,
`retryDelay`, `retryStrategy`, `retryOnConditions`, `retryBehavior`,
`inputValidation`), `value_<lang>` / `prompt_<lang>`
localized texts, and `branches` given as an ordered mapping.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from flows.models import (
    Branch, CallType, FlowDefinition, FlowMetadata, FlowStep, InputValidation,
    RetryAction, RetryBehavior, RetryCondition, RetryStrategy, StepType,
    ValidationPattern, VariableSpec,
)

logger = structlog.get_logger()

_STEP_ALIASES = {
    "nextFlow": "next_flow",
    "callType": "call_type",
    "mode": "call_type",
    "onFail": "on_fail",
    "maxRetries": "max_retries",
    "retryDelay": "retry_delay_ms",
    "retryDelayMs": "retry_delay_ms",
    "inputValidation": "input_validation",
    "retryStrategy": "retry_strategy",
    "retryOnConditions": "retry_on_conditions",
    "retryBehavior": "retry_behavior",
}

_METADATA_ALIASES = {
    "riskLevel": "risk_level",
}


class FlowRegistry:
    """Central registry for flow definitions, keyed by id and by name."""

    def __init__(self):
        self._flows: dict[str, FlowDefinition] = {}
        self._name_index: dict[str, str] = {}           # lower-cased name → flow id

    # ── Registration ──────────────────────────────────

    def register(self, flow: FlowDefinition | dict[str, Any]) -> FlowDefinition:
        """Register a single flow definition."""
        if isinstance(flow, dict):
            flow = self.parse_flow(flow)
        if not flow.id:
            raise ValueError("Flow id is required")
        if flow.id in self._flows:
            logger.warning("flow_redefined", flow_id=flow.id)

        self._flows[flow.id] = flow
        if flow.name:
            self._name_index[flow.name.lower()] = flow.id

        logger.info("flow_registered",
                    flow_id=flow.id,
                    name=flow.display_name,
                    steps=len(flow.steps))
        return flow

    def register_from_config(self, config: list[FlowDefinition | dict[str, Any]]):
        """Load flow definitions from config."""
        for raw in config:
            self.register(raw)
        logger.info("flows_loaded", count=len(config))

    # ── Resolution ────────────────────────────────────

    def get(self, flow_id: str) -> Optional[FlowDefinition]:
        """Get a flow by exact id."""
        return self._flows.get(flow_id)

    def get_by_name(self, name: str) -> Optional[FlowDefinition]:
        """Get a flow by name, ignoring case."""
        flow_id = self._name_index.get((name or "").strip().lower())
        return self._flows.get(flow_id) if flow_id else None

    def find(self, reference: str) -> Optional[FlowDefinition]:
        """Resolve a FLOW target or user reference by id, then name."""
        if not reference:
            return None
        reference = reference.strip()
        if reference in self._flows:
            return self._flows[reference]
        by_name = self.get_by_name(reference)
        if by_name:
            return by_name
        lowered = reference.lower()
        for flow_id, flow in self._flows.items():
            if flow_id.lower() == lowered:
                return flow
        return None

    def list_all(self) -> list[FlowDefinition]:
        return list(self._flows.values())

    def list_primary(self) -> list[FlowDefinition]:
        return [f for f in self._flows.values() if f.primary]

    @property
    def ids(self) -> list[str]:
        return list(self._flows)

    def __contains__(self, reference: str) -> bool:
        return self.find(reference) is not None

    def __len__(self) -> int:
        return len(self._flows)

    # ── Parsing ───────────────────────────────────────

    @classmethod
    def parse_flow(cls, raw: dict[str, Any]) -> FlowDefinition:
        """Parse a raw dict (from YAML or JSON) into a FlowDefinition."""
        steps = [cls.parse_step(s) for s in raw.get("steps", [])]

        prompts = dict(raw.get("prompts", {}))
        for key, value in raw.items():
            if key.startswith("prompt_") and isinstance(value, str):
                prompts[key[len("prompt_"):]] = value

        return FlowDefinition(
            id=str(raw.get("id") or raw.get("name") or ""),
            name=raw.get("name", ""),
            version=str(raw.get("version", "1.0")),
            prompt=raw.get("prompt", ""),
            prompts=prompts,
            description=raw.get("description", ""),
            primary=raw.get("primary", True),
            steps=steps,
            variables=cls._parse_variables(raw.get("variables", [])),
            metadata=cls._parse_metadata(raw.get("metadata", {})),
        )

    @classmethod
    def parse_step(cls, raw: dict[str, Any] | FlowStep) -> FlowStep:
        """Parse one step, accepting camelCase keys and localized values."""
        if isinstance(raw, FlowStep):
            return raw

        data: dict[str, Any] = {}
        localized: dict[str, str] = dict(raw.get("localized", {}))
        for key, value in raw.items():
            if key.startswith("value_") and isinstance(value, str):
                localized[key[len("value_"):]] = value
                continue
            data[_STEP_ALIASES.get(key, key)] = value

        step_type = str(data.get("type", "")).strip().upper().replace("_", "-")
        data["type"] = StepType(step_type)
        data["localized"] = localized

        if data.get("call_type"):
            data["call_type"] = CallType(str(data["call_type"]).lower())
        else:
            data.pop("call_type", None)

        if data.get("on_fail") is not None:
            data["on_fail"] = cls.parse_step(data["on_fail"])

        data["branches"] = cls._parse_branches(data.get("branches"))
        cls._parse_retry(data)

        validation = data.get("input_validation")
        if isinstance(validation, dict):
            data["input_validation"] = InputValidation(
                patterns=[ValidationPattern(**p) for p in validation.get("patterns", [])],
                custom_validator=validation.get("custom_validator") or validation.get("customValidator", ""),
            )

        known = set(FlowStep.model_fields)
        extra = [k for k in data if k not in known]
        if extra:
            logger.debug("flow_step_unknown_keys", step_id=data.get("id", ""), keys=extra)
        return FlowStep(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def _parse_retry(cls, data: dict[str, Any]):
        if data.get("retry_strategy"):
            data["retry_strategy"] = RetryStrategy(str(data["retry_strategy"]).lower())
        else:
            data.pop("retry_strategy", None)

        data["retry_on_conditions"] = [
            c if isinstance(c, RetryCondition) else RetryCondition(
                error_pattern=c.get("errorPattern") or c.get("error_pattern") or "",
                action=RetryAction(str(c.get("action", "retry")).lower()),
            )
            for c in data.get("retry_on_conditions") or []
        ]

        behavior = data.get("retry_behavior")
        if isinstance(behavior, dict):
            escalate = behavior.get("escalateAfterMaxRetries") or behavior.get("escalate_after_max_retries")
            data["retry_behavior"] = RetryBehavior(
                show_progressive_help=bool(behavior.get("showProgressiveHelp")
                                           or behavior.get("show_progressive_help")),
                escalate_after_max_retries=cls.parse_step(escalate) if escalate else None,
            )

    @classmethod
    def _parse_branches(cls, raw: Any) -> list[Branch]:
        if not raw:
            return []
        if isinstance(raw, dict):
            items = list(raw.items())
        else:
            items = []
            for entry in raw:
                if isinstance(entry, Branch):
                    items.append((entry.key, entry.step))
                else:
                    items.append((entry["key"], entry["step"]))
        return [Branch(key=str(key), step=cls.parse_step(step)) for key, step in items]

    @staticmethod
    def _parse_variables(raw: Any) -> list[VariableSpec]:
        if isinstance(raw, dict):
            specs = []
            for name, definition in raw.items():
                if isinstance(definition, dict):
                    specs.append(VariableSpec(name=name, **{
                        k: v for k, v in definition.items() if k in VariableSpec.model_fields and k != "name"
                    }))
                else:
                    specs.append(VariableSpec(name=name, value=definition))
            return specs
        return [v if isinstance(v, VariableSpec) else VariableSpec(**v) for v in raw or []]

    @staticmethod
    def _parse_metadata(raw: dict[str, Any]) -> FlowMetadata:
        known = set(FlowMetadata.model_fields)
        data: dict[str, Any] = {"extra": {}}
        for key, value in (raw or {}).items():
            key = _METADATA_ALIASES.get(key, key)
            if key in known and key != "extra":
                data[key] = value
            else:
                data["extra"][key] = value
        return FlowMetadata(**data)
