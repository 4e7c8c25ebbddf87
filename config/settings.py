"""
Configuration loader for the workflow engine.
Reads settings from YAML file with environment variable substitution.

Besides runtime knobs, the YAML file may carry the flow and tool
definitions themselves (`flows:`, `tools:`) and the global variables
shared by every session (`global_variables:`).
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class ExpressionConfig:
    security_level: str = "standard"        # strict | standard | permissive
    max_interpolation_passes: int = 10      # nested {{ }} resolution bound


@dataclass
class FlowConfig:
    max_stack_depth: int = 20               # frames per stack before FlowDepthExceeded
    max_steps_per_turn: int = 200           # runaway loop guard for one update_activity
    cycle_warning_depth: int = 1            # repeats of a flow id in the call chain before warning
    strict_cycles: bool = False             # raise CircularFlowReference instead of warning
    recovery_flow: str = ""                 # flow started after a structural failure
    history_limit: int = 20                 # context entries kept per frame
    validate_on_init: bool = True


@dataclass
class ToolConfig:
    http_timeout_ms: int = 10000
    local_timeout_ms: int = 5000
    http_retries: int = 0                   # transport-level retries when a tool declares none
    backoff_multiplier: float = 1.0         # tenacity wait_exponential multiplier (seconds)
    backoff_max_seconds: float = 10.0
    user_agent: str = "WorkflowEngine/1.0"


@dataclass
class GuidanceSettings:
    enabled: bool = False
    mode: str = "append"                    # append | prepend | template | none
    separator: str = "\n\n"
    template: str = "{{message}}\n\n{{guidance}}"
    context_selector: str = "auto"          # auto | general | payment


@dataclass
class EngineSettings:
    app_name: str = "WorkflowEngine"
    debug: bool = False
    language: str = "en"
    expressions: ExpressionConfig = field(default_factory=ExpressionConfig)
    flows: FlowConfig = field(default_factory=FlowConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    guidance: GuidanceSettings = field(default_factory=GuidanceSettings)
    flow_definitions: list[dict[str, Any]] = field(default_factory=list)
    tool_definitions: list[dict[str, Any]] = field(default_factory=list)
    global_variables: dict[str, Any] = field(default_factory=dict)


_settings: Optional[EngineSettings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> EngineSettings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "WORKFLOW_ENGINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = EngineSettings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.language = raw.get("language", settings.language)

        if "expressions" in raw:
            ex = raw["expressions"]
            settings.expressions = ExpressionConfig(
                security_level=ex.get("security_level", "standard"),
                max_interpolation_passes=ex.get("max_interpolation_passes", 10),
            )

        if "flow_control" in raw:
            fc = raw["flow_control"]
            settings.flows = FlowConfig(
                max_stack_depth=fc.get("max_stack_depth", 20),
                max_steps_per_turn=fc.get("max_steps_per_turn", 200),
                cycle_warning_depth=fc.get("cycle_warning_depth", 1),
                strict_cycles=fc.get("strict_cycles", False),
                recovery_flow=fc.get("recovery_flow", ""),
                history_limit=fc.get("history_limit", 20),
                validate_on_init=fc.get("validate_on_init", True),
            )

        if "tool_runtime" in raw:
            tr = raw["tool_runtime"]
            settings.tools = ToolConfig(
                http_timeout_ms=tr.get("http_timeout_ms", 10000),
                local_timeout_ms=tr.get("local_timeout_ms", 5000),
                http_retries=tr.get("http_retries", 0),
                backoff_multiplier=tr.get("backoff_multiplier", 1.0),
                backoff_max_seconds=tr.get("backoff_max_seconds", 10.0),
                user_agent=tr.get("user_agent", "WorkflowEngine/1.0"),
            )

        if "guidance" in raw:
            g = raw["guidance"]
            settings.guidance = GuidanceSettings(
                enabled=g.get("enabled", False),
                mode=g.get("mode", "append"),
                separator=g.get("separator", "\n\n"),
                template=g.get("template", settings.guidance.template),
                context_selector=g.get("context_selector", "auto"),
            )

        settings.flow_definitions = raw.get("flows", [])
        settings.tool_definitions = raw.get("tools", [])
        settings.global_variables = raw.get("global_variables", {})

    _settings = settings
    return settings


def get_settings() -> EngineSettings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
