"""
Flows — declarative conversational workflows.

Definitions are parsed and indexed by the FlowRegistry, checked by
`validate_flows`, and run one step at a time by the StepInterpreter
(`flows.interpreter`) under the control of core.controller.
"""
from flows.messages import GuidanceConfig, MessageCatalog, match_command
from flows.models import CallType, FlowDefinition, FlowStep, StepType
from flows.registry import FlowRegistry
from flows.validation import ValidationReport, validate_flows

__all__ = [
    "FlowDefinition",
    "FlowStep",
    "StepType",
    "CallType",
    "FlowRegistry",
    "MessageCatalog",
    "GuidanceConfig",
    "match_command",
    "ValidationReport",
    "validate_flows",
]
