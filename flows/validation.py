"""
Static validation of flow definitions.

Runs over every flow (and every nested branch, onFail and escalation
step) before any session exists and reports findings instead of
raising, so a host can decide whether a warning-only report is acceptable.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from flows.models import CONDITION_PREFIX, FlowDefinition, FlowStep, StepType
from flows.registry import FlowRegistry

logger = structlog.get_logger()


@dataclass
class ValidationIssue:
    flow_id: str
    message: str
    step_id: str = ""
    severity: str = "error"                 # error | warning

    def __str__(self) -> str:
        where = f"{self.flow_id}/{self.step_id}" if self.step_id else self.flow_id
        return f"[{self.severity}] {where}: {self.message}"


@dataclass
class ValidationReport:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    flows_checked: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def add(self, flow_id: str, message: str, step_id: str = "", severity: str = "error"):
        issue = ValidationIssue(flow_id=flow_id, message=message, step_id=step_id, severity=severity)
        (self.errors if severity == "error" else self.warnings).append(issue)

    def for_flow(self, flow_id: str) -> dict[str, list[str]]:
        return {
            "errors": [i.message for i in self.errors if i.flow_id == flow_id],
            "warnings": [i.message for i in self.warnings if i.flow_id == flow_id],
        }

    def summary(self) -> dict[str, Any]:
        return {
            "flows_checked": self.flows_checked,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "ok": self.ok,
        }


def validate_flows(
    flows: Iterable[FlowDefinition | dict[str, Any]] | FlowRegistry,
    tool_ids: Iterable[str] = (),
) -> ValidationReport:
    """Check flows for broken references and unreachable or ambiguous branches."""
    report = ValidationReport()
    known_tools = set(tool_ids)

    parsed: list[FlowDefinition] = []
    source = flows.list_all() if isinstance(flows, FlowRegistry) else list(flows)
    for index, flow in enumerate(source):
        if isinstance(flow, FlowDefinition):
            parsed.append(flow)
            continue
        try:
            parsed.append(FlowRegistry.parse_flow(flow))
        except Exception as e:
            flow_id = str(flow.get("id") or flow.get("name") or f"#{index}") if isinstance(flow, dict) else f"#{index}"
            report.add(flow_id, f"cannot parse flow definition: {e}")

    if isinstance(flows, FlowRegistry):
        registry = flows
    else:
        registry = FlowRegistry()
        for flow in parsed:
            registry.register(flow)

    graph: dict[str, list[str]] = {}
    for flow in parsed:
        report.flows_checked += 1
        if not flow.steps:
            report.add(flow.id, "flow has no steps", severity="warning")
        targets: list[str] = []
        for step in flow.steps:
            _check_step(step, flow, registry, known_tools, report, targets, as_handler=False)
        graph[flow.id] = targets

    _check_cycles(graph, report)

    for issue in report.errors:
        logger.error("flow_validation_error", flow_id=issue.flow_id, step_id=issue.step_id, message=issue.message)
    for issue in report.warnings:
        logger.warning("flow_validation_warning", flow_id=issue.flow_id, step_id=issue.step_id, message=issue.message)
    return report


def _check_step(
    step: FlowStep,
    flow: FlowDefinition,
    registry: FlowRegistry,
    known_tools: set[str],
    report: ValidationReport,
    targets: list[str],
    as_handler: bool,
):
    sid = step.label

    if step.call_type is not None and step.type != StepType.FLOW and not as_handler:
        report.add(flow.id, f"{step.type.value} step has callType; only FLOW steps and onFail handlers use it",
                   sid, severity="warning")

    if step.type == StepType.SAY_GET and not step.variable:
        report.add(flow.id, "SAY-GET step has no variable to store the answer", sid)

    elif step.type == StepType.SET and not step.variable:
        report.add(flow.id, "SET step has no variable", sid)

    elif step.type == StepType.CALL_TOOL:
        if not step.tool:
            report.add(flow.id, "CALL-TOOL step has no tool", sid)
        elif known_tools and step.tool not in known_tools:
            report.add(flow.id, f"CALL-TOOL references unknown tool '{step.tool}'", sid)
        for condition in step.retry_on_conditions:
            try:
                re.compile(condition.error_pattern)
            except re.error as e:
                report.add(flow.id, f"retryOnConditions pattern '{condition.error_pattern}' is invalid: {e}", sid)

    elif step.type == StepType.FLOW:
        target = step.target_flow
        if not target:
            report.add(flow.id, "FLOW step has no target flow", sid)
        else:
            found = registry.find(target)
            if found is None:
                report.add(flow.id, f"FLOW references unknown flow '{target}'", sid)
            else:
                targets.append(found.id)

    elif step.type in (StepType.SWITCH, StepType.CASE):
        _check_branches(step, flow, report)
        if step.type == StepType.SWITCH and not step.variable and step.value in (None, ""):
            report.add(flow.id, "SWITCH step needs a variable or value to switch on", sid)

    for branch in step.branches:
        _check_step(branch.step, flow, registry, known_tools, report, targets, as_handler=False)
    if step.on_fail is not None:
        _check_step(step.on_fail, flow, registry, known_tools, report, targets, as_handler=True)
    if step.retry_behavior is not None and step.retry_behavior.escalate_after_max_retries is not None:
        _check_step(step.retry_behavior.escalate_after_max_retries, flow, registry, known_tools, report,
                    targets, as_handler=True)


def _check_branches(step: FlowStep, flow: FlowDefinition, report: ValidationReport):
    sid = step.label
    kind = step.type.value
    if not step.branches:
        report.add(flow.id, f"{kind} step has no branches", sid)
        return

    seen: set[str] = set()
    default_seen = False
    for branch in step.branches:
        key = branch.key.strip()
        if branch.is_default:
            if default_seen:
                report.add(flow.id, f"{kind} has more than one 'default' branch", sid)
            default_seen = True
            continue
        if step.type == StepType.SWITCH:
            if key in seen:
                report.add(flow.id, f"SWITCH branch '{key}' is declared twice; the second is unreachable", sid)
            seen.add(key)
        elif not key.startswith(CONDITION_PREFIX):
            report.add(flow.id, f"CASE branch '{key}' must start with '{CONDITION_PREFIX}' or be 'default'", sid)
        elif not branch.condition:
            report.add(flow.id, f"CASE branch '{key}' has an empty condition", sid)
        elif branch.condition in seen:
            report.add(flow.id, f"CASE condition '{branch.condition}' repeats an earlier branch and is unreachable",
                       sid, severity="warning")
        else:
            seen.add(branch.condition)

    if not default_seen:
        report.add(flow.id, f"{kind} step has no 'default' branch; an unmatched value aborts the flow",
                   sid, severity="warning")


def _check_cycles(graph: dict[str, list[str]], report: ValidationReport):
    reported: set[tuple[str, ...]] = set()

    for flow_id, targets in graph.items():
        if flow_id in targets:
            report.add(flow_id, "flow references itself; make sure a counter or condition ends the loop",
                       severity="warning")

    def visit(node: str, path: list[str]):
        for target in graph.get(node, []):
            if target == node:
                continue
            if target in path:
                cycle = path[path.index(target):]
                key = _canonical(cycle)
                if key not in reported:
                    reported.add(key)
                    report.add(cycle[0], f"flows reference each other in a cycle: {' -> '.join(cycle + [target])}",
                               severity="warning")
                continue
            visit(target, path + [target])

    for flow_id in graph:
        visit(flow_id, [flow_id])


def _canonical(cycle: list[str]) -> tuple[str, ...]:
    pivot = cycle.index(min(cycle))
    return tuple(cycle[pivot:] + cycle[:pivot])
