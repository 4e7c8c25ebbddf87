"""
Step Interpreter — runs one flow step against a frame.

The controller hands the interpreter the top step of the active frame;
the interpreter does the step's work and reports a StepOutcome:

  Continue            run the next step
  Suspend(variable)   a SAY-GET is waiting for the user
  Terminate(value)    RETURN: the frame is done
  Fail(error)         structural failure, the controller recovers

Steps are popped before they run, except SAY-GET, which stays on the
stack until `accept_input` binds the answer. That way an interrupted
frame still holds its pending question when it is resumed.
"""
from __future__ import annotations

import asyncio
import inspect
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from core.audit import AuditLogger
from expressions.environment import VariableEnvironment
from expressions.evaluator import ExpressionEvaluator
from expressions.values import render, to_storable
from flows.messages import GuidanceConfig, MessageCatalog, apply_guidance
from flows.models import (
    CallType, Continue, Fail, FlowStep, InputValidation, RetryAction, RetryStrategy,
    StepOutcome, StepType, Suspend, Terminate,
)
from flows.registry import FlowRegistry
from models.errors import BranchNotMatched, FlowError
from models.schemas import FlowFrame, Role, Session
from tools.arguments import args_from_input, args_from_variables, missing_required
from tools.invoker import ToolInvoker
from tools.models import FailureClass, ToolResult

logger = structlog.get_logger()


@dataclass
class StepContext:
    """Per-turn state shared by the controller and the interpreter."""
    session: Session
    controller: Any = None                  # FlowController; FLOW steps call start_flow
    language: str = "en"
    user_input: str = ""
    output: list[str] = field(default_factory=list)
    steps_taken: int = 0
    recovering: bool = False

    def emit(self, text: Optional[str]):
        if text:
            self.output.append(text)


class StepInterpreter:

    def __init__(
        self,
        evaluator: ExpressionEvaluator,
        invoker: ToolInvoker,
        flows: FlowRegistry,
        catalog: MessageCatalog,
        guidance: Optional[GuidanceConfig] = None,
        audit: Optional[AuditLogger] = None,
        global_variables: Optional[dict[str, Any]] = None,
        history_limit: int = 20,
        sleep: Callable = asyncio.sleep,
        intent: Any = None,
    ):
        self.evaluator = evaluator
        self.invoker = invoker
        self.flows = flows
        self.catalog = catalog
        self.guidance = guidance or GuidanceConfig()
        self.audit = audit or AuditLogger()
        self.global_variables = dict(global_variables or {})
        self.history_limit = history_limit
        self._sleep = sleep
        self.intent = intent                    # IntentResolver; generates missing tool args

    def environment(self, frame: FlowFrame, ctx: StepContext) -> VariableEnvironment:
        return VariableEnvironment(
            local=frame.variables,
            globals=self.global_variables,
            cargo=ctx.session.cargo,
            system={
                "userInput": ctx.user_input,
                "sessionId": ctx.session.session_id,
                "userId": ctx.session.user_id,
                "flowName": frame.flow_name,
            },
        )

    # ══════════════════════════════════════════════════════════
    #  EXECUTION
    # ══════════════════════════════════════════════════════════

    async def execute(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        """Run `step`, which must be the top of `frame.steps`."""
        if step.type != StepType.SAY_GET and frame.steps:
            frame.steps.pop()

        started = time.monotonic()
        if step.type == StepType.SAY:
            outcome = await self._exec_say(step, frame, ctx)
        elif step.type == StepType.SAY_GET:
            outcome = await self._exec_say_get(step, frame, ctx)
        elif step.type == StepType.SET:
            outcome = await self._exec_set(step, frame, ctx)
        elif step.type == StepType.CALL_TOOL:
            outcome = await self._exec_call_tool(step, frame, ctx)
        elif step.type == StepType.FLOW:
            outcome = await self._exec_flow(step, frame, ctx)
        elif step.type == StepType.SWITCH:
            outcome = await self._exec_switch(step, frame, ctx)
        elif step.type == StepType.CASE:
            outcome = await self._exec_case(step, frame, ctx)
        else:
            outcome = await self._exec_return(step, frame, ctx)

        frame.transaction.record_step(
            step.label, step.type.value, _outcome_label(outcome),
            duration_ms=(time.monotonic() - started) * 1000,
        )
        logger.debug("step_executed", flow_id=frame.flow_id, step_id=step.label,
                     step_type=step.type.value, outcome=_outcome_label(outcome))
        return outcome

    # ── SAY / SAY-GET ─────────────────────────────────

    async def _exec_say(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        text = self.evaluator.interpolate(step.text_for(ctx.language), self.environment(frame, ctx))
        ctx.emit(text)
        frame.add_history(Role.ASSISTANT.value, text, step.label, self.history_limit)
        return Continue()

    async def _exec_say_get(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        text = self.evaluator.interpolate(step.text_for(ctx.language), self.environment(frame, ctx))
        if not step.variable:
            logger.warning("say_get_without_variable", flow_id=frame.flow_id, step_id=step.label)
            frame.steps.pop()
            ctx.emit(text)
            return Continue()

        flow = self.flows.get(frame.flow_id)
        prompt = apply_guidance(
            text,
            self.guidance,
            self.catalog,
            flow_name=frame.flow_name,
            flow_prompt=flow.prompt_for(ctx.language) if flow else frame.flow_name,
            financial=flow.is_financial if flow else False,
            language=ctx.language,
        )
        ctx.emit(prompt)
        frame.add_history(Role.ASSISTANT.value, text, step.label, self.history_limit)
        frame.pending_variable = step.variable
        frame.awaiting_input = True
        frame.last_prompt = prompt
        return Suspend(step.variable)

    # ── SET / RETURN ──────────────────────────────────

    async def _exec_set(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        value = to_storable(self.evaluator.resolve_value(step.value, self.environment(frame, ctx)))
        if step.variable:
            frame.variables[step.variable] = value
        else:
            logger.warning("set_without_variable", flow_id=frame.flow_id, step_id=step.label)
        return Continue()

    async def _exec_return(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        value = None
        if step.value is not None:
            value = to_storable(self.evaluator.resolve_value(step.value, self.environment(frame, ctx)))
        if value is not None and value != "":
            ctx.emit(render(value))
        frame.steps.clear()
        return Terminate(value)

    # ── CALL-TOOL ─────────────────────────────────────

    async def _exec_call_tool(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        env = self.environment(frame, ctx)
        args = await self._tool_args(step, frame, ctx, env)

        attempts = 0
        while True:
            attempts += 1
            result = await self.invoker.try_invoke(step.tool, args, env, scope=ctx.session.user_id)
            if result.ok or attempts > self._retries_allowed(step, result):
                break
            logger.info("tool_retry", tool_id=step.tool, attempt=attempts,
                        failure_class=result.failure_class.value if result.failure_class else None)
            await self._retry_pause(step, attempts)
            behavior = step.retry_behavior
            if behavior is not None and behavior.show_progressive_help and attempts > 1:
                self._progressive_help(step, frame, ctx, result, attempts)

        if result.ok:
            if step.variable:
                frame.variables[step.variable] = to_storable(result.value)
            self.audit.tool_executed(frame, step.tool, args, result.duration_ms)
            return Continue()

        if step.variable:
            frame.variables[step.variable] = result.error
        failure_class = result.failure_class or FailureClass.GENERIC
        self.audit.tool_error(frame, step.tool, result.error or "", failure_class.value, attempts)

        handler = step.on_fail
        if attempts > 1 and step.retry_behavior is not None \
                and step.retry_behavior.escalate_after_max_retries is not None:
            handler = step.retry_behavior.escalate_after_max_retries
        if handler is not None:
            self._place_on_fail(handler, frame, ctx)
            return Continue()

        self._cancel_on_failure(step, frame, ctx, result)
        return Continue()

    async def _tool_args(
        self, step: FlowStep, frame: FlowFrame, ctx: StepContext, env: VariableEnvironment,
    ) -> dict[str, Any]:
        if step.args is not None:
            resolved = self.evaluator.resolve_value(step.args, env)
            return to_storable(resolved) if isinstance(resolved, dict) else {}

        tool = self.invoker.registry.get(step.tool)
        if tool is None or not tool.parameters.properties:
            return {}
        args = args_from_variables(tool, env)
        missing = missing_required(tool, args)
        if missing:
            args.update(args_from_input(tool, ctx.user_input, missing))
            missing = missing_required(tool, args)
        if missing and self.intent is not None and ctx.user_input:
            known = {**env.globals, **env.local, **args}
            generated = await self.intent.generate_tool_args(tool, ctx.user_input, known, frame.history)
            args.update({name: generated[name] for name in missing if name in generated})
        if not args and ctx.user_input:
            args = {"userInput": ctx.user_input}
        logger.debug("tool_args_inferred", tool_id=tool.id, params=sorted(args),
                     missing=missing_required(tool, args))
        return args

    @staticmethod
    def _retries_allowed(step: FlowStep, result: ToolResult) -> int:
        if step.retry_strategy == RetryStrategy.MANUAL:
            return 0
        limit = max(0, step.max_retries)
        for condition in step.retry_on_conditions:
            try:
                matched = re.search(condition.error_pattern, result.error or "", re.IGNORECASE)
            except re.error as e:
                logger.warning("retry_pattern_invalid", pattern=condition.error_pattern, error=str(e))
                continue
            if matched:
                return limit if condition.action in (RetryAction.RETRY, RetryAction.ASK_USER) else 0

        if result.failure_class == FailureClass.RECOVERABLE:
            return limit
        if result.failure_class == FailureClass.UNRECOVERABLE:
            return 0
        return min(1, limit)

    async def _retry_pause(self, step: FlowStep, retry: int):
        delay_ms = step.retry_delay_ms
        if step.retry_strategy == RetryStrategy.LINEAR:
            delay_ms *= retry
        elif step.retry_strategy == RetryStrategy.EXPONENTIAL:
            delay_ms += min(1000 * 2 ** (retry - 1), 30000)
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000.0)

    def _progressive_help(self, step: FlowStep, frame: FlowFrame, ctx: StepContext, result: ToolResult, retry: int):
        key = {2: "retry_help_second", 3: "retry_help_third"}.get(retry, "retry_help_many")
        tool = self.invoker.registry.get(step.tool)
        message = self.catalog.get(key, ctx.language,
                                   toolName=tool.display_name if tool else step.tool,
                                   attempt=retry,
                                   errorMessage=result.error)
        frame.add_history(Role.SYSTEM.value, message, f"{step.label}-retry-help", self.history_limit)
        ctx.emit(message)

    def _place_on_fail(self, on_fail: FlowStep, frame: FlowFrame, ctx: StepContext):
        handler = on_fail.model_copy(deep=True)
        placement = on_fail.effective_call_type(CallType.REPLACE)
        if handler.type == StepType.FLOW and handler.call_type is None:
            handler.call_type = CallType.REPLACE

        if placement == CallType.CALL:
            frame.steps.append(handler)
        elif placement == CallType.REBOOT:
            for other in ctx.session.all_frames():
                if other is not frame:
                    other.transaction.fail("rebooted by onFail handler")
                    self.audit.transaction_failed(other)
            ctx.session.flow_stacks = [[frame]]
            frame.steps = [handler]
        else:
            frame.steps = [handler]
        logger.info("tool_on_fail_dispatched", flow_id=frame.flow_id, handler=handler.label,
                    placement=placement.value)

    def _cancel_on_failure(self, step: FlowStep, frame: FlowFrame, ctx: StepContext, result: ToolResult):
        tool = self.invoker.registry.get(step.tool)
        tool_name = tool.display_name if tool else step.tool
        if result.failure_class == FailureClass.RECOVERABLE:
            message = self.catalog.get("tool_unavailable", ctx.language, toolName=tool_name)
        else:
            message = self.catalog.get("tool_failed", ctx.language,
                                       toolName=tool_name, errorMessage=result.error)
        frame.steps.clear()
        frame.transaction.fail(result.error or "tool failed")
        self.audit.transaction_failed(frame)
        ctx.emit(message)

    # ── FLOW ──────────────────────────────────────────

    async def _exec_flow(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        try:
            ctx.controller.start_flow(
                step.target_flow,
                step.effective_call_type(CallType.CALL),
                frame,
                ctx,
                return_variable=step.variable,
            )
        except FlowError as e:
            return Fail(e)
        return Continue()

    # ── SWITCH / CASE ─────────────────────────────────

    async def _exec_switch(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        env = self.environment(frame, ctx)
        if step.variable:
            raw = env.resolve_path(step.variable)
        else:
            raw = self.evaluator.resolve_value(step.value, env)
        key = render(raw)

        default = None
        for branch in step.branches:
            if branch.is_default:
                default = default or branch
            elif branch.key == key:
                frame.push_steps([branch.step])
                return Continue()
        if default is not None:
            frame.push_steps([default.step])
            return Continue()
        return Fail(BranchNotMatched("SWITCH", key, frame.flow_name))

    async def _exec_case(self, step: FlowStep, frame: FlowFrame, ctx: StepContext) -> StepOutcome:
        env = self.environment(frame, ctx)
        default = None
        for branch in step.branches:
            if branch.is_default:
                default = default or branch
                continue
            condition = branch.condition
            if condition is None:
                logger.warning("case_branch_without_condition", flow_id=frame.flow_id, key=branch.key)
                continue
            if self.evaluator.evaluate_condition(condition, env):
                frame.push_steps([branch.step])
                return Continue()
        if default is not None:
            frame.push_steps([default.step])
            return Continue()
        return Fail(BranchNotMatched("CASE", None, frame.flow_name))

    # ══════════════════════════════════════════════════════════
    #  INPUT
    # ══════════════════════════════════════════════════════════

    async def accept_input(self, frame: FlowFrame, text: str, ctx: StepContext) -> bool:
        """
        Bind a user answer to the frame's pending SAY-GET variable.

        Returns False when validation rejects the answer; the error text
        and the original prompt are emitted and the frame keeps waiting.
        """
        step = frame.top_step
        variable = frame.pending_variable or (step.variable if step else None)
        validation = step.input_validation if step is not None and step.type == StepType.SAY_GET else None

        error = await self._validate_input(validation, text, frame)
        if error is not None:
            logger.info("input_rejected", flow_id=frame.flow_id, variable=variable)
            ctx.emit(error or self.catalog.get("invalid_input", ctx.language))
            ctx.emit(frame.last_prompt)
            return False

        if variable:
            frame.variables[variable] = text
        frame.pending_variable = None
        frame.awaiting_input = False
        if step is not None and step.type == StepType.SAY_GET:
            frame.steps.pop()
            frame.transaction.record_step(step.label, step.type.value, "answered",
                                          detail={variable or "": text})
        return True

    async def _validate_input(
        self, validation: Optional[InputValidation], text: str, frame: FlowFrame,
    ) -> Optional[str]:
        """None when the answer passes; otherwise the message to show (may be empty)."""
        if validation is None:
            return None

        for rule in validation.patterns:
            subject = text
            if rule.field and rule.field != frame.pending_variable:
                subject = render(frame.variables.get(rule.field, ""))
            try:
                matched = re.search(rule.pattern, subject) is not None
            except re.error as e:
                logger.warning("input_pattern_invalid", pattern=rule.pattern, error=str(e))
                continue
            if not matched:
                return rule.message

        name = validation.custom_validator
        if not name:
            return None
        validator = self.invoker.capabilities.get(name)
        if validator is None:
            logger.warning("custom_validator_missing", validator=name)
            return None
        try:
            verdict = validator(text, dict(frame.variables))
            if inspect.isawaitable(verdict):
                verdict = await verdict
        except Exception as e:
            logger.error("custom_validator_failed", validator=name, error=str(e))
            return ""

        if isinstance(verdict, dict):
            if verdict.get("is_valid"):
                return None
            errors = verdict.get("errors") or []
            return str(errors[0]) if errors else ""
        return None if verdict else ""


def _outcome_label(outcome: StepOutcome) -> str:
    if isinstance(outcome, Suspend):
        return "suspended"
    if isinstance(outcome, Terminate):
        return "returned"
    if isinstance(outcome, Fail):
        return "error"
    return "success"
