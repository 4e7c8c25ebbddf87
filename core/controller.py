"""
Flow Stack Controller — the stack-of-stacks that holds running flows.

    session.flow_stacks = [
        [root_frame, called_frame],          ← interrupted stack
        [interrupting_frame],                ← current stack (last)
    ]

A FLOW step attaches its target per call type:

  call      push on the current stack; the caller resumes afterwards and
            receives the callee's variables and RETURN value
  replace   the new frame takes the caller's slot; no return
  reboot    every stack is cleared and only the new frame remains

An interruption opens a new stack on top. When a stack drains the one
below becomes current again, announcing `flow_resumed` before the
suspended frame re-asks its question.

Structural failures (unknown flow, unmatched branch, cycles, depth or
step budget) clear every stack, emit a localized apology and optionally
start the configured recovery flow.
"""
from __future__ import annotations

import copy
from typing import Any, Optional

import structlog

from config.settings import FlowConfig
from core.audit import AuditLogger
from expressions.values import render
from flows.interpreter import StepContext, StepInterpreter
from flows.messages import MessageCatalog
from flows.models import CallType, FlowDefinition, Fail, Suspend, Terminate
from flows.registry import FlowRegistry
from models.errors import (
    BranchNotMatched, CircularFlowReference, FlowDepthExceeded, FlowError,
    FlowNotFound, FlowStepLimitExceeded,
)
from models.schemas import FlowFrame, TransactionRecord, TransactionState, is_sensitive

logger = structlog.get_logger()


class FlowController:

    def __init__(
        self,
        flows: FlowRegistry,
        interpreter: StepInterpreter,
        catalog: MessageCatalog,
        config: Optional[FlowConfig] = None,
        audit: Optional[AuditLogger] = None,
        log: Any = None,
    ):
        self.flows = flows
        self.interpreter = interpreter
        self.catalog = catalog
        self.config = config or FlowConfig()
        self.audit = audit or AuditLogger()
        self.log = log or logger

    # ══════════════════════════════════════════════════════════
    #  STARTING FLOWS
    # ══════════════════════════════════════════════════════════

    def new_frame(
        self,
        flow: FlowDefinition,
        ctx: StepContext,
        call_type: str,
        variables: dict[str, Any],
        chain: list[str],
        initiated_by: str = "",
        return_variable: Optional[str] = None,
    ) -> FlowFrame:
        frame = FlowFrame(
            flow_id=flow.id,
            flow_name=flow.display_name,
            flow_version=flow.version,
            variables=variables,
            call_type=call_type,
            return_variable=return_variable,
            call_path=chain + [flow.id],
            transaction=TransactionRecord(
                flow_name=flow.display_name,
                initiated_by=initiated_by or ctx.session.user_id,
                user_id=ctx.session.user_id,
            ),
        )
        frame.push_steps(flow.steps)
        return frame

    def open_root(self, flow: FlowDefinition, ctx: StepContext, call_type: str = "root") -> FlowFrame:
        """Start `flow` fresh on top of the current stack."""
        frame = self.new_frame(flow, ctx, call_type, flow.initial_variables(), [])
        ctx.session.current_stack.append(frame)
        self.audit.flow_started(frame, ctx.session.user_id)
        return frame

    def start_flow(
        self,
        target: str,
        call_type: CallType,
        caller: FlowFrame,
        ctx: StepContext,
        return_variable: Optional[str] = None,
    ) -> FlowFrame:
        """Attach flow `target` relative to `caller` per `call_type`."""
        flow = self.flows.find(target) if target else None
        if flow is None:
            raise FlowNotFound(target)

        session = ctx.session
        if call_type == CallType.REBOOT:
            chain: list[str] = []
        elif call_type == CallType.REPLACE:
            chain = list(caller.call_path[:-1])
        else:
            chain = list(caller.call_path)
        self._check_cycle(flow, chain)

        if call_type == CallType.REBOOT:
            frame = self.new_frame(flow, ctx, CallType.REBOOT.value, flow.initial_variables(), chain,
                                   initiated_by=caller.flow_name)
            for other in session.all_frames():
                other.transaction.fail(f"rebooted into {flow.id}")
                self.audit.transaction_failed(other)
            session.flow_stacks = [[frame]]
            self.audit.flow_started(frame, session.user_id)
            return frame

        variables = copy.deepcopy(caller.variables)
        for name, value in flow.initial_variables().items():
            variables.setdefault(name, value)

        stack = session.current_stack
        if call_type == CallType.REPLACE:
            frame = self.new_frame(flow, ctx, caller.call_type, variables, chain,
                                   initiated_by=caller.flow_name,
                                   return_variable=caller.return_variable)
            index = next((i for i, f in enumerate(stack) if f is caller), len(stack) - 1)
            caller.transaction.complete()
            self.audit.transaction_completed(caller)
            stack[index] = frame
        else:
            if len(stack) + 1 > self.config.max_stack_depth:
                raise FlowDepthExceeded(flow.id, self.config.max_stack_depth)
            frame = self.new_frame(flow, ctx, CallType.CALL.value, variables, chain,
                                   initiated_by=caller.flow_name,
                                   return_variable=return_variable)
            stack.append(frame)

        self.audit.flow_started(frame, session.user_id)
        return frame

    def _check_cycle(self, flow: FlowDefinition, chain: list[str]):
        repeats = chain.count(flow.id)
        if repeats <= self.config.cycle_warning_depth:
            return
        if self.config.strict_cycles:
            raise CircularFlowReference(flow.id, chain)
        self.log.warning("circular_flow_reference", flow_id=flow.id, chain=chain, repeats=repeats)

    def interrupt(self, ctx: StepContext, target: FlowDefinition) -> FlowFrame:
        """Park the active frame and open a new stack for `target`."""
        session = ctx.session
        current = session.active_frame
        previous_prompt = ""
        if current is not None:
            current.pending_variable = None
            current.awaiting_input = False
            current.resume_notice = True
            previous = self.flows.get(current.flow_id)
            previous_prompt = previous.prompt_for(ctx.language) if previous else current.flow_name

        session.flow_stacks.append([])
        frame = self.open_root(target, ctx, call_type="interruption")
        self.log.info("flow_interrupted",
                      from_flow=current.flow_id if current else None,
                      to_flow=target.id,
                      stacks=len(session.flow_stacks))
        ctx.emit(self.catalog.get(
            "flow_interrupted", ctx.language,
            flowPrompt=target.prompt_for(ctx.language),
            previousFlowPrompt=previous_prompt,
        ))
        return frame

    # ══════════════════════════════════════════════════════════
    #  DRIVING
    # ══════════════════════════════════════════════════════════

    async def run(self, ctx: StepContext):
        """Drive the session, recovering from structural failures."""
        try:
            await self.drive(ctx)
        except FlowError as e:
            await self.recover(ctx, e)

    async def drive(self, ctx: StepContext):
        """Run steps until the top frame suspends or every stack drains."""
        session = ctx.session
        while True:
            stack = session.current_stack
            if not stack:
                if len(session.flow_stacks) <= 1:
                    return
                session.flow_stacks.pop()
                self._announce_resume(ctx)
                continue

            frame = stack[-1]
            if frame.awaiting_input:
                return

            step = frame.top_step
            if step is None:
                self.finish_frame(ctx, frame)
                continue

            ctx.steps_taken += 1
            if ctx.steps_taken > self.config.max_steps_per_turn:
                raise FlowStepLimitExceeded(frame.flow_name, self.config.max_steps_per_turn)

            outcome = await self.interpreter.execute(step, frame, ctx)
            if isinstance(outcome, Suspend):
                return
            if isinstance(outcome, Terminate):
                self.finish_frame(ctx, frame, outcome.value)
            elif isinstance(outcome, Fail):
                raise outcome.error

    def finish_frame(self, ctx: StepContext, frame: FlowFrame, value: Any = None):
        """Pop a drained frame and hand its results to the caller."""
        stack = ctx.session.current_stack
        if stack and stack[-1] is frame:
            stack.pop()
        if frame.transaction.state == TransactionState.ACTIVE:
            frame.transaction.complete()
            self.audit.transaction_completed(frame)

        if frame.call_type != CallType.CALL.value or not stack:
            return
        caller = stack[-1]
        caller.variables.update(frame.variables)
        if frame.return_variable and value is not None:
            caller.variables[frame.return_variable] = value

    def _announce_resume(self, ctx: StepContext):
        frame = ctx.session.active_frame
        if frame is None or not frame.resume_notice:
            return
        frame.resume_notice = False
        flow = self.flows.get(frame.flow_id)
        ctx.emit(self.catalog.get(
            "flow_resumed", ctx.language,
            flowPrompt=flow.prompt_for(ctx.language) if flow else frame.flow_name,
            flowName=frame.flow_name,
        ))
        self.log.info("flow_resumed", flow_id=frame.flow_id)

    # ══════════════════════════════════════════════════════════
    #  RECOVERY
    # ══════════════════════════════════════════════════════════

    async def recover(self, ctx: StepContext, error: FlowError):
        session = ctx.session
        self.log.error("flow_structural_failure", code=error.code, flow=error.flow_name, error=str(error))
        for frame in session.all_frames():
            frame.transaction.fail(str(error))
            self.audit.transaction_failed(frame)
        session.flow_stacks = [[]]
        ctx.emit(self.failure_message(error, ctx.language))

        recovery = self.flows.find(self.config.recovery_flow) if self.config.recovery_flow else None
        if recovery is None or ctx.recovering:
            return
        ctx.recovering = True
        ctx.steps_taken = 0
        self.open_root(recovery, ctx)
        await self.run(ctx)

    def failure_message(self, error: FlowError, language: str) -> str:
        if isinstance(error, FlowNotFound):
            return self.catalog.get("subflow_not_found", language, subFlowName=error.flow_name)
        if isinstance(error, BranchNotMatched):
            if error.step_type == "SWITCH":
                return self.catalog.get("switch_no_branch_found", language, switchValue=error.value)
            return self.catalog.get("case_no_branch_found", language)
        if isinstance(error, CircularFlowReference):
            return self.catalog.get("flow_cycle_detected", language, flowName=error.flow_name)
        if isinstance(error, FlowDepthExceeded):
            return self.catalog.get("flow_depth_exceeded", language)
        if isinstance(error, FlowStepLimitExceeded):
            return self.catalog.get("flow_step_limit", language)
        return self.catalog.get("critical_error", language)

    # ══════════════════════════════════════════════════════════
    #  CONTROL COMMANDS
    # ══════════════════════════════════════════════════════════

    def handle_command(self, command: str, ctx: StepContext) -> str:
        """Answer cancel / help / status without touching the pending question."""
        frame = ctx.session.active_frame
        if frame is None:
            return ""
        self.log.info("control_command", command=command, flow_id=frame.flow_id)
        if command == "cancel":
            return self._cancel(ctx, frame)
        if command == "help":
            return self._help(ctx, frame)
        return self._status(ctx, frame)

    def _cancel(self, ctx: StepContext, frame: FlowFrame) -> str:
        session = ctx.session
        for other in session.all_frames():
            other.transaction.fail("cancelled by user")
            self.audit.transaction_failed(other)
        self.audit.flow_exit(frame, "user_cancel")
        session.flow_stacks = [[]]
        return self.catalog.get("cmd_flow_exited", ctx.language, flowName=frame.flow_name)

    def _help(self, ctx: StepContext, frame: FlowFrame) -> str:
        lang = ctx.language
        msg = self.catalog.get
        lines = [
            msg("cmd_help_title", lang, flowName=frame.flow_name),
            "",
            msg("cmd_help_available_commands", lang),
            msg("cmd_help_cancel", lang),
            msg("cmd_help_status", lang),
            msg("cmd_help_help", lang),
        ]
        flow = self.flows.get(frame.flow_id)
        if flow is not None and flow.is_financial:
            lines += ["", msg("cmd_help_financial_warning", lang)]
        if frame.awaiting_input and frame.last_prompt:
            lines += ["", msg("cmd_help_current_question", lang), frame.last_prompt,
                      "", msg("cmd_help_respond_instruction", lang)]
        else:
            lines += ["", msg("cmd_help_continue_instruction", lang)]
        return "\n".join(lines)

    def _status(self, ctx: StepContext, frame: FlowFrame) -> str:
        lang = ctx.language
        msg = self.catalog.get
        lines = [
            msg("cmd_status_title", lang),
            "",
            msg("cmd_status_current_flow", lang, flowName=frame.flow_name),
            msg("cmd_status_steps_remaining", lang, stepsRemaining=len(frame.steps)),
            msg("cmd_status_stack_depth", lang, stackDepth=ctx.session.stack_depth),
            msg("cmd_status_transaction_id", lang, transactionId=frame.transaction.short_id),
        ]
        if frame.variables:
            hidden = msg("cmd_status_hidden_value", lang)
            lines += ["", msg("cmd_status_collected_info", lang)]
            for name, value in frame.variables.items():
                lines.append(f"- {name}: {hidden if is_sensitive(name) else render(value)}")
        lines += ["", msg("cmd_status_continue_instruction", lang)]
        return "\n".join(lines)
