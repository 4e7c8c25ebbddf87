"""
Workflow Engine — the host-facing entry point.

    engine = WorkflowEngine(flows=[...], tools=[...], capabilities={...})
    session = engine.init_session("user-1")
    result = await engine.update_activity({"role": "user", "content": "hi"}, session)
    result.response, result.session

Each call to `update_activity` works on a deep copy of the session and
returns the new value. The host persists it however it likes and passes
it back on the next turn. `response=None` means no flow handled the
turn and the host should answer on its own.

Wiring:
  FlowRegistry / ToolRegistry   definitions (models or raw dicts)
  ExpressionEvaluator           templates, conditions, values
  ToolInvoker                   local capabilities, HTTP, mocks
  IntentResolver                direct match, then the host AI callback
  StepInterpreter               one step at a time
  FlowController                stack-of-stacks, commands, recovery
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
import structlog

from config.settings import EngineSettings, get_settings
from core.audit import AuditLogger
from core.controller import FlowController
from core.intent import IntentResolver
from expressions.evaluator import ExpressionEvaluator
from flows.interpreter import StepContext, StepInterpreter
from flows.messages import GuidanceConfig, MessageCatalog, match_command
from flows.models import FlowDefinition
from flows.registry import FlowRegistry
from flows.validation import ValidationReport, validate_flows
from models.schemas import ActivityResult, ContextEntry, Role, Session, Turn
from tools.invoker import ToolInvoker
from tools.models import ToolDefinition
from tools.registry import ToolRegistry
from utils.sanitize import InputSanitizer

logger = structlog.get_logger()


class WorkflowEngine:
    """
    Runs declarative flows against a stream of user turns.

    Holds no per-session state: everything about a conversation lives in
    the Session value the host passes in.
    """

    def __init__(
        self,
        flows: Optional[list[FlowDefinition | dict[str, Any]]] = None,
        tools: Optional[list[ToolDefinition | dict[str, Any]]] = None,
        capabilities: Optional[dict[str, Callable]] = None,
        global_variables: Optional[dict[str, Any]] = None,
        ai_callback: Optional[Callable] = None,
        language: Optional[str] = None,
        messages: Optional[dict[str, dict[str, str]]] = None,
        guidance: Optional[GuidanceConfig | dict[str, Any]] = None,
        functions: Optional[dict[str, Callable]] = None,
        settings: Optional[EngineSettings] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        log: Any = None,
        validate_on_init: Optional[bool] = None,
    ):
        self._settings = settings or get_settings()
        self.language = language or self._settings.language
        self.log = log or logger

        self.flows = FlowRegistry()
        self.flows.register_from_config(flows or [])
        self.tools = ToolRegistry()
        self.tools.register_from_config(tools or [])

        if isinstance(guidance, dict):
            guidance = GuidanceConfig(**guidance)

        self.evaluator = ExpressionEvaluator(
            security_level=self._settings.expressions.security_level,
            functions=functions,
            max_interpolation_passes=self._settings.expressions.max_interpolation_passes,
        )
        self.invoker = ToolInvoker(
            self.tools,
            capabilities=capabilities,
            config=self._settings.tools,
            evaluator=self.evaluator,
            http_transport=http_transport,
        )
        self.catalog = MessageCatalog(messages, self.language)
        self.audit = AuditLogger(self.log)
        self.intent = IntentResolver(self.flows, ai_callback)
        self.interpreter = StepInterpreter(
            self.evaluator,
            self.invoker,
            self.flows,
            self.catalog,
            guidance=guidance or GuidanceConfig.from_settings(self._settings.guidance),
            audit=self.audit,
            global_variables=global_variables if global_variables is not None else self._settings.global_variables,
            history_limit=self._settings.flows.history_limit,
            intent=self.intent,
        )
        self.controller = FlowController(
            self.flows,
            self.interpreter,
            self.catalog,
            config=self._settings.flows,
            audit=self.audit,
            log=self.log,
        )
        self.sanitizer = InputSanitizer()

        self.validation: Optional[ValidationReport] = None
        if validate_on_init if validate_on_init is not None else self._settings.flows.validate_on_init:
            self.validation = validate_flows(self.flows, self.tools.ids)

        self.log.info("workflow_engine_initialized",
                      flows=len(self.flows),
                      tools=len(self.tools),
                      language=self.language,
                      security_level=self.evaluator.security_level.value)

    async def close(self):
        await self.invoker.close()

    # ══════════════════════════════════════════════════════════
    #  SESSIONS
    # ══════════════════════════════════════════════════════════

    def init_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        cargo: Optional[dict[str, Any]] = None,
    ) -> Session:
        session = Session(user_id=user_id, cargo=self.sanitizer.sanitize_cargo(cargo or {}))
        if session_id:
            session.session_id = session_id
        logger.info("session_initialized", session_id=session.session_id, user_id=user_id)
        return session

    async def update_activity(self, turn: Turn | dict[str, Any], session: Session) -> ActivityResult:
        """
        Process one turn and return the response plus the new session.

        Raises ValueError for a turn whose role is neither user nor
        assistant. Any other failure is reported as the localized
        critical_error message with the caller's session unchanged.
        """
        turn = self._coerce_turn(turn)
        working = session.model_copy(deep=True)
        working.last_activity = datetime.now(timezone.utc)

        try:
            response = await self._process(turn, working)
        except Exception as e:
            self.log.error("update_activity_failed",
                           session_id=session.session_id,
                           error=str(e),
                           error_type=type(e).__name__,
                           exc_info=True)
            return ActivityResult(response=self.catalog.get("critical_error"), session=session)

        return ActivityResult(response=response, session=working)

    @staticmethod
    def _coerce_turn(turn: Turn | dict[str, Any]) -> Turn:
        if isinstance(turn, dict):
            turn = Turn.model_validate(turn)
        if turn.role not in (Role.USER.value, Role.ASSISTANT.value):
            raise ValueError(f"Unsupported turn role: {turn.role!r}")
        return turn

    # ══════════════════════════════════════════════════════════
    #  TURN PROCESSING
    # ══════════════════════════════════════════════════════════

    async def _process(self, turn: Turn, session: Session) -> Optional[str]:
        history_limit = self._settings.flows.history_limit
        while not session.current_stack and len(session.flow_stacks) > 1:
            session.flow_stacks.pop()

        if turn.role == Role.ASSISTANT.value:
            frame = session.active_frame
            if frame is not None:
                frame.add_history(Role.ASSISTANT.value, turn.content, limit=history_limit)
            else:
                session.remember_turn(turn, history_limit)
            return None

        raw = turn.content or ""
        text = self.sanitizer.sanitize(raw)
        ctx = StepContext(
            session=session,
            controller=self.controller,
            language=self.language,
            user_input=text,
        )

        frame = session.active_frame
        if frame is not None:
            command = match_command(raw, self.language)
            if command:
                return self.controller.handle_command(command, ctx)

            frame.add_history(Role.USER.value, text, limit=history_limit)
            target = await self.intent.detect_interruption(text, frame.flow_id, frame.history)
            if target is not None:
                self.controller.interrupt(ctx, target)
            elif frame.awaiting_input:
                accepted = await self.interpreter.accept_input(frame, text, ctx)
                if not accepted:
                    return self._join(ctx.output)
        else:
            history = [ContextEntry(role=t.role, content=t.content) for t in session.last_turns]
            session.remember_turn(Turn(role=Role.USER.value, content=text, timestamp=turn.timestamp),
                                  history_limit)
            flow = await self.intent.resolve_flow(text, history)
            if flow is None:
                return None
            logger.info("flow_triggered", flow_id=flow.id, session_id=session.session_id)
            self.controller.open_root(flow, ctx)

        await self.controller.run(ctx)

        output = self._join(ctx.output)
        if not output and not session.is_active:
            output = self.catalog.get("flow_completed_generic")
        return output

    @staticmethod
    def _join(parts: list[str]) -> str:
        return "\n\n".join(p for p in parts if p)


def create_engine(settings: Optional[EngineSettings] = None, **kwargs: Any) -> WorkflowEngine:
    """Build an engine from settings-file flows, tools and global variables."""
    settings = settings or get_settings()
    kwargs.setdefault("flows", settings.flow_definitions)
    kwargs.setdefault("tools", settings.tool_definitions)
    kwargs.setdefault("global_variables", settings.global_variables)
    return WorkflowEngine(settings=settings, **kwargs)
