"""
Intent Resolution — which flow, if any, a user turn belongs to.

Two questions are asked of every user turn:

  resolve_flow(text)              No flow is active: should this turn start one?
  detect_interruption(text, ...)  A flow is active: is this a strong request
                                  for a *different* flow, or an answer?

`generate_tool_args` fills CALL-TOOL arguments that could not be inferred
from variables or the raw turn.

Both flow questions try a direct id/name match first (case-insensitive)
and only then consult the host's AI callback. The callback receives a
structured system/user prompt pair and returns text; it may be sync or
async. Any callback failure or malformed reply means "no flow" / "no
interruption" / "no arguments" and is logged, never raised.
"""
from __future__ import annotations

import inspect
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from flows.models import FlowDefinition
from flows.registry import FlowRegistry
from models.schemas import ContextEntry, sanitize_for_log
from tools.arguments import coerce_to_schema
from tools.models import ToolDefinition

logger = structlog.get_logger()

_FENCE_RE = re.compile(r'^```(?:json)?\s*|\s*```$', re.IGNORECASE)
_OBJECT_RE = re.compile(r'\{.*\}', re.DOTALL)
_NO_FLOW = ("", "none", "null")

RESOLVE_TASK = (
    "Considering the chat history when available and applicable, "
    "decide if the user input should trigger any available flow."
)
RESOLVE_RULES = (
    "- Return the exact flow name if a match is found\n"
    "- Return \"None\" if no workflow applies\n"
    "- Consider user intent and the chat context\n"
    "- Prioritize the most relevant flow considering all available flows\n"
)
INTERRUPT_TASK = (
    "Analyze the user input within the current flow context to determine if it "
    "represents a STRONG intent to switch to a completely different workflow, "
    "or if it's a response to the current flow."
)
INTERRUPT_RULES = (
    "STRONG intent (switch): explicit action requests, complete topic changes, new service requests.\n"
    "WEAK intent (continue): direct answers to the prompt (\"1\", \"yes\", a value), "
    "follow-up questions, partial information, corrections.\n"
    "Be conservative: if the flow just asked a question, treat the input as an answer "
    "unless it is clearly unrelated.\n"
)
INTERRUPT_SCHEMA = (
    '{\n'
    '  "isStrongIntent": true/false,\n'
    '  "targetFlow": "FlowName" or null,\n'
    '  "confidence": 0.0-1.0,\n'
    '  "reasoning": "brief explanation"\n'
    '}'
)
ARGS_TASK = "Extract the arguments for the \"{tool}\" tool from the user input and the known variables."
ARGS_RULES = (
    "- Use only values stated by the user or present in the variables\n"
    "- Omit any argument you cannot determine\n"
    "- Numbers must be JSON numbers, without currency symbols\n"
)


@dataclass
class InterruptionVerdict:
    is_strong_intent: bool = False
    target_flow: Optional[str] = None
    confidence: float = 0.0
    reasoning: str = ""


def build_prompt(
    task: str,
    rules: str,
    user_input: str,
    flows: list[FlowDefinition],
    context: str = "",
    json_schema: str = "",
) -> tuple[str, str]:
    """Return the (system, user) prompt pair sent to the AI callback."""
    system = f"<task>\n{task}\n</task>\n\n<rules>\n{rules}</rules>"
    if json_schema:
        system += (
            f"\n\n<json-schema>\n{json_schema}\n</json-schema>\n\n"
            "<instructions>\nRespond ONLY with valid JSON matching the schema above. "
            "No additional text or explanation.\n</instructions>"
        )
    user = f"<context>\n{context}\n</context>\n\n" if context else ""
    user += f"<user-input>\n{user_input}\n</user-input>"
    if flows:
        menu = "\n".join(
            f"{f.display_name}: {f.description or f.prompt} (Risk: {f.metadata.risk_level or 'unknown'})"
            for f in flows
        )
        user += f"\n\n<available-flows>\n{menu}\n</available-flows>"
    return system, user


def parse_json_reply(text: str) -> dict[str, Any]:
    """Strip code fences and surrounding prose, then parse a JSON object."""
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    match = _OBJECT_RE.search(cleaned)
    if match:
        cleaned = match.group(0)
    parsed = json.loads(cleaned)
    if not isinstance(parsed, dict):
        raise ValueError("AI reply is not a JSON object")
    return parsed


def format_history(entries: list[ContextEntry]) -> str:
    lines = []
    for entry in entries:
        content = entry.content if isinstance(entry.content, str) else json.dumps(entry.content, default=str)
        lines.append(f"{entry.role.capitalize()}: {content}")
    return "\n\n".join(lines)


class IntentResolver:

    def __init__(self, registry: FlowRegistry, ai_callback: Optional[Callable] = None):
        self.registry = registry
        self.ai_callback = ai_callback

    def direct_match(self, text: str) -> Optional[FlowDefinition]:
        candidate = (text or "").strip()
        if not candidate:
            return None
        flow = self.registry.find(candidate)
        return flow if flow is not None and flow.primary else None

    async def resolve_flow(self, text: str, history: Optional[list[ContextEntry]] = None) -> Optional[FlowDefinition]:
        """Pick the flow a fresh turn should start, or None."""
        direct = self.direct_match(text)
        if direct:
            logger.info("flow_direct_match", flow_id=direct.id)
            return direct
        if self.ai_callback is None:
            return None

        menu = self.registry.list_primary()
        if not menu:
            return None
        context = f"<chat-history>\n{format_history(history)}\n</chat-history>" if history else ""
        system, user = build_prompt(RESOLVE_TASK, RESOLVE_RULES, text, menu, context)
        try:
            reply = (await self._ask(system, user)).strip().strip('"').strip()
        except Exception as e:
            logger.error("flow_resolution_failed", error=str(e))
            return None

        if reply.lower() in _NO_FLOW:
            logger.info("flow_not_triggered")
            return None
        flow = self.registry.find(reply)
        if flow is None:
            logger.warning("flow_resolution_unknown_flow", reply=reply)
        return flow

    async def detect_interruption(
        self,
        text: str,
        current_flow_id: str,
        history: Optional[list[ContextEntry]] = None,
    ) -> Optional[FlowDefinition]:
        """Return the flow a strong-intent turn switches to, or None."""
        direct = self.direct_match(text)
        if direct is not None:
            return direct if direct.id != current_flow_id else None
        if self.ai_callback is None:
            return None

        current = self.registry.get(current_flow_id)
        current_name = current.display_name if current else current_flow_id
        context = (
            f"CURRENT SITUATION: User is in \"{current_name}\" flow. Analyze if their input is "
            f"a response to this flow or a request for a different workflow."
        )
        if history:
            context = f"<flow-history>\n{format_history(history)}\n</flow-history>\n\n{context}"
        system, user = build_prompt(INTERRUPT_TASK, INTERRUPT_RULES, text,
                                    self.registry.list_primary(), context, INTERRUPT_SCHEMA)
        try:
            verdict = self._verdict(parse_json_reply(await self._ask(system, user)))
        except Exception as e:
            logger.warning("intent_analysis_failed", error=str(e))
            return None

        logger.info("intent_analysis",
                    strong=verdict.is_strong_intent,
                    target=verdict.target_flow,
                    confidence=verdict.confidence)
        if not verdict.is_strong_intent or not verdict.target_flow:
            return None
        target = self.registry.find(verdict.target_flow)
        if target is None or target.id == current_flow_id:
            return None
        return target

    async def generate_tool_args(
        self,
        tool: ToolDefinition,
        text: str,
        known: dict[str, Any],
        history: Optional[list[ContextEntry]] = None,
    ) -> dict[str, Any]:
        """Ask the callback for tool arguments; {} when unavailable or unusable."""
        if self.ai_callback is None:
            return {}
        schema = json.dumps(tool.parameters.model_dump(), indent=2)
        context = f"<variables>\n{json.dumps(sanitize_for_log(known), default=str)}\n</variables>"
        if tool.description:
            context = f"<tool-description>\n{tool.description}\n</tool-description>\n\n{context}"
        if history:
            context = f"<chat-history>\n{format_history(history)}\n</chat-history>\n\n{context}"
        system, user = build_prompt(ARGS_TASK.format(tool=tool.display_name), ARGS_RULES, text, [],
                                    context, schema)
        try:
            generated = coerce_to_schema(tool, parse_json_reply(await self._ask(system, user)))
        except Exception as e:
            logger.warning("tool_args_generation_failed", tool_id=tool.id, error=str(e))
            return {}
        logger.info("tool_args_generated", tool_id=tool.id, params=sorted(generated))
        return generated

    async def _ask(self, system: str, user: str) -> str:
        reply = self.ai_callback(system, user)
        if inspect.isawaitable(reply):
            reply = await reply
        if not isinstance(reply, str):
            raise TypeError("AI callback must return a string response")
        return reply

    @staticmethod
    def _verdict(data: dict[str, Any]) -> InterruptionVerdict:
        try:
            confidence = float(data.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        return InterruptionVerdict(
            is_strong_intent=data.get("isStrongIntent") is True,
            target_flow=data.get("targetFlow") or None,
            confidence=confidence,
            reasoning=str(data.get("reasoning", "")),
        )
