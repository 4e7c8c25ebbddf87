"""
Flow Definition Models — Declarative conversational workflows.

A FlowDefinition is an ordered list of steps that the interpreter runs
against a flow frame. Steps are a tagged variant keyed by `type`:

  - SAY        Render text and continue
  - SAY-GET    Render a prompt and suspend until the user answers
  - SET        Assign a resolved value to a flow variable
  - CALL-TOOL  Invoke a registered tool and store its result
  - FLOW       Start another flow (call | replace | reboot)
  - SWITCH     Exact-match branching on a variable's value
  - CASE       First-truthy `condition:<expr>` branching
  - RETURN     Finish the flow, optionally handing a value to the caller

Definitions are immutable once registered; frames copy the steps they run.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class StepType(str, Enum):
    """What kind of work a flow step does."""
    SAY = "SAY"                   # Render text, continue
    SAY_GET = "SAY-GET"           # Render prompt, wait for input
    SET = "SET"                   # Assign a variable
    CALL_TOOL = "CALL-TOOL"       # Invoke a tool, store result
    FLOW = "FLOW"                 # Start another flow
    SWITCH = "SWITCH"             # Exact-value branching
    CASE = "CASE"                 # Conditional branching
    RETURN = "RETURN"             # End flow with a value


class CallType(str, Enum):
    """How a started flow attaches to the stack."""
    CALL = "call"                 # push on top, resume caller afterwards
    REPLACE = "replace"           # take over the caller's frame
    REBOOT = "reboot"             # clear every stack, start fresh


class RetryAction(str, Enum):
    """What a matching `retry_on_conditions` entry does with a tool failure."""
    RETRY = "retry"
    ASK_USER = "ask_user"         # retried like RETRY
    SKIP = "skip"                 # no retry
    FALLBACK = "fallback"         # no retry


class RetryStrategy(str, Enum):
    """Delay schedule between CALL-TOOL retries."""
    IMMEDIATE = "immediate"       # retry_delay_ms each time
    LINEAR = "linear"             # retry_delay_ms x retry number
    EXPONENTIAL = "exponential"   # retry_delay_ms + min(1s x 2^(n-1), 30s)
    MANUAL = "manual"             # never retried automatically


DEFAULT_BRANCH = "default"
CONDITION_PREFIX = "condition:"


# ──────────────────────────────────────────────────────────────
#  Step building blocks
# ──────────────────────────────────────────────────────────────

class ValidationPattern(BaseModel):
    pattern: str
    message: str = ""
    field: str = ""                               # variable to test; empty = the answer itself


class InputValidation(BaseModel):
    """Checks applied to a SAY-GET answer before it is bound."""
    patterns: list[ValidationPattern] = []
    custom_validator: str = ""                    # capability name returning bool or {is_valid, errors}


class RetryCondition(BaseModel):
    error_pattern: str                            # regex, matched case-insensitively
    action: RetryAction = RetryAction.RETRY


class RetryBehavior(BaseModel):
    show_progressive_help: bool = False           # from the second retry on
    escalate_after_max_retries: Optional["FlowStep"] = None


class Branch(BaseModel):
    """One arm of a SWITCH or CASE step. Declaration order is significant."""
    key: str
    step: "FlowStep"

    @property
    def is_default(self) -> bool:
        return self.key.strip() == DEFAULT_BRANCH

    @property
    def condition(self) -> Optional[str]:
        stripped = self.key.strip()
        if stripped.startswith(CONDITION_PREFIX):
            return stripped[len(CONDITION_PREFIX):].strip()
        return None


class FlowStep(BaseModel):
    """
    A single step in a flow.

    Which fields matter depends on `type`:

    SAY / SAY-GET:  value (+ localized), variable (SAY-GET), input_validation
    SET:            variable, value
    CALL-TOOL:      tool, args, variable, on_fail, max_retries, retry_delay_ms,
                    retry_strategy, retry_on_conditions, retry_behavior
    FLOW:           value | name | next_flow, call_type, variable
    SWITCH:         variable or value, branches
    CASE:           branches keyed `condition:<expr>` / `default`
    RETURN:         value
    """
    id: str = ""
    type: StepType
    value: Any = None                             # text, value expression or flow name
    localized: dict[str, str] = {}                # lang → text (from value_<lang> keys)
    variable: Optional[str] = None

    # ── CALL-TOOL ─────────────────────────────────────
    tool: str = ""
    args: Optional[dict[str, Any]] = None         # None = infer from frame variables
    on_fail: Optional["FlowStep"] = None
    max_retries: int = 2
    retry_delay_ms: int = 0
    retry_strategy: RetryStrategy = RetryStrategy.IMMEDIATE
    retry_on_conditions: list[RetryCondition] = []
    retry_behavior: Optional[RetryBehavior] = None

    # ── FLOW ──────────────────────────────────────────
    name: str = ""                                # alias for the target flow
    next_flow: str = ""                           # alias for the target flow
    call_type: Optional[CallType] = None

    # ── SWITCH / CASE ─────────────────────────────────
    branches: list[Branch] = []

    # ── SAY-GET ───────────────────────────────────────
    input_validation: Optional[InputValidation] = None

    def text_for(self, language: str) -> Any:
        """Localized text for SAY / SAY-GET, falling back to `value`."""
        if language and language in self.localized:
            return self.localized[language]
        return self.value

    @property
    def target_flow(self) -> str:
        for candidate in (self.value, self.name, self.next_flow):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        return ""

    def effective_call_type(self, default: CallType = CallType.CALL) -> CallType:
        return self.call_type or default

    @property
    def label(self) -> str:
        return self.id or self.type.value


Branch.model_rebuild()
RetryBehavior.model_rebuild()
FlowStep.model_rebuild()


# ──────────────────────────────────────────────────────────────
#  Flow definition
# ──────────────────────────────────────────────────────────────

class VariableSpec(BaseModel):
    """A declared flow variable and its optional initial value."""
    name: str
    type: str = "string"
    scope: str = "flow"
    value: Any = None                             # initial value; None = not initialised
    description: str = ""


class FlowMetadata(BaseModel):
    risk_level: str = ""                          # low | medium | high
    audit: bool = False
    category: str = ""                            # e.g. "payment", "support"
    extra: dict[str, Any] = {}


FINANCIAL_MARKERS = ("payment", "transfer", "financial")


class FlowDefinition(BaseModel):
    """
    A complete conversational workflow.

    Example:
        id: "greet"
        name: "Greeting"
        prompt: "Say hello"
        steps:
          - id: ask_name
            type: SAY-GET
            variable: user_name
            value: "What's your name?"
          - id: hello
            type: SAY
            value: "Hello {{user_name}}!"
    """
    id: str
    name: str = ""
    version: str = "1.0"
    prompt: str = ""                              # one-line description for intent matching
    prompts: dict[str, str] = {}                  # lang → prompt
    description: str = ""
    primary: bool = True                          # offered to intent resolution
    steps: list[FlowStep] = []
    variables: list[VariableSpec] = []
    metadata: FlowMetadata = Field(default_factory=FlowMetadata)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def prompt_for(self, language: str) -> str:
        return self.prompts.get(language) or self.prompt or self.description or self.display_name

    def initial_variables(self) -> dict[str, Any]:
        return {
            spec.name: copy.deepcopy(spec.value)
            for spec in self.variables
            if spec.value is not None
        }

    @property
    def is_financial(self) -> bool:
        haystack = " ".join([self.id, self.name, self.metadata.category]).lower()
        return any(marker in haystack for marker in FINANCIAL_MARKERS)


# ──────────────────────────────────────────────────────────────
#  Step outcomes — what the interpreter reports back
# ──────────────────────────────────────────────────────────────

@dataclass
class Continue:
    """The step finished; run the next one."""


@dataclass
class Suspend:
    """A SAY-GET is waiting for `variable`."""
    variable: str


@dataclass
class Terminate:
    """RETURN: the frame is done, `value` goes to the caller."""
    value: Any = None


@dataclass
class Fail:
    """A structural failure that the controller must recover from."""
    error: Exception


StepOutcome = Continue | Suspend | Terminate | Fail
