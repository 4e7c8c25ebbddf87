"""
Session-facing data models for the workflow engine.

A Session is a plain value: the host stores it between turns and hands it
back on the next call. Everything the engine needs to resume a conversation
lives here, including the stack-of-stacks of flow frames.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from flows.models import FlowStep


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class FrameState(str, Enum):
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


SENSITIVE_KEYS = ("password", "token", "signature", "key", "secret", "pin")
REDACTED = "[REDACTED]"


def is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(word in lowered for word in SENSITIVE_KEYS)


def sanitize_for_log(data: Any) -> Any:
    """Replace values stored under sensitive keys with a redaction marker."""
    if isinstance(data, dict):
        return {
            k: REDACTED if is_sensitive(str(k)) else sanitize_for_log(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [sanitize_for_log(v) for v in data]
    return data


# ──────────────────────────────────────────────────────────────
#  Turns and context
# ──────────────────────────────────────────────────────────────

class Turn(BaseModel):
    """One utterance from the user or the assistant."""
    role: str = Role.USER.value
    content: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class ContextEntry(BaseModel):
    """A turn or step result remembered by a frame."""
    role: str                                 # user | assistant | system
    content: Any = None
    step_id: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Transactions — audit record of one frame's lifetime
# ──────────────────────────────────────────────────────────────

class TransactionStep(BaseModel):
    step_id: str = ""
    step_type: str = ""
    outcome: str = ""                         # success | error | suspended
    duration_ms: float = 0.0
    detail: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=_utcnow)


class TransactionRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow_name: str = ""
    initiated_by: str = ""                    # user id or parent flow name
    user_id: str = ""
    state: TransactionState = TransactionState.ACTIVE
    steps: list[TransactionStep] = []
    failure: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def record_step(
        self,
        step_id: str,
        step_type: str,
        outcome: str,
        duration_ms: float = 0.0,
        detail: Optional[dict[str, Any]] = None,
    ):
        self.steps.append(TransactionStep(
            step_id=step_id,
            step_type=step_type,
            outcome=outcome,
            duration_ms=round(duration_ms, 3),
            detail=sanitize_for_log(detail or {}),
        ))

    def complete(self):
        if self.state == TransactionState.ACTIVE:
            self.state = TransactionState.COMPLETED
            self.completed_at = _utcnow()

    def fail(self, reason: str):
        if self.state == TransactionState.ACTIVE:
            self.state = TransactionState.FAILED
            self.failure = reason
            self.completed_at = _utcnow()


# ──────────────────────────────────────────────────────────────
#  Flow frames and the session
# ──────────────────────────────────────────────────────────────

class FlowFrame(BaseModel):
    """One running flow instance. `steps` is a stack: the last element runs next."""
    flow_id: str
    flow_name: str = ""
    flow_version: str = "1.0"
    variables: dict[str, Any] = {}            # flow-local scope, insertion ordered
    steps: list[FlowStep] = []
    pending_variable: Optional[str] = None    # set while a SAY-GET waits for input
    awaiting_input: bool = False
    last_prompt: str = ""
    call_type: str = "root"                   # root | call | replace | reboot | interruption
    return_variable: Optional[str] = None     # caller variable receiving our RETURN value
    call_path: list[str] = []                 # flow ids from stack root to this frame
    resume_notice: bool = False               # emit flow_resumed before re-prompting
    transaction: TransactionRecord = Field(default_factory=TransactionRecord)
    history: list[ContextEntry] = []
    started_at: datetime = Field(default_factory=_utcnow)

    @property
    def state(self) -> FrameState:
        return FrameState.AWAITING_INPUT if self.awaiting_input else FrameState.RUNNING

    @property
    def top_step(self) -> Optional[FlowStep]:
        return self.steps[-1] if self.steps else None

    def push_steps(self, steps: list[FlowStep]):
        """Push `steps` so that the first one runs next."""
        self.steps.extend(reversed([s.model_copy(deep=True) for s in steps]))

    def add_history(self, role: str, content: Any, step_id: str = "", limit: int = 20):
        self.history.append(ContextEntry(role=role, content=content, step_id=step_id))
        if limit and len(self.history) > limit:
            del self.history[:-limit]


class Session(BaseModel):
    """Everything the engine needs to continue a conversation."""
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ""
    flow_stacks: list[list[FlowFrame]] = Field(default_factory=lambda: [[]])
    cargo: dict[str, Any] = {}                # free-form host data
    last_turns: list[Turn] = []               # turns seen outside any flow
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)

    @property
    def current_stack(self) -> list[FlowFrame]:
        if not self.flow_stacks:
            self.flow_stacks.append([])
        return self.flow_stacks[-1]

    @property
    def active_frame(self) -> Optional[FlowFrame]:
        stack = self.current_stack
        return stack[-1] if stack else None

    @property
    def is_active(self) -> bool:
        return any(stack for stack in self.flow_stacks)

    @property
    def stack_depth(self) -> int:
        return len(self.current_stack)

    def all_frames(self) -> list[FlowFrame]:
        return [frame for stack in self.flow_stacks for frame in stack]

    def remember_turn(self, turn: Turn, limit: int = 20):
        self.last_turns.append(turn)
        if limit and len(self.last_turns) > limit:
            del self.last_turns[:-limit]

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "Session":
        return cls.model_validate_json(data)


class ActivityResult(BaseModel):
    """What update_activity hands back. `response=None` means no flow handled the turn."""
    response: Optional[str] = None
    session: Session
