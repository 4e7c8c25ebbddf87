"""
Audit trail — structured events for flow and tool activity.

Each event carries the frame's transaction id so a host can stitch one
flow instance's lifetime back together from the log stream. Argument and
variable payloads pass through `sanitize_for_log` first.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from models.schemas import FlowFrame, sanitize_for_log


class AuditLogger:
    """
    Emits audit events through structlog, or through a host logger that
    accepts the same `logger.info(event, **fields)` calling convention.
    """

    def __init__(self, logger: Any = None):
        self.log = logger or structlog.get_logger()

    def flow_started(self, frame: FlowFrame, user_id: str = ""):
        self.log.info("flow_started",
                      flow_id=frame.flow_id,
                      flow_version=frame.flow_version,
                      call_type=frame.call_type,
                      transaction_id=frame.transaction.id,
                      user_id=user_id)

    def tool_executed(self, frame: FlowFrame, tool_id: str, args: dict[str, Any], duration_ms: float):
        self.log.info("tool_executed",
                      flow_id=frame.flow_id,
                      tool_id=tool_id,
                      transaction_id=frame.transaction.id,
                      args=sanitize_for_log(args),
                      duration_ms=round(duration_ms, 3))

    def tool_error(self, frame: FlowFrame, tool_id: str, error: str, failure_class: str, attempts: int):
        self.log.warning("tool_error",
                         flow_id=frame.flow_id,
                         tool_id=tool_id,
                         transaction_id=frame.transaction.id,
                         error=error,
                         failure_class=failure_class,
                         attempts=attempts)

    def transaction_completed(self, frame: FlowFrame):
        self.log.info("transaction_completed",
                      flow_id=frame.flow_id,
                      transaction_id=frame.transaction.id,
                      steps=len(frame.transaction.steps))

    def transaction_failed(self, frame: FlowFrame, reason: Optional[str] = None):
        self.log.warning("transaction_failed",
                         flow_id=frame.flow_id,
                         transaction_id=frame.transaction.id,
                         reason=reason or frame.transaction.failure)

    def flow_exit(self, frame: FlowFrame, reason: str):
        self.log.info("flow_exit",
                      flow_id=frame.flow_id,
                      transaction_id=frame.transaction.id,
                      reason=reason,
                      variables=sanitize_for_log(frame.variables))
