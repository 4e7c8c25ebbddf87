"""Tests for session models, transactions, sanitization and the audit trail."""
import pytest

from core.audit import AuditLogger
from flows.models import FlowStep, StepType
from models.schemas import (
    FlowFrame, REDACTED, Session, TransactionRecord, TransactionState, Turn,
    is_sensitive, sanitize_for_log,
)
from utils.sanitize import InputSanitizer


class RecordingLogger:
    def __init__(self):
        self.events = []

    def info(self, event, **fields):
        self.events.append(("info", event, fields))

    def warning(self, event, **fields):
        self.events.append(("warning", event, fields))


class TestTransactionRecord:
    def test_complete(self):
        tx = TransactionRecord(flow_name="Pay")
        tx.complete()
        assert tx.state == TransactionState.COMPLETED
        assert tx.completed_at is not None

    def test_terminal_state_is_final(self):
        tx = TransactionRecord()
        tx.fail("timeout")
        tx.complete()
        assert tx.state == TransactionState.FAILED
        assert tx.failure == "timeout"

        done = TransactionRecord()
        done.complete()
        done.fail("late")
        assert done.state == TransactionState.COMPLETED
        assert done.failure is None

    def test_record_step_redacts_detail(self):
        tx = TransactionRecord()
        tx.record_step("ask_pin", "SAY-GET", "answered", detail={"card_pin": "1234"})
        assert tx.steps[0].detail == {"card_pin": REDACTED}

    def test_short_id(self):
        tx = TransactionRecord(id="0123456789abcdef")
        assert tx.short_id == "01234567"


class TestFlowFrame:
    def test_history_limit(self):
        frame = FlowFrame(flow_id="f")
        for i in range(5):
            frame.add_history("user", f"m{i}", limit=3)
        assert [e.content for e in frame.history] == ["m2", "m3", "m4"]

    def test_state(self):
        frame = FlowFrame(flow_id="f")
        assert frame.state.value == "running"
        frame.awaiting_input = True
        assert frame.state.value == "awaiting_input"


class TestSession:
    def test_defaults(self):
        session = Session(user_id="u1")
        assert session.flow_stacks == [[]]
        assert session.active_frame is None
        assert not session.is_active
        assert session.stack_depth == 0

    def test_frames_across_stacks(self):
        session = Session(user_id="u1")
        session.current_stack.append(FlowFrame(flow_id="a"))
        session.flow_stacks.append([FlowFrame(flow_id="b"), FlowFrame(flow_id="c")])
        assert session.active_frame.flow_id == "c"
        assert session.stack_depth == 2
        assert [f.flow_id for f in session.all_frames()] == ["a", "b", "c"]

    def test_current_stack_recreated_when_empty(self):
        session = Session(flow_stacks=[])
        assert session.current_stack == []
        assert session.flow_stacks == [[]]

    def test_json_round_trip(self):
        session = Session(user_id="u1", cargo={"channel": "sms"})
        frame = FlowFrame(flow_id="pay", variables={"amount": 12.5, "tags": ["a"]})
        frame.push_steps([FlowStep(type=StepType.SAY_GET, variable="confirm", value="Sure?")])
        session.current_stack.append(frame)

        restored = Session.from_json(session.to_json())
        assert restored.session_id == session.session_id
        assert restored.cargo == {"channel": "sms"}
        restored_frame = restored.active_frame
        assert restored_frame.variables == {"amount": 12.5, "tags": ["a"]}
        assert restored_frame.top_step.type == StepType.SAY_GET
        assert restored_frame.transaction.id == frame.transaction.id

    def test_deep_copy_is_independent(self):
        session = Session(user_id="u1")
        session.current_stack.append(FlowFrame(flow_id="a", variables={"x": [1]}))
        copy = session.model_copy(deep=True)
        copy.active_frame.variables["x"].append(2)
        assert session.active_frame.variables == {"x": [1]}

    def test_remember_turn_limit(self):
        session = Session()
        for i in range(4):
            session.remember_turn(Turn(content=str(i)), limit=2)
        assert [t.content for t in session.last_turns] == ["2", "3"]


class TestSanitizeForLog:
    @pytest.mark.parametrize("name", ["password", "apiToken", "X-Signature", "api_key", "client_secret", "PIN"])
    def test_sensitive_names(self, name):
        assert is_sensitive(name)

    def test_nested_redaction(self):
        data = {"user": "ada", "auth": {"token": "t", "scopes": ["r"]}, "cards": [{"pin": "1"}]}
        assert sanitize_for_log(data) == {
            "user": "ada",
            "auth": {"token": REDACTED, "scopes": ["r"]},
            "cards": [{"pin": REDACTED}],
        }

    def test_scalars_pass_through(self):
        assert sanitize_for_log("plain") == "plain"


class TestInputSanitizer:
    def test_escapes_and_strips(self):
        assert InputSanitizer().sanitize("  <script>x</script>\x00 ") == "&lt;script&gt;x&lt;/script&gt;"

    def test_truncates(self):
        assert InputSanitizer(max_length=3).sanitize("abcdef") == "abc... [truncated]"

    def test_empty(self):
        assert InputSanitizer().sanitize("") == ""

    def test_cargo(self):
        class Opaque:
            def __str__(self):
                return "opaque"

        cargo = InputSanitizer().sanitize_cargo({"n": 1, "obj": Opaque(), "nested": {"k": None}, "xs": [{"a": 1}, 2]})
        assert cargo == {"n": 1, "obj": "opaque", "nested": {"k": None}, "xs": [{"a": 1}, 2]}


class TestAuditLogger:
    def test_events_carry_transaction_and_redact(self):
        log = RecordingLogger()
        audit = AuditLogger(log)
        frame = FlowFrame(flow_id="pay", variables={"pin": "1234", "amount": 5})

        audit.flow_started(frame, "u1")
        audit.tool_executed(frame, "charge", {"card_token": "tok", "amount": 5}, 12.34567)
        audit.flow_exit(frame, "user_cancel")

        started, executed, exited = log.events
        assert started[1] == "flow_started"
        assert started[2]["transaction_id"] == frame.transaction.id
        assert executed[2]["args"] == {"card_token": REDACTED, "amount": 5}
        assert executed[2]["duration_ms"] == 12.346
        assert exited[2]["variables"] == {"pin": REDACTED, "amount": 5}

    def test_failures_are_warnings(self):
        log = RecordingLogger()
        frame = FlowFrame(flow_id="pay")
        frame.transaction.fail("down")
        AuditLogger(log).transaction_failed(frame)
        level, event, fields = log.events[0]
        assert (level, event) == ("warning", "transaction_failed")
        assert fields["reason"] == "down"
