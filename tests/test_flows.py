"""Tests for flow definitions, the flow registry, static validation and system messages."""
import pytest

from flows import (
    CallType, FlowRegistry, GuidanceConfig, MessageCatalog, StepType, match_command, validate_flows,
)
from flows.messages import apply_guidance, render_message
from flows.models import FlowDefinition, FlowStep, RetryAction, RetryStrategy
from models.schemas import FlowFrame


def _flow(flow_id, *steps, **extra):
    return {"id": flow_id, "name": extra.pop("name", flow_id.title()), "steps": list(steps), **extra}


# ══════════════════════════════════════════════════════════════
#  Registry and parsing
# ══════════════════════════════════════════════════════════════

class TestFlowRegistry:
    def test_register_and_find(self):
        registry = FlowRegistry()
        registry.register(_flow("pay_bill", {"type": "SAY", "value": "hi"}, name="Pay Bill"))
        assert registry.get("pay_bill").display_name == "Pay Bill"
        assert registry.find("Pay Bill").id == "pay_bill"
        assert registry.find("pay bill").id == "pay_bill"
        assert registry.find("PAY_BILL").id == "pay_bill"
        assert registry.find("other") is None
        assert "pay_bill" in registry
        assert len(registry) == 1

    def test_primary_flows(self):
        registry = FlowRegistry()
        registry.register(_flow("main"))
        registry.register(_flow("helper", primary=False))
        assert [f.id for f in registry.list_primary()] == ["main"]

    def test_id_falls_back_to_name(self):
        flow = FlowRegistry.parse_flow({"name": "Greeting", "steps": []})
        assert flow.id == "Greeting"

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            FlowRegistry().register({"steps": []})

    def test_step_aliases(self):
        step = FlowRegistry.parse_step({
            "type": "call_tool",
            "tool": "lookup",
            "maxRetries": 4,
            "retryDelay": 250,
            "onFail": {"type": "FLOW", "value": "fallback", "callType": "Reboot"},
        })
        assert step.type == StepType.CALL_TOOL
        assert step.max_retries == 4
        assert step.retry_delay_ms == 250
        assert step.on_fail.type == StepType.FLOW
        assert step.on_fail.call_type == CallType.REBOOT

    def test_mode_alias_for_call_type(self):
        step = FlowRegistry.parse_step({"type": "FLOW", "nextFlow": "billing", "mode": "replace"})
        assert step.call_type == CallType.REPLACE
        assert step.target_flow == "billing"
        assert step.effective_call_type() == CallType.REPLACE

    def test_call_type_defaults(self):
        step = FlowRegistry.parse_step({"type": "FLOW", "name": "billing"})
        assert step.call_type is None
        assert step.effective_call_type() == CallType.CALL
        assert step.effective_call_type(CallType.REPLACE) == CallType.REPLACE

    def test_localized_values(self):
        step = FlowRegistry.parse_step({"type": "SAY", "value": "Hello", "value_es": "Hola"})
        assert step.text_for("es") == "Hola"
        assert step.text_for("fr") == "Hello"

    def test_localized_prompts(self):
        flow = FlowRegistry.parse_flow({"id": "f", "prompt": "pay a bill", "prompt_es": "pagar una factura"})
        assert flow.prompt_for("es") == "pagar una factura"
        assert flow.prompt_for("en") == "pay a bill"

    def test_branches_as_mapping_keep_order(self):
        step = FlowRegistry.parse_step({
            "type": "CASE",
            "branches": {
                "condition: {{amount}} > 100": {"type": "SAY", "value": "big"},
                "default": {"type": "SAY", "value": "small"},
            },
        })
        assert [b.key for b in step.branches] == ["condition: {{amount}} > 100", "default"]
        assert step.branches[0].condition == "{{amount}} > 100"
        assert step.branches[1].is_default

    def test_branches_as_list(self):
        step = FlowRegistry.parse_step({
            "type": "SWITCH",
            "variable": "choice",
            "branches": [{"key": "1", "step": {"type": "SAY", "value": "one"}}],
        })
        assert step.branches[0].key == "1"
        assert step.branches[0].step.value == "one"

    def test_input_validation(self):
        step = FlowRegistry.parse_step({
            "type": "SAY-GET",
            "variable": "zip",
            "inputValidation": {
                "patterns": [{"pattern": "^\\d{5}$", "message": "Five digits please"}],
                "customValidator": "check_zip",
            },
        })
        assert step.input_validation.patterns[0].message == "Five digits please"
        assert step.input_validation.custom_validator == "check_zip"

    def test_variables_and_metadata(self):
        flow = FlowRegistry.parse_flow({
            "id": "transfer_money",
            "variables": {"attempt_count": {"type": "number", "value": 0}, "note": None, "limit": 500},
            "metadata": {"riskLevel": "high", "category": "payment", "owner": "ops"},
        })
        assert flow.initial_variables() == {"attempt_count": 0, "limit": 500}
        assert flow.metadata.risk_level == "high"
        assert flow.metadata.extra == {"owner": "ops"}
        assert flow.is_financial

    def test_unknown_step_type(self):
        with pytest.raises(ValueError):
            FlowRegistry.parse_step({"type": "JUMP"})

    def test_retry_configuration(self):
        step = FlowRegistry.parse_step({
            "type": "CALL-TOOL",
            "tool": "pay",
            "retryStrategy": "Exponential",
            "retryOnConditions": [
                {"errorPattern": "invalid.*amount|validation.*failed", "action": "ask_user"},
                {"errorPattern": "network|timeout|503|502", "action": "retry"},
            ],
            "retryBehavior": {
                "preserveData": True,
                "showProgressiveHelp": True,
                "escalateAfterMaxRetries": {"type": "FLOW", "value": "agent", "callType": "replace"},
            },
        })
        assert step.retry_strategy == RetryStrategy.EXPONENTIAL
        assert [(c.error_pattern, c.action) for c in step.retry_on_conditions] == [
            ("invalid.*amount|validation.*failed", RetryAction.ASK_USER),
            ("network|timeout|503|502", RetryAction.RETRY),
        ]
        assert step.retry_behavior.show_progressive_help
        assert step.retry_behavior.escalate_after_max_retries.call_type == CallType.REPLACE

    def test_retry_defaults(self):
        step = FlowRegistry.parse_step({"type": "CALL-TOOL", "tool": "pay"})
        assert step.retry_strategy == RetryStrategy.IMMEDIATE
        assert step.retry_on_conditions == []
        assert step.retry_behavior is None

    def test_register_from_config_accepts_models_and_dicts(self):
        registry = FlowRegistry()
        registry.register_from_config([
            _flow("a", {"type": "SAY", "value": "hi"}),
            FlowDefinition(id="b", steps=[FlowStep(type=StepType.SAY, value="yo")]),
        ])
        assert registry.ids == ["a", "b"]


class TestFlowFrameSteps:
    def test_push_steps_runs_first_step_next(self):
        frame = FlowFrame(flow_id="f")
        frame.push_steps([FlowStep(type=StepType.SAY, id="a"), FlowStep(type=StepType.SAY, id="b")])
        assert frame.top_step.id == "a"
        assert [s.id for s in frame.steps] == ["b", "a"]


# ══════════════════════════════════════════════════════════════
#  Static validation
# ══════════════════════════════════════════════════════════════

class TestValidateFlows:
    def test_clean_flows(self):
        report = validate_flows([_flow("a", {"type": "SAY", "value": "hi"})])
        assert report.ok
        assert report.summary() == {"flows_checked": 1, "errors": 0, "warnings": 0, "ok": True}

    def test_missing_variables_and_targets(self):
        report = validate_flows([
            _flow("a",
                  {"id": "ask", "type": "SAY-GET", "value": "?"},
                  {"id": "set", "type": "SET", "value": 1},
                  {"id": "jump", "type": "FLOW", "value": "nowhere"},
                  {"id": "call", "type": "CALL-TOOL", "tool": "ghost"}),
        ], tool_ids=["real_tool"])
        messages = report.for_flow("a")["errors"]
        assert "SAY-GET step has no variable to store the answer" in messages
        assert "SET step has no variable" in messages
        assert "FLOW references unknown flow 'nowhere'" in messages
        assert "CALL-TOOL references unknown tool 'ghost'" in messages
        assert not report.ok

    def test_branch_checks(self):
        report = validate_flows([
            _flow("a",
                  {"id": "sw", "type": "SWITCH", "variable": "x",
                   "branches": [{"key": "1", "step": {"type": "SAY", "value": "a"}},
                                {"key": "1", "step": {"type": "SAY", "value": "b"}}]},
                  {"id": "cs", "type": "CASE",
                   "branches": {"amount > 1": {"type": "SAY", "value": "x"},
                                "default": {"type": "SAY", "value": "y"}}}),
        ])
        errors = [str(i) for i in report.errors]
        warnings = [i.message for i in report.warnings]
        assert any("declared twice" in e for e in errors)
        assert any("must start with 'condition:'" in e for e in errors)
        assert any("no 'default' branch" in w for w in warnings)

    def test_nested_steps_are_checked(self):
        report = validate_flows([
            _flow("a", {"id": "call", "type": "CALL-TOOL", "tool": "t",
                        "onFail": {"id": "fix", "type": "FLOW", "value": "missing"}}),
        ], tool_ids=["t"])
        assert report.errors[0].step_id == "fix"

    def test_retry_patterns_and_escalation_are_checked(self):
        report = validate_flows([
            _flow("a", {"id": "call", "type": "CALL-TOOL", "tool": "t",
                        "retryOnConditions": [{"errorPattern": "([unclosed", "action": "retry"}],
                        "retryBehavior": {"escalateAfterMaxRetries": {"id": "esc", "type": "FLOW",
                                                                      "value": "missing"}}}),
        ], tool_ids=["t"])
        errors = {(i.step_id, i.message.split(" is invalid")[0]) for i in report.errors}
        assert ("call", "retryOnConditions pattern '([unclosed'") in errors
        assert ("esc", "FLOW references unknown flow 'missing'") in errors

    def test_cycles_are_warnings(self):
        report = validate_flows([
            _flow("a", {"type": "FLOW", "value": "b"}),
            _flow("b", {"type": "FLOW", "value": "a"}),
            _flow("c", {"type": "FLOW", "value": "c"}),
        ])
        assert report.ok
        warnings = [i.message for i in report.warnings]
        assert "flows reference each other in a cycle: a -> b -> a" in warnings
        assert any("references itself" in w for w in warnings)

    def test_unparseable_flow_reported(self):
        report = validate_flows([{"id": "bad", "steps": [{"type": "NOPE"}]}])
        assert report.errors[0].flow_id == "bad"

    def test_call_type_outside_flow_step_warns(self):
        report = validate_flows([_flow("a", {"type": "SAY", "value": "x", "callType": "call"})])
        assert report.ok
        assert "callType" in report.warnings[0].message

    def test_empty_flow_warns(self):
        report = validate_flows([_flow("a")])
        assert report.warnings[0].message == "flow has no steps"


# ══════════════════════════════════════════════════════════════
#  Messages, commands and guidance
# ══════════════════════════════════════════════════════════════

class TestMessageCatalog:
    def test_defaults_and_placeholders(self):
        catalog = MessageCatalog()
        assert catalog.get("cmd_flow_exited", flowName="Billing").startswith("Successfully exited Billing")

    def test_language_and_fallback(self):
        catalog = MessageCatalog(language="es")
        assert catalog.get("flow_completed_generic") == "Flujo completado."
        assert catalog.get("flow_completed_generic", "fr") == "Flow completed."

    def test_overrides(self):
        catalog = MessageCatalog({"en": {"invalid_input": "Nope."}, "fr": {"invalid_input": "Non."}})
        assert catalog.get("invalid_input") == "Nope."
        assert catalog.get("invalid_input", "fr") == "Non."
        assert catalog.has("invalid_input", "fr")

    def test_missing_key_returns_key(self):
        assert MessageCatalog().get("no_such_message") == "no_such_message"

    def test_unknown_placeholders_left_intact(self):
        assert render_message("{{a}} {{b}}", {"a": 1}) == "1 {{b}}"


class TestMatchCommand:
    @pytest.mark.parametrize("text, expected", [
        ("cancel", "cancel"),
        ("Cancel.", "cancel"),
        ("stop workflow", "cancel"),
        ("help", "help"),
        ("?", "help"),
        ("where am i", "status"),
        ("I want to cancel my order", None),
        ("", None),
    ])
    def test_english(self, text, expected):
        assert match_command(text) == expected

    def test_spanish_with_english_fallback(self):
        assert match_command("cancelar", "es") == "cancel"
        assert match_command("estado", "es") == "status"
        assert match_command("help", "es") == "help"


class TestGuidance:
    def test_disabled(self):
        assert apply_guidance("Q?", GuidanceConfig(), MessageCatalog(), "F", "pay", False) == "Q?"

    def test_append_general(self):
        text = apply_guidance("Q?", GuidanceConfig(enabled=True), MessageCatalog(), "F", "book a room", False)
        assert text == "Q?\n\nYou can type cancel or help - To complete book a room"

    def test_prepend_payment(self):
        config = GuidanceConfig(enabled=True, mode="prepend", separator=" | ")
        text = apply_guidance("Q?", config, MessageCatalog(), "F", "pay", True)
        assert text == "You can type cancel or help - Payment in progress | Q?"

    def test_template_with_custom_message(self):
        config = GuidanceConfig(enabled=True, mode="template", template="[{{guidance}}] {{message}}",
                                context_selector="general",
                                messages={"en": {"general": "Working on {{flowName}}"}})
        assert apply_guidance("Q?", config, MessageCatalog(), "Billing", "pay", True) == "[Working on Billing] Q?"


class TestFlowDefinitionModel:
    def test_prompt_falls_back_to_name(self):
        assert FlowDefinition(id="x", name="Thing").prompt_for("en") == "Thing"
