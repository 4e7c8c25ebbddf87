"""Tests for flow resolution, interruption detection and tool argument generation."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.intent import IntentResolver, build_prompt, format_history, parse_json_reply
from flows.registry import FlowRegistry
from models.schemas import ContextEntry
from tools import ToolRegistry


@pytest.fixture
def registry(greeting_flow, balance_flow):
    registry = FlowRegistry()
    registry.register(greeting_flow)
    registry.register(balance_flow)
    registry.register({"id": "internal_helper", "name": "Internal Helper", "primary": False, "steps": []})
    return registry


def _verdict(strong=True, target="Balance"):
    return f'{{"isStrongIntent": {"true" if strong else "false"}, "targetFlow": "{target}", "confidence": 0.8}}'


class TestHelpers:
    def test_build_prompt_with_schema(self, registry):
        system, user = build_prompt("Pick one.", "- be brief\n", "hello", registry.list_primary(),
                                    context="ctx", json_schema='{"a": 1}')
        assert system.startswith("<task>\nPick one.\n</task>")
        assert "<json-schema>" in system
        assert "Respond ONLY with valid JSON" in system
        assert user.startswith("<context>\nctx\n</context>")
        assert "<user-input>\nhello\n</user-input>" in user
        assert "Greeting: say hello (Risk: unknown)" in user
        assert "Internal Helper" not in user

    def test_build_prompt_without_flows(self):
        system, user = build_prompt("t", "r\n", "hi", [])
        assert "<json-schema>" not in system
        assert user == "<user-input>\nhi\n</user-input>"

    def test_parse_json_reply_strips_fences_and_prose(self):
        assert parse_json_reply('```json\n{"a": 1}\n```') == {"a": 1}
        assert parse_json_reply('Sure! {"a": 2} hope that helps') == {"a": 2}

    def test_parse_json_reply_rejects_non_objects(self):
        with pytest.raises(ValueError):
            parse_json_reply("[1, 2]")

    def test_format_history(self):
        entries = [ContextEntry(role="user", content="hi"), ContextEntry(role="assistant", content={"x": 1})]
        assert format_history(entries) == 'User: hi\n\nAssistant: {"x": 1}'


@pytest.mark.asyncio
class TestResolveFlow:
    async def test_direct_match_skips_callback(self, registry):
        callback = AsyncMock()
        resolver = IntentResolver(registry, callback)
        assert (await resolver.resolve_flow("Balance")).id == "balance"
        callback.assert_not_called()

    async def test_direct_match_ignores_secondary_flows(self, registry):
        assert await IntentResolver(registry).resolve_flow("internal_helper") is None

    async def test_no_callback(self, registry):
        assert await IntentResolver(registry).resolve_flow("hello there") is None

    async def test_async_callback_reply(self, registry):
        callback = AsyncMock(return_value='  "Greeting"  ')
        flow = await IntentResolver(registry, callback).resolve_flow("hi there")
        assert flow.id == "greeting"
        system, user = callback.call_args.args
        assert "<task>" in system
        assert "<user-input>\nhi there\n</user-input>" in user

    async def test_sync_callback_reply(self, registry):
        callback = MagicMock(return_value="balance")
        assert (await IntentResolver(registry, callback).resolve_flow("money?")).id == "balance"

    @pytest.mark.parametrize("reply", ["None", "null", "", '"none"'])
    async def test_no_flow_replies(self, registry, reply):
        assert await IntentResolver(registry, AsyncMock(return_value=reply)).resolve_flow("x") is None

    async def test_unknown_flow_reply(self, registry):
        assert await IntentResolver(registry, AsyncMock(return_value="Weather")).resolve_flow("x") is None

    async def test_callback_failure(self, registry):
        callback = AsyncMock(side_effect=RuntimeError("model offline"))
        assert await IntentResolver(registry, callback).resolve_flow("x") is None

    async def test_non_string_reply(self, registry):
        assert await IntentResolver(registry, AsyncMock(return_value=42)).resolve_flow("x") is None

    async def test_history_is_sent(self, registry):
        callback = AsyncMock(return_value="None")
        history = [ContextEntry(role="user", content="I lost my card")]
        await IntentResolver(registry, callback).resolve_flow("help", history)
        _, user = callback.call_args.args
        assert "<chat-history>\nUser: I lost my card\n</chat-history>" in user


@pytest.mark.asyncio
class TestDetectInterruption:
    async def test_direct_match_to_other_flow(self, registry):
        flow = await IntentResolver(registry).detect_interruption("balance", "greeting")
        assert flow.id == "balance"

    async def test_direct_match_to_current_flow(self, registry):
        callback = AsyncMock()
        assert await IntentResolver(registry, callback).detect_interruption("Greeting", "greeting") is None
        callback.assert_not_called()

    async def test_strong_intent(self, registry):
        callback = AsyncMock(return_value="```json\n" + _verdict() + "\n```")
        flow = await IntentResolver(registry, callback).detect_interruption("what's my balance", "greeting")
        assert flow.id == "balance"
        system, user = callback.call_args.args
        assert "<json-schema>" in system
        assert 'User is in "Greeting" flow' in user

    async def test_weak_intent(self, registry):
        callback = AsyncMock(return_value=_verdict(strong=False))
        assert await IntentResolver(registry, callback).detect_interruption("Ada", "greeting") is None

    async def test_strong_intent_for_current_flow(self, registry):
        callback = AsyncMock(return_value=_verdict(target="Greeting"))
        assert await IntentResolver(registry, callback).detect_interruption("hi again", "greeting") is None

    async def test_strong_intent_for_unknown_flow(self, registry):
        callback = AsyncMock(return_value=_verdict(target="Weather"))
        assert await IntentResolver(registry, callback).detect_interruption("rain?", "greeting") is None

    async def test_truthy_but_not_true_is_weak(self, registry):
        callback = AsyncMock(return_value='{"isStrongIntent": "yes", "targetFlow": "Balance"}')
        assert await IntentResolver(registry, callback).detect_interruption("x", "greeting") is None

    async def test_malformed_reply(self, registry):
        callback = AsyncMock(return_value="switch to balance please")
        assert await IntentResolver(registry, callback).detect_interruption("x", "greeting") is None

    async def test_flow_history_is_sent(self, registry):
        callback = AsyncMock(return_value=_verdict(strong=False))
        history = [ContextEntry(role="assistant", content="What's your name?")]
        await IntentResolver(registry, callback).detect_interruption("Ada", "greeting", history)
        _, user = callback.call_args.args
        assert "<flow-history>\nAssistant: What's your name?\n</flow-history>" in user


TRANSFER = ToolRegistry.parse_tool({
    "id": "transfer",
    "name": "Transfer",
    "description": "Move money between accounts",
    "parameters": {
        "properties": {"to_account": {"type": "string"}, "amount": {"type": "number"}},
        "required": ["to_account", "amount"],
    },
})


@pytest.mark.asyncio
class TestGenerateToolArgs:
    async def test_no_callback(self, registry):
        assert await IntentResolver(registry).generate_tool_args(TRANSFER, "send 5", {}) == {}

    async def test_reply_is_coerced(self, registry):
        callback = AsyncMock(return_value='```json\n{"to_account": 998877, "amount": "$5.50", "note": "x"}\n```')
        args = await IntentResolver(registry, callback).generate_tool_args(TRANSFER, "send 5.50 to 998877", {})
        assert args == {"to_account": "998877", "amount": 5.5}

    async def test_prompt_carries_schema_and_redacted_variables(self, registry):
        callback = AsyncMock(return_value="{}")
        history = [ContextEntry(role="user", content="pay my rent")]
        known = {"payee": "Landlord", "api_token": "t0p"}
        await IntentResolver(registry, callback).generate_tool_args(TRANSFER, "now", known, history)
        system, user = callback.call_args.args
        assert '"Transfer" tool' in system
        assert '"to_account"' in system.split("<json-schema>")[1]
        assert '<variables>\n{"payee": "Landlord", "api_token": "[REDACTED]"}\n</variables>' in user
        assert "<tool-description>\nMove money between accounts\n</tool-description>" in user
        assert "<chat-history>\nUser: pay my rent\n</chat-history>" in user
        assert "t0p" not in user

    @pytest.mark.parametrize("reply", ["no idea", "[1]"])
    async def test_unusable_reply(self, registry, reply):
        callback = AsyncMock(return_value=reply)
        assert await IntentResolver(registry, callback).generate_tool_args(TRANSFER, "x", {}) == {}

    async def test_callback_failure(self, registry):
        callback = AsyncMock(side_effect=RuntimeError("model offline"))
        assert await IntentResolver(registry, callback).generate_tool_args(TRANSFER, "x", {}) == {}
