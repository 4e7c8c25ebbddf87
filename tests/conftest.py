"""Shared test fixtures for the workflow engine."""
import pytest
from typing import Any

from config.settings import EngineSettings
from core.engine import WorkflowEngine
from expressions.environment import VariableEnvironment
from expressions.evaluator import ExpressionEvaluator


@pytest.fixture
def settings() -> EngineSettings:
    """Default settings, independent of any settings.yaml on disk."""
    return EngineSettings()


@pytest.fixture
def evaluator() -> ExpressionEvaluator:
    return ExpressionEvaluator()


@pytest.fixture
def env() -> VariableEnvironment:
    return VariableEnvironment(
        local={
            "user_name": "Ada",
            "amount": 120,
            "count": "5",
            "items": ["a", "b", "c"],
            "profile": {"tier": "gold", "address": {"city": "Lima"}},
            "greeting": "  MixedCase  ",
            "empty": "",
            "nothing": None,
        },
        globals={"company": "Acme", "user_name": "global-name"},
        cargo={"channel": "web"},
        system={"userInput": "hello", "sessionId": "s-1", "userId": "u-1", "flowName": "Test"},
    )


@pytest.fixture
def greeting_flow() -> dict[str, Any]:
    return {
        "id": "greeting",
        "name": "Greeting",
        "prompt": "say hello",
        "steps": [
            {"id": "ask_name", "type": "SAY-GET", "variable": "user_name", "value": "What's your name?"},
            {"id": "hello", "type": "SAY", "value": "Hello {{user_name}}!"},
        ],
    }


@pytest.fixture
def balance_flow() -> dict[str, Any]:
    return {
        "id": "balance",
        "name": "Balance",
        "prompt": "check your balance",
        "steps": [
            {"id": "report", "type": "SAY", "value": "Your balance is 100."},
        ],
    }


@pytest.fixture
def make_engine(settings):
    """Build an engine with default settings; keyword args pass through."""
    def factory(flows: list, tools: list = None, **kwargs) -> WorkflowEngine:
        kwargs.setdefault("settings", settings)
        return WorkflowEngine(flows=flows, tools=tools or [], **kwargs)
    return factory


@pytest.fixture
def talk():
    """Send one user turn; returns (response, new_session)."""
    async def send(engine: WorkflowEngine, session, text: str):
        result = await engine.update_activity({"role": "user", "content": text}, session)
        return result.response, result.session
    return send
