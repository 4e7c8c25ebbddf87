"""Tests for YAML settings loading and engine construction from settings."""
import pytest

import config.settings as settings_module
from config.settings import EngineSettings, get_settings, load_settings
from core.engine import create_engine


CONFIG = """
language: es
expressions:
  security_level: strict
flow_control:
  max_stack_depth: 5
  recovery_flow: start_over
tool_runtime:
  http_timeout_ms: 2500
  user_agent: "${AGENT_NAME}"
guidance:
  enabled: true
  mode: prepend
global_variables:
  support_phone: "${SUPPORT_PHONE}"
  region: "${UNSET_REGION}"
tools:
  - id: echo
    implementation: {type: mock, mockResponse: {said: hi}}
flows:
  - id: hello
    name: Hello
    steps:
      - {type: SAY, value: "Call {{support_phone}}"}
"""


@pytest.fixture(autouse=True)
def reset_cache(monkeypatch):
    monkeypatch.setattr(settings_module, "_settings", None)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENT_NAME", "Bank/2.0")
    monkeypatch.setenv("SUPPORT_PHONE", "555-0100")
    monkeypatch.delenv("UNSET_REGION", raising=False)
    path = tmp_path / "engine.yaml"
    path.write_text(CONFIG)
    return path


class TestLoadSettings:
    def test_sections(self, config_file):
        settings = load_settings(str(config_file))
        assert settings.language == "es"
        assert settings.expressions.security_level == "strict"
        assert settings.flows.max_stack_depth == 5
        assert settings.flows.max_steps_per_turn == 200
        assert settings.flows.recovery_flow == "start_over"
        assert settings.tools.http_timeout_ms == 2500
        assert settings.guidance.enabled
        assert settings.guidance.mode == "prepend"
        assert settings.tool_definitions[0]["id"] == "echo"
        assert settings.flow_definitions[0]["id"] == "hello"

    def test_env_substitution(self, config_file):
        settings = load_settings(str(config_file))
        assert settings.tools.user_agent == "Bank/2.0"
        assert settings.global_variables == {"support_phone": "555-0100", "region": "${UNSET_REGION}"}

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == EngineSettings()

    def test_env_var_selects_file(self, config_file, monkeypatch):
        monkeypatch.setenv("WORKFLOW_ENGINE_CONFIG", str(config_file))
        assert get_settings().language == "es"
        assert get_settings() is get_settings()


@pytest.mark.asyncio
class TestCreateEngine:
    async def test_engine_from_settings(self, config_file):
        settings = load_settings(str(config_file))
        settings.language = "en"
        engine = create_engine(settings)
        assert "hello" in engine.flows
        assert "echo" in engine.tools.ids
        assert engine.evaluator.security_level.value == "strict"

        session = engine.init_session("u1")
        result = await engine.update_activity({"role": "user", "content": "hello"}, session)
        assert result.response == "Call 555-0100"

    async def test_keyword_overrides(self, config_file):
        settings = load_settings(str(config_file))
        engine = create_engine(settings, flows=[], global_variables={})
        assert len(engine.flows) == 0
        assert engine.language == "es"
