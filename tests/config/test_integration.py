"""
Integration tests for load_config and validate_production_config.

Exercises the full load path: YAML file, credential injection from the
environment, deployment overrides and pydantic validation.
"""

import pytest

from call_trainer.config import AppConfig, load_config, validate_production_config
from call_trainer.config.models import TwilioConfig, VoiceAgentConfig, GradingConfig, LoggingConfig

_ENV_VARS = [
    "ELEVENLABS_API_KEY", "ELEVENLABS_AGENT_ID", "ELEVENLABS_AGENT_ID_1",
    "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER",
    "OPENAI_API_KEY", "GRADING_MODEL", "PUBLIC_BASE_URL", "FRONTEND_URL", "PORT", "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def full_env(clean_env):
    clean_env.setenv("ELEVENLABS_API_KEY", "xi-key")
    clean_env.setenv("ELEVENLABS_AGENT_ID", "agent_default")
    clean_env.setenv("ELEVENLABS_AGENT_ID_1", "agent_one")
    clean_env.setenv("TWILIO_ACCOUNT_SID", "AC0123456789")
    clean_env.setenv("TWILIO_AUTH_TOKEN", "tok")
    clean_env.setenv("TWILIO_PHONE_NUMBER", "+15550000000")
    clean_env.setenv("OPENAI_API_KEY", "sk-test")
    clean_env.setenv("PUBLIC_BASE_URL", "https://trainer.example.com/")
    return clean_env


def _valid_config(**overrides) -> AppConfig:
    config = AppConfig(
        voice_agent=VoiceAgentConfig(api_key="xi", default_agent_id="agent_default"),
        twilio=TwilioConfig(account_sid="AC1", auth_token="tok", phone_number="+15550000000"),
        grading=GradingConfig(api_key="sk"),
    )
    config.server.public_base_url = "https://trainer.example.com"
    return config.model_copy(update=overrides)


class TestLoadConfig:
    """Tests for load_config."""

    def test_shipped_config_loads(self, full_env):
        config = load_config()

        assert config.voice_agent.api_key == "xi-key"
        assert config.voice_agent.default_agent_id == "agent_default"
        assert config.voice_agent.per_scenario_agent_ids == {"1": "agent_one"}
        assert config.voice_agent.default_first_message == "Hello, I need help."
        assert config.twilio.account_sid == "AC0123456789"
        assert config.grading.model == "gpt-4-turbo"
        assert config.grading.temperature == 0.7
        assert config.grading.max_tokens == 1500
        assert config.server.public_base_url == "https://trainer.example.com"
        assert config.results.endpoint == "http://localhost:3000"

    def test_custom_yaml_path(self, tmp_path, full_env):
        path = tmp_path / "trainer.yaml"
        path.write_text(
            "server:\n  port: 9100\n"
            "grading:\n  model: gpt-4o-mini\n"
            "sessions:\n  pending_dial_ttl_sec: 30\n"
        )
        full_env.setenv("FRONTEND_URL", "https://frontend.example.com")

        config = load_config(str(path))

        assert config.server.port == 9100
        assert config.grading.model == "gpt-4o-mini"
        assert config.sessions.pending_dial_ttl_sec == 30
        assert config.results.endpoint == "https://frontend.example.com"

    def test_missing_file_raises(self, tmp_path, clean_env):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))


class TestValidateProductionConfig:
    """Tests for validate_production_config."""

    def test_valid_config_has_no_errors(self, clean_env):
        errors, warnings = validate_production_config(_valid_config())

        assert errors == []
        assert warnings == []

    def test_missing_credentials_are_errors(self, clean_env):
        errors, _ = validate_production_config(AppConfig())

        joined = " ".join(errors)
        assert "ELEVENLABS_API_KEY" in joined
        assert "ELEVENLABS_AGENT_ID" in joined
        assert "TWILIO_ACCOUNT_SID" in joined
        assert "OPENAI_API_KEY" in joined

    def test_account_sid_must_start_with_ac(self, clean_env):
        config = _valid_config(twilio=TwilioConfig(account_sid="SK123", auth_token="tok", phone_number="+1555"))

        errors, _ = validate_production_config(config)

        assert any('must start with "AC"' in e for e in errors)

    def test_missing_public_url_is_warning(self, clean_env):
        config = _valid_config()
        config.server.public_base_url = None

        errors, warnings = validate_production_config(config)

        assert errors == []
        assert any("PUBLIC_BASE_URL" in w for w in warnings)

    def test_debug_logging_is_warning(self, clean_env):
        config = _valid_config(logging=LoggingConfig(level="debug"))

        _, warnings = validate_production_config(config)

        assert any("Debug logging" in w for w in warnings)
