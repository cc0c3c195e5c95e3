from unittest.mock import patch

import pytest
from pydantic import ValidationError

from tool_orchestrator.config import (
    OrchestratorSettings,
    Policy,
    default_safety_config,
    strict_safety_config,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "TOOL_ORCH_LOG_LEVEL",
        "TOOL_ORCH_MAX_DECISIONS",
        "TOOL_ORCH_MAX_CONCURRENCY",
        "TOOL_ORCH_IDEMPOTENCY_TTL_MS",
        "TOOL_ORCH_CLASSIFIER_MODEL",
        "OPENROUTER_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    with patch("tool_orchestrator.config.load_dotenv") as mock_load:
        yield mock_load

# ---------------------------------------------------------------------------
# Environment loading
# ---------------------------------------------------------------------------

def test_from_env_defaults(clean_env):
    settings = OrchestratorSettings.from_env()

    clean_env.assert_called_once()
    assert settings.log_level == "INFO"
    assert settings.max_decisions == 10_000
    assert settings.classifier_model is None
    assert settings.safety == default_safety_config()

def test_from_env_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("TOOL_ORCH_LOG_LEVEL", "debug")
    monkeypatch.setenv("TOOL_ORCH_MAX_DECISIONS", "50")
    monkeypatch.setenv("TOOL_ORCH_MAX_CONCURRENCY", "2")
    monkeypatch.setenv("TOOL_ORCH_IDEMPOTENCY_TTL_MS", "1000")
    monkeypatch.setenv("TOOL_ORCH_CLASSIFIER_MODEL", "openai/gpt-4o-mini")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")

    settings = OrchestratorSettings.from_env()

    assert settings.log_level == "DEBUG"
    assert settings.max_decisions == 50
    assert settings.safety.quotas.max_concurrency == 2
    assert settings.safety.quotas.max_memory_mb == 100
    assert settings.safety.idempotency.ttl_ms == 1_000
    assert settings.classifier_model == "openai/gpt-4o-mini"
    assert settings.openrouter_api_key == "sk-test"
    assert "sk-test" not in repr(settings)

def test_from_env_rejects_invalid_values(clean_env, monkeypatch):
    monkeypatch.setenv("TOOL_ORCH_MAX_CONCURRENCY", "-1")
    with pytest.raises(ValidationError):
        OrchestratorSettings.from_env()

# ---------------------------------------------------------------------------
# Presets and policies
# ---------------------------------------------------------------------------

def test_strict_config_is_tighter_than_default():
    default, strict = default_safety_config(), strict_safety_config()

    assert strict.quotas.max_concurrency < default.quotas.max_concurrency
    assert strict.sandbox.network_access is False
    assert strict.allowlists.network_hosts == []

def test_policy_is_frozen_and_validated():
    policy = Policy(timeout_ms=1_000)
    with pytest.raises(ValidationError):
        policy.timeout_ms = 5
    with pytest.raises(ValidationError):
        Policy(retries=-1)
