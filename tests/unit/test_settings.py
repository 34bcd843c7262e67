"""Unit tests for Settings."""
from config.settings import Settings


def test_defaults_prefer_local_ollama(monkeypatch):
    for name in ("INSIGHT_BACKEND", "OLLAMA_BASE_URL", "KEYRING_SERVICE"):
        monkeypatch.delenv(name, raising=False)
    s = Settings(_env_file=None)
    assert s.insight_backend == "auto"
    assert s.ollama_base_url == "http://localhost:11434"
    assert s.keyring_service == "kgminer"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("INSIGHT_BACKEND", "none")
    monkeypatch.setenv("INSIGHT_TIMEOUT_SEC", "5")
    s = Settings(_env_file=None)
    assert s.insight_backend == "none"
    assert s.insight_timeout_sec == 5.0


def test_only_backend_settings_are_declared():
    assert set(Settings.model_fields) == {
        "ollama_base_url",
        "openai_base_url",
        "openai_api_key",
        "anthropic_api_key",
        "keyring_service",
        "insight_backend",
        "insight_model",
        "insight_openai_model",
        "insight_claude_model",
        "insight_timeout_sec",
        "insight_max_tokens",
        "insight_temperature",
        "backend_probe_ttl_sec",
    }
