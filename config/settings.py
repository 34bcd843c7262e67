"""Application settings via pydantic-settings (reads from .env).

Only the insight synthesizer talks to the outside world, so nearly every
setting here concerns the text-generation backends. Mining thresholds are
module constants next to the algorithms that use them.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ollama — local inference, preferred when the model is pulled
    ollama_base_url: str = "http://localhost:11434"

    # Any OpenAI-compatible endpoint (vLLM, Groq, OpenRouter, OpenAI itself)
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""

    # Anthropic Claude via the anthropic SDK
    anthropic_api_key: str = ""

    # Keys left empty above are looked up in the OS keychain under this
    # service name (keyring.set_password("kgminer", "openai_api_key", ...)).
    # Empty disables the lookup.
    keyring_service: str = "kgminer"

    # "auto" probes ollama, openai, claude in that order; "none" forces the
    # deterministic fallback
    insight_backend: str = "auto"
    insight_model: str = "qwen2.5:7b"
    insight_openai_model: str = "gpt-4o-mini"
    insight_claude_model: str = "claude-sonnet-4-5"
    insight_timeout_sec: float = 30.0
    insight_max_tokens: int = 2048
    insight_temperature: float = 0.4

    # Backend availability is probed at most this often
    backend_probe_ttl_sec: float = 300.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
