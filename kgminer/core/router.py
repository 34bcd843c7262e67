"""LLMRouter — local-first text generation for insight synthesis (async).

Backends, in preference order when `insight_backend="auto"`:
- Ollama (local, $0) — used when the configured model is pulled
- OpenAI-compatible chat completions (vLLM, Groq, OpenRouter, OpenAI) —
  used when an API key is configured
- Claude (anthropic SDK) — used when an Anthropic key is configured

Keys come from Settings, else from the OS keychain via keyring.
Ollama and OpenAI-compatible calls are plain httpx requests; callers decide
what to do when no backend is reachable (the insight synthesizer falls back
to local rules).
"""

import re
import time
from enum import Enum
from typing import Any, Optional

import anthropic
import httpx
import keyring
import structlog
from keyring.errors import KeyringError
from pydantic import BaseModel

log = structlog.get_logger()


class LLMBackend(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    CLAUDE = "claude"


class LLMUnavailableError(RuntimeError):
    """No configured backend can serve the request."""


class LLMRequest(BaseModel):
    prompt: str
    system: str = ""
    model: str | None = None
    backend: LLMBackend | None = None
    json_mode: bool = False
    max_tokens: int = 2048
    temperature: float = 0.4
    task_type: str = "insights"


class LLMResponse(BaseModel):
    content: str
    backend: LLMBackend
    model: str
    tokens_used: int = 0
    latency_ms: float = 0.0
    reasoning: Optional[str] = None


class LLMRouter:
    """Routes text-generation calls to the first available backend.

    Usage::

        router = LLMRouter()
        resp = await router.complete(LLMRequest(prompt="Summarize...", json_mode=True))
        print(resp.content)
    """

    def __init__(self, settings=None, transport: httpx.AsyncBaseTransport | None = None):
        from config.settings import get_settings
        self.settings = settings or get_settings()
        self._transport = transport
        self._backends: dict[str, bool] | None = None
        self._backends_checked_at: float = 0.0

    def _client(self, timeout: float, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, **kwargs)

    # ------------------------------------------------------------------
    # Backend detection
    # ------------------------------------------------------------------

    async def _detect_backends(self) -> dict[str, bool]:
        """Probe available backends. Results cached for `backend_probe_ttl_sec`."""
        now = time.monotonic()
        ttl = self.settings.backend_probe_ttl_sec
        if self._backends is not None and now - self._backends_checked_at < ttl:
            return self._backends

        backends: dict[str, bool] = {"ollama": False, "openai": False, "claude": False}

        if self.settings.insight_backend in ("auto", "ollama"):
            try:
                async with self._client(timeout=2) as client:
                    resp = await client.get(f"{self.settings.ollama_base_url}/api/tags")
                    if resp.status_code == 200:
                        models = [m.get("name", "") for m in resp.json().get("models", [])]
                        backends["ollama"] = any(
                            n.startswith(self.settings.insight_model) for n in models
                        )
            except httpx.HTTPError as exc:
                log.warning("router.ollama_probe_failed", error=str(exc))

        # Key presence checks only
        if self.settings.insight_backend in ("auto", "openai"):
            backends["openai"] = bool(self._api_key("openai_api_key"))
        if self.settings.insight_backend in ("auto", "claude"):
            backends["claude"] = bool(self._api_key("anthropic_api_key"))

        log.info("router.backends_detected", **backends)
        self._backends = backends
        self._backends_checked_at = now
        return backends

    def _api_key(self, key_name: str) -> str | None:
        """Key from Settings, falling back to the OS keychain."""
        value = getattr(self.settings, key_name, "")
        if value:
            return value
        if not self.settings.keyring_service:
            return None
        try:
            return keyring.get_password(self.settings.keyring_service, key_name) or None
        except KeyringError as exc:
            log.debug("router.keyring_unavailable", key=key_name, error=str(exc))
            return None

    def _select_backend(self, request: LLMRequest, backends: dict[str, bool]) -> LLMBackend:
        if self.settings.insight_backend == "none":
            raise LLMUnavailableError("Text generation disabled (insight_backend=none)")

        if request.backend is not None:
            preferred = [request.backend]
        else:
            preferred = [LLMBackend.OLLAMA, LLMBackend.OPENAI, LLMBackend.CLAUDE]

        for b in preferred:
            if backends.get(b.value):
                return b
        raise LLMUnavailableError(
            f"No available LLM backend from preference list {[b.value for b in preferred]}. "
            "Ensure Ollama is running or an OpenAI-compatible or Anthropic API key is configured."
        )

    async def is_available(self) -> bool:
        if self.settings.insight_backend == "none":
            return False
        backends = await self._detect_backends()
        return any(backends.values())

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Route the request to the best available backend and return a response."""
        backends = await self._detect_backends()
        backend = self._select_backend(request, backends)

        log.info(
            "router.dispatch",
            backend=backend.value,
            json_mode=request.json_mode,
            task_type=request.task_type,
            prompt_len=len(request.prompt),
        )

        t0 = time.monotonic()
        if backend == LLMBackend.OLLAMA:
            resp = await self._ollama_complete(request)
        elif backend == LLMBackend.OPENAI:
            resp = await self._openai_complete(request)
        else:
            resp = await self._claude_complete(request)
        resp.latency_ms = round((time.monotonic() - t0) * 1000, 1)

        resp = _split_reasoning(resp)
        log.info(
            "router.usage",
            backend=resp.backend.value,
            model=resp.model,
            tokens=resp.tokens_used,
            latency_ms=resp.latency_ms,
            task_type=request.task_type,
        )
        return resp

    async def generate(self, prompt: str, system: str = "", json_mode: bool = False) -> str:
        """Generate text. Returns the content string directly."""
        resp = await self.complete(LLMRequest(
            prompt=prompt,
            system=system,
            json_mode=json_mode,
            max_tokens=self.settings.insight_max_tokens,
            temperature=self.settings.insight_temperature,
        ))
        return resp.content

    # ------------------------------------------------------------------
    # Backend implementations
    # ------------------------------------------------------------------

    async def _ollama_complete(self, request: LLMRequest) -> LLMResponse:
        model = request.model or self.settings.insight_model
        payload: dict[str, Any] = {
            "model": model,
            "prompt": request.prompt,
            "system": request.system,
            "stream": False,
            "options": {
                "num_predict": request.max_tokens,
                "temperature": request.temperature,
            },
        }
        if request.json_mode:
            payload["format"] = "json"

        async with self._client(timeout=self.settings.insight_timeout_sec) as client:
            resp = await client.post(
                f"{self.settings.ollama_base_url}/api/generate", json=payload
            )
            resp.raise_for_status()
            data = resp.json()

        return LLMResponse(
            content=data["response"],
            backend=LLMBackend.OLLAMA,
            model=model,
            tokens_used=data.get("eval_count", 0),
        )

    async def _openai_complete(self, request: LLMRequest) -> LLMResponse:
        """Call an OpenAI-compatible /chat/completions endpoint."""
        model = request.model or self.settings.insight_openai_model
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})

        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}
        headers = {
            "Authorization": f"Bearer {self._api_key('openai_api_key')}",
            "Content-Type": "application/json",
        }

        async with self._client(timeout=self.settings.insight_timeout_sec) as client:
            resp = await client.post(
                f"{self.settings.openai_base_url.rstrip('/')}/chat/completions",
                json=payload,
                headers=headers,
            )
            resp.raise_for_status()
            data = resp.json()

        return LLMResponse(
            content=data["choices"][0]["message"]["content"],
            backend=LLMBackend.OPENAI,
            model=model,
            tokens_used=data.get("usage", {}).get("total_tokens", 0),
        )

    async def _claude_complete(self, request: LLMRequest) -> LLMResponse:
        """Call the Anthropic Messages API."""
        model = request.model or self.settings.insight_claude_model
        system = request.system
        if request.json_mode:
            # No JSON response format on this API; ask for it in the system prompt
            system = f"{system}\n\nRespond with a single JSON object and nothing else.".strip()

        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if system:
            kwargs["system"] = system

        async with anthropic.AsyncAnthropic(
            api_key=self._api_key("anthropic_api_key"),
            timeout=self.settings.insight_timeout_sec,
        ) as client:
            resp = await client.messages.create(**kwargs)
        content = "".join(block.text for block in resp.content if block.type == "text")
        tokens = (resp.usage.input_tokens or 0) + (resp.usage.output_tokens or 0)

        log.info("claude.response", input_tokens=resp.usage.input_tokens,
                 output_tokens=resp.usage.output_tokens)
        return LLMResponse(
            content=content,
            backend=LLMBackend.CLAUDE,
            model=model,
            tokens_used=tokens,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _split_reasoning(resp: LLMResponse) -> LLMResponse:
    """Move a <think>...</think> preamble (DeepSeek R1, Qwen3) out of the content."""
    match = re.search(r"<think>(.*?)</think>", resp.content, re.DOTALL | re.IGNORECASE)
    if match:
        resp.reasoning = match.group(1).strip()
        resp.content = resp.content[match.end():].strip()
    return resp
