"""
Text-generation backends behind ``generate(system_prompt, user_prompt) -> str``.

Architecture:
  - ProviderConfig: per-provider settings (model, api_key, base_url, etc.)
  - Degradation chain: primary model -> fallback model -> raise
  - Usage log: token counts and latency per call, kept on the generator
  - Supports: OpenAI, Ollama, any OpenAI-compatible API (vLLM, LiteLLM, etc.)

Failures are raised, never swallowed: the pipeline's retry loop diagnoses
and retries them.

Configuration via environment variables:
  LLM_PROVIDER          = openai | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o-mini                (primary model)
  LLM_FALLBACK_MODEL    = gpt-3.5-turbo              (fallback on primary failure)
  LLM_TEMPERATURE       = 0.1
  LLM_TIMEOUT_S         = 60
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or custom endpoint)
  OLLAMA_BASE_URL       = http://localhost:11434/v1   (Ollama OpenAI-compat endpoint)
  OLLAMA_MODEL          = qwen2.5:7b
  MOCK_LLM_ENABLED      = true                       (force mock mode)
"""

from __future__ import annotations

import logging
import os
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from spendcube.mock_llm import MockGenerator, is_mock_llm_enabled

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(self, system_prompt: str, user_prompt: str) -> str: ...


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    fallback_model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.1
    max_tokens: int = 1024
    timeout_s: float = 60.0


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    degraded: bool = False
    degrade_reason: str = ""


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_provider_config(environ: Mapping[str, str] | None = None) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = env.get("LLM_PROVIDER", "openai").strip().lower() or "openai"
    fallback = env.get("LLM_FALLBACK_MODEL", "").strip()
    temperature = _env_float(env, "LLM_TEMPERATURE", 0.1)
    timeout_s = max(1.0, _env_float(env, "LLM_TIMEOUT_S", 60.0))

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=(env.get("OLLAMA_MODEL", "") or env.get("LLM_MODEL", "") or "qwen2.5:7b").strip(),
            fallback_model=fallback,
            api_key=env.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            temperature=temperature,
            timeout_s=timeout_s,
        )

    return ProviderConfig(
        provider=provider,
        model=env.get("LLM_MODEL", "").strip() or "gpt-4o-mini",
        fallback_model=fallback,
        api_key=env.get("OPENAI_API_KEY", "").strip(),
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
        temperature=temperature,
        timeout_s=timeout_s,
    )


def is_real_llm_available(environ: Mapping[str, str] | None = None) -> bool:
    if is_mock_llm_enabled(environ):
        return False
    config = get_provider_config(environ)
    if config.provider == "ollama":
        return bool(config.base_url)
    return bool(config.api_key)


def _create_client(config: ProviderConfig):
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required. Install with: pip install openai")

    kwargs: dict[str, Any] = {"timeout": config.timeout_s, "max_retries": 0}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url

    if config.provider == "ollama" and "api_key" not in kwargs:
        kwargs["api_key"] = "ollama"

    return openai.AsyncOpenAI(**kwargs)


class OpenAIGenerator:
    """OpenAI-compatible chat completions with a fallback model.

    Client-side retries are disabled; retrying belongs to the pipeline.
    ``usage_log`` keeps the most recent ``usage_log_size`` calls; the totals
    in ``usage_summary`` cover every call.
    """

    def __init__(self, config: ProviderConfig, *, client: Any = None, usage_log_size: int = 1000) -> None:
        self.config = config
        self._client = client
        self.usage_log: deque[LLMUsage] = deque(maxlen=max(1, usage_log_size))
        self._totals = {
            "calls": 0,
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
            "degraded_calls": 0,
        }

    @property
    def model(self) -> str:
        return self.config.model

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = _create_client(self.config)
        return self._client

    async def _call_chat(self, *, model: str, messages: list[dict[str, str]]) -> tuple[str, LLMUsage]:
        t0 = time.monotonic()
        response = await self._get_client().chat.completions.create(
            model=model,
            temperature=self.config.temperature,
            messages=messages,
            max_tokens=self.config.max_tokens,
        )
        elapsed_ms = (time.monotonic() - t0) * 1000

        content = response.choices[0].message.content or ""
        usage_data = response.usage
        usage = LLMUsage(
            prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
            completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
            total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
            model=model,
            latency_ms=round(elapsed_ms, 1),
        )
        return content, usage

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            content, usage = await self._call_chat(model=self.config.model, messages=messages)
        except Exception as primary_exc:
            if not self.config.fallback_model:
                raise
            logger.warning(
                "Primary model %s failed (%s), degrading to %s",
                self.config.model,
                type(primary_exc).__name__,
                self.config.fallback_model,
            )
            content, usage = await self._call_chat(model=self.config.fallback_model, messages=messages)
            usage.degraded = True
            usage.degrade_reason = f"primary_failed:{type(primary_exc).__name__}"
        self._record_usage(usage)
        return content

    def _record_usage(self, usage: LLMUsage) -> None:
        self.usage_log.append(usage)
        self._totals["calls"] += 1
        self._totals["prompt_tokens"] += usage.prompt_tokens
        self._totals["completion_tokens"] += usage.completion_tokens
        self._totals["total_tokens"] += usage.total_tokens
        self._totals["degraded_calls"] += int(usage.degraded)

    def usage_summary(self) -> dict[str, Any]:
        return dict(self._totals)


def create_generator_from_env(environ: Mapping[str, str] | None = None) -> TextGenerator:
    if not is_real_llm_available(environ):
        return MockGenerator()
    return OpenAIGenerator(get_provider_config(environ))


def get_provider_info(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Return current provider configuration (safe for logging, no secrets)."""
    config = get_provider_config(environ)
    return {
        "provider": config.provider,
        "model": config.model,
        "fallback_model": config.fallback_model or None,
        "base_url": config.base_url or "(default)",
        "has_api_key": bool(config.api_key),
        "real_llm_available": is_real_llm_available(environ),
        "temperature": config.temperature,
    }
