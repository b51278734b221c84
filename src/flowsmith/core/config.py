"""Configuration resolution: explicit config > env > defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


def redact_api_key(key: str | None) -> str | None:
    """Redact an API key, showing only the first 4 and last 4 characters.

    Returns None if the key is None, or the redacted string otherwise.
    Short keys (8 chars or fewer) are fully redacted as '****'.
    """
    if key is None:
        return None
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


@dataclass
class LLMConfig:
    """Configuration for the generative model provider.

    Supports four providers:
    - "anthropic": Anthropic Claude models (default)
    - "openai": OpenAI GPT models
    - "gemini": Google Gemini through its OpenAI-compatible endpoint
    - "openai-compatible": Any OpenAI-compatible API (Ollama, vLLM, etc.)

    Environment variables:
    - FLOWSMITH_LLM_PROVIDER: override provider
    - FLOWSMITH_LLM_MODEL: override model
    - FLOWSMITH_LLM_BASE_URL: override base_url
    - ANTHROPIC_API_KEY / OPENAI_API_KEY / GEMINI_API_KEY: provider keys
    """

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.2
    max_tokens: int = 4096
    base_url: str | None = None
    api_key: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> LLMConfig:
        """Create LLMConfig from a dict, applying env var overrides.

        Config precedence: explicit dict values > env vars > class defaults.
        """
        config = cls()

        env_provider = os.environ.get("FLOWSMITH_LLM_PROVIDER")
        if env_provider:
            config.provider = env_provider
        env_model = os.environ.get("FLOWSMITH_LLM_MODEL")
        if env_model:
            config.model = env_model
        env_base_url = os.environ.get("FLOWSMITH_LLM_BASE_URL")
        if env_base_url:
            config.base_url = env_base_url

        for key in ("provider", "model", "temperature", "max_tokens", "base_url", "api_key"):
            if key in data:
                setattr(config, key, data[key])

        return config

    def resolve_api_key(self) -> str | None:
        """Resolve the API key: explicit > env var per provider."""
        if self.api_key:
            return self.api_key
        if self.provider == "anthropic":
            return os.environ.get("ANTHROPIC_API_KEY")
        if self.provider == "gemini":
            return os.environ.get("GEMINI_API_KEY")
        return os.environ.get("OPENAI_API_KEY")

    def resolve_base_url(self) -> str | None:
        if self.base_url:
            return self.base_url
        if self.provider == "gemini":
            return GEMINI_OPENAI_BASE_URL
        return None

    def to_dict(self) -> dict:
        """Cache-relevant view of the config (never includes the key)."""
        return {
            "provider": self.provider,
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


@dataclass
class ResiliencePolicy:
    """Retry, backoff and circuit-breaker settings for model calls.

    ``max_attempts`` counts every attempt including the first one.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_retry_after: float = 60.0
    failure_threshold: int = 5
    failure_window: float = 60.0
    cooldown: float = 30.0

    @classmethod
    def from_dict(cls, data: dict) -> ResiliencePolicy:
        policy = cls()
        for key in (
            "max_attempts",
            "base_delay",
            "max_delay",
            "max_retry_after",
            "failure_threshold",
            "failure_window",
            "cooldown",
        ):
            if key in data:
                setattr(policy, key, data[key])
        if policy.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        return policy

    def backoff_delay(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-based), capped at max_delay."""
        return min(self.base_delay * (2**retry_index), self.max_delay)


@dataclass
class StageTimeouts:
    """Hard per-call timeouts in seconds, keyed by stage name."""

    timeouts: dict[str, float] = field(
        default_factory=lambda: {"parse": 30.0, "design": 60.0, "synthesize": 120.0}
    )
    default: float = 60.0

    def for_stage(self, stage_name: str) -> float:
        return self.timeouts.get(stage_name, self.default)
