"""Unified model transport wrapping both Anthropic and OpenAI SDKs.

One call is exactly one attempt: SDK-level retries are disabled and every
exception propagates to the caller. Retry, backoff and circuit breaking live
in flowsmith.build.resilience.
"""

from __future__ import annotations

from dataclasses import dataclass

from flowsmith.core.config import LLMConfig

PROVIDERS = ("anthropic", "openai", "gemini", "openai-compatible")


@dataclass
class LLMResponse:
    """Response from a model completion call."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int


class LLMClient:
    """Model client that dispatches to the Anthropic or OpenAI SDK.

    Supports four providers:
    - "anthropic": Uses the anthropic SDK
    - "openai": Uses the openai SDK with OpenAI's default base URL
    - "gemini": Uses the openai SDK against Gemini's OpenAI-compatible endpoint
    - "openai-compatible": Uses the openai SDK with a custom base_url
      (for Ollama, vLLM, DeepSeek, etc.)
    """

    def __init__(self, config: LLMConfig) -> None:
        self.config = config
        self._client = self._create_client()

    def _create_client(self):
        """Create the underlying SDK client based on provider."""
        api_key = self.config.resolve_api_key()
        base_url = self.config.resolve_base_url()

        if self.config.provider == "anthropic":
            import anthropic

            kwargs = {"max_retries": 0}
            if api_key:
                kwargs["api_key"] = api_key
            if base_url:
                kwargs["base_url"] = base_url
            return anthropic.Anthropic(**kwargs)

        elif self.config.provider in ("openai", "gemini", "openai-compatible"):
            import openai

            if self.config.provider == "openai-compatible" and not base_url:
                raise ValueError("openai-compatible provider requires base_url to be set")
            kwargs = {"max_retries": 0}
            if api_key:
                kwargs["api_key"] = api_key
            if base_url:
                kwargs["base_url"] = base_url
            return openai.OpenAI(**kwargs)

        else:
            raise ValueError(
                f"Unknown LLM provider: {self.config.provider!r}. "
                f"Supported: {', '.join(repr(p) for p in PROVIDERS)}"
            )

    def complete(
        self,
        messages: list[dict],
        timeout: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """Send a single completion request.

        Args:
            messages: List of message dicts with 'role' and 'content' keys.
            timeout: Hard per-call timeout in seconds, enforced by the SDK.
            max_tokens: Override max_tokens from config.
            temperature: Override temperature from config.

        Raises whatever the SDK raises (timeouts, connection errors, status errors).
        """
        resolved_max_tokens = max_tokens if max_tokens is not None else self.config.max_tokens
        resolved_temperature = temperature if temperature is not None else self.config.temperature

        kwargs = {
            "model": self.config.model,
            "max_tokens": resolved_max_tokens,
            "temperature": resolved_temperature,
            "messages": messages,
        }
        if timeout is not None:
            kwargs["timeout"] = timeout

        if self.config.provider == "anthropic":
            return self._complete_anthropic(kwargs)
        return self._complete_openai(kwargs)

    def _complete_anthropic(self, kwargs: dict) -> LLMResponse:
        response = self._client.messages.create(**kwargs)
        input_tokens = getattr(response.usage, "input_tokens", 0)
        output_tokens = getattr(response.usage, "output_tokens", 0)
        return LLMResponse(
            content=response.content[0].text,
            model=response.model if hasattr(response, "model") else self.config.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )

    def _complete_openai(self, kwargs: dict) -> LLMResponse:
        response = self._client.chat.completions.create(**kwargs)
        choice = response.choices[0]
        usage = response.usage
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model if response.model else self.config.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
        )
