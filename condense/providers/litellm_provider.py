"""LiteLLM provider used for LLM-backed summaries and memory flushes."""

import os
from typing import Any
from loguru import logger

import litellm
from litellm import acompletion

from condense.providers.base import LLMProvider, LLMResponse


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Summaries are usually cheap, so this is typically pointed at a smaller
    model than the one driving the agent.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-haiku-4-5",
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.request_timeout_seconds = float(os.getenv("CONDENSE_LLM_TIMEOUT_SECONDS", "45"))

        self.is_openrouter = bool(
            (api_key and api_key.startswith("sk-or-")) or
            (api_base and "openrouter" in api_base)
        )

        # Custom endpoint (vLLM, etc.)
        self.is_vllm = bool(api_base) and not self.is_openrouter

        litellm.suppress_debug_info = True

    def resolve_model(self, model: str | None) -> str:
        """Apply the routing prefix LiteLLM expects for the configured endpoint."""
        model = model or self.default_model

        if self.is_openrouter and not model.startswith("openrouter/"):
            return f"openrouter/{model}"
        if self.is_vllm and not model.startswith("hosted_vllm/"):
            return f"hosted_vllm/{model}"
        if "gemini" in model.lower() and not model.startswith("gemini/"):
            return f"gemini/{model}"
        return model

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model identifier (e.g., 'anthropic/claude-haiku-4-5').
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature.

        Returns:
            LLMResponse with content.
        """
        kwargs: dict[str, Any] = {
            "model": self.resolve_model(model),
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": self.request_timeout_seconds,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key

        try:
            response = await acompletion(**kwargs)
            return self._parse_response(response)
        except Exception as e:
            # Redact potential API keys from error messages
            error_msg = str(e)
            if self.api_key and len(self.api_key) > 8:
                error_msg = error_msg.replace(self.api_key, "***")
            logger.error(f"LLM call error: {error_msg}")
            return LLMResponse(
                content=f"Error calling LLM: {error_msg}",
                finish_reason="error",
            )

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]

        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=choice.message.content,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model
