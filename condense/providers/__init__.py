"""LLM provider abstraction module."""

from condense.providers.base import LLMProvider, LLMResponse
from condense.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider"]
