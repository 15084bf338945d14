"""Token estimation for messages."""

import tiktoken
from typing import Any

from condense.compaction.types import Message, content_text

DEFAULT_MODEL = "gpt-4"
FALLBACK_ENCODING = "cl100k_base"

# Approximate framing overhead per message and per tool call
MESSAGE_OVERHEAD_TOKENS = 4
TOOL_CALL_OVERHEAD_TOKENS = 10
IMAGE_TOKENS = 1000

# Cache encoders by encoding name
_encoders: dict[str, tiktoken.Encoding] = {}


def _get_encoder(model: str) -> tiktoken.Encoding:
    """Get or create the tiktoken encoder for a model."""
    try:
        name = tiktoken.encoding_name_for_model(model)
    except KeyError:
        # Non-OpenAI models (Claude, Gemini, ...) are close enough to cl100k_base
        name = FALLBACK_ENCODING

    encoder = _encoders.get(name)
    if encoder is None:
        encoder = tiktoken.get_encoding(name)
        _encoders[name] = encoder
    return encoder


class TokenCounter:
    """
    Model-aware token counter.

    Pure and deterministic for a given model. Anything with the same three
    ``count_*`` methods can be passed to the compaction components instead.
    """

    def __init__(self, model: str = DEFAULT_MODEL):
        self.model = model

    def count_tokens(self, text: str, model: str | None = None) -> int:
        """
        Count the tokens in a text string.

        Args:
            text: The text to count.
            model: Model override, defaults to the counter's model.

        Returns:
            Token count.
        """
        if not text:
            return 0

        encoder = _get_encoder(model or self.model)
        return len(encoder.encode(text, disallowed_special=()))

    def count_message_tokens(self, message: Message, model: str | None = None) -> int:
        """
        Count tokens for a single message including framing overhead.

        Args:
            message: Message dict with role and content.
            model: Model override.

        Returns:
            Token count.
        """
        tokens = MESSAGE_OVERHEAD_TOKENS

        content = message.get("content")
        if isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "image_url":
                    tokens += IMAGE_TOKENS
        tokens += self.count_tokens(content_text(content), model)

        for tc in message.get("tool_calls") or []:
            if isinstance(tc, dict):
                func = tc.get("function", {})
                tokens += self.count_tokens(func.get("name", ""), model)
                tokens += self.count_tokens(_arguments_text(func.get("arguments", "")), model)
                tokens += TOOL_CALL_OVERHEAD_TOKENS

        return tokens

    def count_messages_tokens(self, messages: list[Message], model: str | None = None) -> int:
        """Count total tokens for a list of messages."""
        return sum(self.count_message_tokens(msg, model) for msg in messages)


def _arguments_text(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return content_text(arguments)


_default_counter = TokenCounter()


def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in a text string with the default counter."""
    return _default_counter.count_tokens(text)


def estimate_message_tokens(message: Message) -> int:
    """Estimate tokens for a single message with the default counter."""
    return _default_counter.count_message_tokens(message)


def estimate_messages_tokens(messages: list[Message]) -> int:
    """Estimate total tokens for a list of messages with the default counter."""
    return _default_counter.count_messages_tokens(messages)
