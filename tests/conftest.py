"""Shared fixtures."""

import math

import pytest

from condense.compaction.types import content_text


class CharCounter:
    """Deterministic token counter: one token per four characters."""

    def count_tokens(self, text, model=None):
        return math.ceil(len(text) / 4) if text else 0

    def count_message_tokens(self, message, model=None):
        tokens = 4 + self.count_tokens(content_text(message.get("content")))
        for tc in message.get("tool_calls") or []:
            func = tc.get("function", {})
            tokens += 10 + self.count_tokens(func.get("name", ""))
            tokens += self.count_tokens(str(func.get("arguments", "")))
        return tokens

    def count_messages_tokens(self, messages, model=None):
        return sum(self.count_message_tokens(m) for m in messages)


def make_conversation(count: int, words: int = 30) -> list[dict]:
    """Alternating user/assistant messages with a few sentences each."""
    messages = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        filler = " ".join(f"word{j}" for j in range(words))
        messages.append({
            "role": role,
            "content": f"Message {i} from the {role} side. {filler}. Closing remark for message {i}.",
        })
    return messages


@pytest.fixture
def counter() -> CharCounter:
    return CharCounter()


@pytest.fixture
def conversation() -> list[dict]:
    return make_conversation(50)


@pytest.fixture
def conversation_factory():
    return make_conversation
