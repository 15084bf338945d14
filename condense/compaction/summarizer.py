"""Chunk summarization for compaction."""

import asyncio
import math
import re
from abc import ABC, abstractmethod

from loguru import logger

from condense.compaction.estimator import TokenCounter
from condense.compaction.types import (
    ChunkSummary,
    Message,
    MessageChunk,
    SummarizationError,
    compression_ratio,
    content_text,
)
from condense.providers.base import LLMProvider


SUMMARIZE_SYSTEM_PROMPT = """You are a conversation summarizer. Your task is to create a concise but comprehensive summary of the conversation history.

Focus on:
1. Key decisions made
2. Important information exchanged
3. Open questions or TODOs
4. Any constraints or requirements mentioned
5. Current state of any tasks being worked on

Keep the summary clear and actionable. Use bullet points where appropriate."""

SUMMARIZE_USER_PROMPT = """Please summarize the following conversation excerpt:

{conversation}

Provide a concise summary that captures the essential information."""

IMPORTANCE_KEYWORDS = ("decision", "critical", "todo", "error", "should", "because")

MIN_SENTENCE_LENGTH = 20
MAX_SUMMARY_SENTENCES = 10

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")


class Summarizer(ABC):
    """Reduces a block of text to a shorter text."""

    @abstractmethod
    async def summarize(self, text: str) -> str:
        """Summarize text."""
        pass


class LocalSummarizer(Summarizer):
    """
    Deterministic extractive summarizer. No network.

    Keeps the highest scoring third of the sentences (at most 10) in their
    original order.
    """

    async def summarize(self, text: str) -> str:
        return self.extract(text)

    def extract(self, text: str) -> str:
        sentences = [
            s.strip() for s in _SENTENCE_SPLIT.split(text)
            if len(s.strip()) >= MIN_SENTENCE_LENGTH
        ]
        if not sentences:
            return text.strip()

        keep = min(math.ceil(len(sentences) / 3), MAX_SUMMARY_SENTENCES)
        ranked = sorted(
            range(len(sentences)),
            key=lambda i: -self.score(sentences[i]),
        )
        kept = sorted(ranked[:keep])

        return ". ".join(sentences[i].rstrip(".") for i in kept) + "."

    @staticmethod
    def score(sentence: str) -> int:
        lowered = sentence.lower()
        score = sum(2 for keyword in IMPORTANCE_KEYWORDS if keyword in lowered)
        if "```" in sentence:
            score += 2
        if "?" in sentence:
            score += 1
        return score


class LLMSummarizer(Summarizer):
    """Summarizer backed by an LLM provider."""

    def __init__(self, provider: LLMProvider, model: str | None = None, max_tokens: int = 1024):
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens

    async def summarize(self, text: str) -> str:
        response = await self.provider.chat(
            messages=[
                {"role": "system", "content": SUMMARIZE_SYSTEM_PROMPT},
                {"role": "user", "content": SUMMARIZE_USER_PROMPT.format(conversation=text)},
            ],
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0.2,
        )

        if response.finish_reason == "error":
            raise SummarizationError(response.content or "LLM call failed")
        if not response.content or not response.content.strip():
            raise SummarizationError("LLM returned an empty summary")

        return response.content.strip()


def format_messages_for_summary(messages: list[Message]) -> str:
    """
    Format messages as role-tagged text.

    Args:
        messages: Messages to format.

    Returns:
        Conversation text, one block per message.
    """
    parts = []
    for msg in messages:
        role = msg.get("role", "unknown")
        text = content_text(msg.get("content"))
        if text:
            parts.append(f"[{role}]: {text}")

        for tc in msg.get("tool_calls") or []:
            if isinstance(tc, dict):
                func = tc.get("function", {})
                args = func.get("arguments", "")
                if not isinstance(args, str):
                    args = content_text(args)
                parts.append(f"[{role} called {func.get('name', 'tool')}]: {args}")

    return "\n\n".join(parts)


def truncate_head_tail(text: str, head_chars: int = 1500, tail_chars: int = 1500) -> str:
    """Keep the head and tail of text with a marker noting the removed count."""
    if len(text) <= head_chars + tail_chars:
        return text
    removed = len(text) - head_chars - tail_chars
    tail = text[-tail_chars:] if tail_chars > 0 else ""
    return f"{text[:head_chars]}\n\n[... {removed} characters truncated ...]\n\n{tail}"


async def summarize_chunks_parallel(
    chunks: list[MessageChunk],
    summarizer: Summarizer,
    counter: TokenCounter | None = None,
    model: str | None = None,
    head_chars: int = 1500,
    tail_chars: int = 1500,
) -> list[ChunkSummary]:
    """
    Summarize every chunk concurrently.

    A failed summarization does not affect the other chunks; that chunk is
    replaced by a head/tail truncation and flagged as degraded.

    Args:
        chunks: Chunks to summarize.
        summarizer: Summarizer to call for each chunk.
        counter: Token counter.
        model: Model override for token counting.
        head_chars: Characters kept from the start on failure.
        tail_chars: Characters kept from the end on failure.

    Returns:
        Summaries sorted by chunk index.
    """
    counter = counter or TokenCounter()

    async def summarize_one(chunk: MessageChunk) -> ChunkSummary:
        text = format_messages_for_summary(chunk.messages)
        degraded = False
        try:
            summary = await summarizer.summarize(text)
        except Exception as e:
            logger.warning(f"Summarization of chunk {chunk.index} failed, truncating instead: {e}")
            summary = truncate_head_tail(text, head_chars, tail_chars)
            degraded = True

        tokens = counter.count_tokens(summary, model)
        return ChunkSummary(
            index=chunk.index,
            summary=summary,
            token_count=tokens,
            original_token_count=chunk.token_count,
            compression_ratio=compression_ratio(tokens, chunk.token_count),
            degraded=degraded,
        )

    results = await asyncio.gather(*(summarize_one(chunk) for chunk in chunks))
    return sorted(results, key=lambda s: s.index)


def merge_summaries(
    summaries: list[ChunkSummary],
    counter: TokenCounter | None = None,
    model: str | None = None,
) -> tuple[str, int]:
    """
    Merge chunk summaries into one text.

    Args:
        summaries: Summaries in chunk order.
        counter: Token counter.
        model: Model override for token counting.

    Returns:
        Tuple of (merged text, token count).
    """
    if not summaries:
        return "", 0

    counter = counter or TokenCounter()
    if len(summaries) == 1:
        return summaries[0].summary, summaries[0].token_count

    total = len(summaries)
    if total > 3:
        parts = [f"[Part {i}/{total}]\n{s.summary}" for i, s in enumerate(summaries, start=1)]
    else:
        parts = [s.summary for s in summaries]

    merged = "\n\n".join(parts)
    return merged, counter.count_tokens(merged, model)
