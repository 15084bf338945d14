"""Enhanced context compression.

Message-centric alternative to the summary-based CompactionService. It keeps
conversational structure and recency while shrinking the history through a
cascade of increasingly destructive stages:

1. sliding window with overlap
2. content-aware tool output truncation
3. intelligent summarization seeded with extracted key information
4. importance-based removal
5. hard truncation

The full history is archived before the first destructive stage so it can be
recovered later.
"""

import copy
import dataclasses
import time
from collections import deque
from datetime import datetime
from typing import Any

from loguru import logger

from condense.compaction.classifier import (
    calculate_importance,
    classify_messages,
    classify_text,
    extract_key_information,
)
from condense.compaction.estimator import TokenCounter
from condense.compaction.types import (
    ClassifiedMessage,
    CompactionCancelledError,
    CompressionStats,
    ContentType,
    ContextArchive,
    EnhancedCompressionConfig,
    EnhancedCompressionResult,
    KeyInformation,
    Message,
    SlidingWindowConfig,
    SummarizationConfig,
    SUMMARY_PREFIX,
    compression_ratio,
    content_text,
)

TOOL_OUTPUT_MULTIPLIERS = {
    ContentType.ERROR: 1.5,
    ContentType.CODE: 1.2,
}

TRANSITION_MARKER = "[Transition context follows]"
CONTEXT_SUMMARY_PREFIX = "[Context Summary - "
INTELLIGENT_SUMMARY_PREFIX = "[Intelligent Summary of "

# System messages starting with these were produced by compaction, not the caller
GENERATED_PREFIXES = (
    CONTEXT_SUMMARY_PREFIX,
    INTELLIGENT_SUMMARY_PREFIX,
    TRANSITION_MARKER,
    SUMMARY_PREFIX,
)
MAX_FLOW_LINES = 20
MAX_TOPICS = 5
RECENT_FACTS = 5
MAX_FACT_CHARS = 200


class EnhancedCompressor:
    """
    Enhanced context compression engine.

    Owns its archive ring; callers sharing one instance must serialize
    ``compress`` calls themselves.
    """

    def __init__(
        self,
        counter: TokenCounter | None = None,
        config: EnhancedCompressionConfig | None = None,
        model: str | None = None,
    ):
        self.counter = counter or TokenCounter()
        self.config = config or EnhancedCompressionConfig()
        self.model = model
        self.stats = CompressionStats()
        self._archives: deque[ContextArchive] = deque(maxlen=max(0, self.config.max_archives))
        self._archive_counter = 0

    def compress(
        self,
        messages: list[Message],
        token_limit: int,
        session_id: str | None = None,
        cancel_event: Any = None,
    ) -> EnhancedCompressionResult:
        """
        Compress messages to fit token_limit.

        Args:
            messages: Messages to compress. Not modified.
            token_limit: Maximum allowed tokens.
            session_id: Optional session identifier stored with the archive.
            cancel_event: Object with ``is_set()``, checked between stages.

        Returns:
            EnhancedCompressionResult with the compressed messages and metrics.
        """
        start = time.monotonic()
        original_tokens = self._count(messages)

        if original_tokens <= token_limit:
            return self._result(messages, messages, original_tokens, start, [], KeyInformation())

        archive = None
        if self.config.enable_archiving:
            archive = self._archive(messages, original_tokens, session_id)

        key_info = extract_key_information(messages)

        # Only the caller's system prompts are pinned; earlier summaries and
        # markers stay in the working list so later stages can fold them away
        system_messages = [m for m in messages if is_pinned_system(m)]
        working = [m for m in messages if not is_pinned_system(m)]
        budget = max(0, token_limit - self._count(system_messages))

        applied: list[str] = []
        tools_truncated = 0
        current = self._count(working)

        if current > budget:
            self._check_cancelled(cancel_event)
            working = self.apply_sliding_window(working)
            current = self._count(working)
            applied.append("sliding_window_overlap")

        if current > budget:
            self._check_cancelled(cancel_event)
            working, tools_truncated = self.truncate_tool_outputs(working)
            current = self._count(working)
            applied.append("smart_tool_truncation")

        if (
            current > budget
            and len(working) >= self.config.summarization.min_messages_for_summarization
        ):
            self._check_cancelled(cancel_event)
            working = self.apply_intelligent_summarization(working, key_info)
            current = self._count(working)
            applied.append("intelligent_summarization")

        if current > budget:
            self._check_cancelled(cancel_event)
            working = self.remove_by_importance(working, budget)
            current = self._count(working)
            applied.append("importance_removal")

        if current > budget:
            self._check_cancelled(cancel_event)
            working = self.hard_truncate(working, budget)
            applied.append("hard_truncation")

        compressed = system_messages + working
        result = self._result(
            messages, compressed, original_tokens, start, applied, key_info, archive, tools_truncated
        )
        logger.info(
            f"Enhanced compression: {original_tokens} -> {result.final_tokens} tokens "
            f"({', '.join(applied)})"
        )
        return result

    # ── Stages ──────────────────────────────────────────────────────

    def apply_sliding_window(self, messages: list[Message]) -> list[Message]:
        """
        Keep the recent window, an overlap zone before it, and preserved older messages.

        Older messages that are neither preserved nor in the overlap are
        replaced by a short flow summary when enabled.
        """
        window = self.config.sliding_window
        if len(messages) <= window.window_size:
            return messages

        window_start = len(messages) - window.window_size
        overlap_start = max(0, window_start - window.overlap_size)

        preserved: list[Message] = []
        dropped: list[Message] = []
        for c in self._classify(messages)[:overlap_start]:
            if is_generated(c.message):
                # Old summaries are folded into the new one, old markers vanish
                if content_text(c.message.get("content")) != TRANSITION_MARKER:
                    dropped.append(c.message)
            elif c.preserve:
                preserved.append(c.message)
            else:
                dropped.append(c.message)

        result: list[Message] = []
        if window.summarize_old_messages and dropped:
            result.append({
                "role": "system",
                "content": f"{CONTEXT_SUMMARY_PREFIX}{len(dropped)} earlier messages]\n"
                           f"{create_context_summary(dropped)}",
            })

        result.extend(preserved)

        overlap = messages[overlap_start:window_start]
        if overlap:
            result.append({"role": "system", "content": TRANSITION_MARKER})
            result.extend(overlap)

        result.extend(messages[window_start:])
        return result

    def truncate_tool_outputs(self, messages: list[Message]) -> tuple[list[Message], int]:
        """
        Truncate long tool outputs, keeping 60% head and 30% tail.

        Error output gets 1.5x and code 1.2x the configured maximum length.
        Structured output is flattened to text first and replaced by the
        truncated text.

        Returns:
            Tuple of (messages, number of outputs truncated).
        """
        result = []
        truncated = 0
        for msg in messages:
            if msg.get("role") != "tool":
                result.append(msg)
                continue

            content = content_text(msg.get("content"))
            multiplier = TOOL_OUTPUT_MULTIPLIERS.get(classify_text(content), 1.0)
            max_length = int(self.config.max_tool_output_length * multiplier)
            if len(content) <= max_length:
                result.append(msg)
                continue

            result.append({**msg, "content": truncate_output(content, max_length)})
            truncated += 1

        return result, truncated

    def apply_intelligent_summarization(
        self,
        messages: list[Message],
        key_info: KeyInformation,
    ) -> list[Message]:
        """Replace everything before the recent window with one structured summary message."""
        settings = self.config.summarization
        split = max(0, len(messages) - self.config.sliding_window.window_size)
        to_summarize = messages[:split]
        to_keep = messages[split:]

        if not to_summarize:
            return messages

        sections = [("Conversation Flow", summarize_conversation_flow(to_summarize))]

        if settings.preserve_key_entities:
            files = list(dict.fromkeys(f.path for f in key_info.modified_files))
            if files:
                sections.append(("Files Modified", "\n".join(f"- {f}" for f in files)))

        if settings.preserve_errors and key_info.errors:
            sections.append((
                "Recent Errors",
                "\n".join(f"- {e.message[:MAX_FACT_CHARS]}" for e in key_info.errors[-RECENT_FACTS:]),
            ))

        if settings.preserve_decisions and key_info.decisions:
            sections.append((
                "Key Decisions",
                "\n".join(f"- {d.message[:MAX_FACT_CHARS]}" for d in key_info.decisions[-RECENT_FACTS:]),
            ))

        section_budget = settings.max_summary_tokens // len(sections)
        body = "\n\n".join(
            self._fit_section(f"## {title}\n{text}", section_budget) for title, text in sections
        )

        summary_message = {
            "role": "system",
            "content": f"{INTELLIGENT_SUMMARY_PREFIX}{len(to_summarize)} messages]\n{body}",
        }
        return [summary_message, *to_keep]

    def remove_by_importance(self, messages: list[Message], token_limit: int) -> list[Message]:
        """
        Keep the most important messages that fit, in original order.

        Ties in importance go to the earlier message.
        """
        classified = self._classify(messages)
        ranked = sorted(range(len(messages)), key=lambda i: (-classified[i].importance, i))

        kept: list[int] = []
        used = 0
        for i in ranked:
            tokens = self._count([messages[i]])
            if used + tokens <= token_limit:
                kept.append(i)
                used += tokens

        return [messages[i] for i in sorted(kept)]

    def hard_truncate(self, messages: list[Message], token_limit: int) -> list[Message]:
        """Keep the most recent whole messages that fit."""
        result: list[Message] = []
        used = 0
        for msg in reversed(messages):
            tokens = self._count([msg])
            if used + tokens > token_limit:
                break
            result.append(msg)
            used += tokens
        result.reverse()
        return result

    # ── Archive ─────────────────────────────────────────────────────

    def recover_context(self, archive_id: str | None = None) -> list[Message] | None:
        """
        Recover the full pre-compression history.

        Args:
            archive_id: Archive to recover, or None for the most recent.

        Returns:
            A copy of the archived messages, or None if not found.
        """
        if archive_id is None:
            if not self._archives:
                return None
            return copy.deepcopy(self._archives[-1].messages)

        for archive in self._archives:
            if archive.id == archive_id:
                return copy.deepcopy(archive.messages)
        return None

    def list_archives(self) -> list[dict[str, Any]]:
        """List available archives, oldest first."""
        return [
            {
                "id": a.id,
                "timestamp": a.timestamp,
                "message_count": len(a.messages),
                "token_count": a.token_count,
                "session_id": a.session_id,
            }
            for a in self._archives
        ]

    def clear_archives(self) -> None:
        """Clear all archives."""
        self._archives.clear()
        self._archive_counter = 0

    def get_config(self) -> EnhancedCompressionConfig:
        """Get a copy of the current configuration."""
        return copy.deepcopy(self.config)

    def update_config(self, **changes: Any) -> None:
        """
        Update configuration fields.

        ``sliding_window`` and ``summarization`` accept a dict of partial
        changes or a full config object.
        """
        sliding = changes.pop("sliding_window", None)
        summarization = changes.pop("summarization", None)

        config = dataclasses.replace(self.config, **changes)
        if isinstance(sliding, SlidingWindowConfig):
            config.sliding_window = sliding
        elif sliding:
            config.sliding_window = dataclasses.replace(config.sliding_window, **sliding)
        if isinstance(summarization, SummarizationConfig):
            config.summarization = summarization
        elif summarization:
            config.summarization = dataclasses.replace(config.summarization, **summarization)

        if config.max_archives != self.config.max_archives:
            self._archives = deque(self._archives, maxlen=max(0, config.max_archives))
        self.config = config

    def _archive(
        self,
        messages: list[Message],
        token_count: int,
        session_id: str | None,
    ) -> ContextArchive:
        self._archive_counter += 1
        archive = ContextArchive(
            id=f"archive-{self._archive_counter}-{int(time.time() * 1000)}",
            timestamp=datetime.now(),
            messages=copy.deepcopy(messages),
            token_count=token_count,
            session_id=session_id,
        )
        self._archives.append(archive)
        logger.debug(f"Context archived: {archive.id} ({len(messages)} messages, {token_count} tokens)")
        return archive

    # ── Helpers ─────────────────────────────────────────────────────

    def _count(self, messages: list[Message]) -> int:
        return self.counter.count_messages_tokens(messages, self.model)

    def _classify(self, messages: list[Message]) -> list[ClassifiedMessage]:
        """
        Classify the working list.

        Generated summaries are scored as explanations without the system role
        bonus, so they age out like any other message instead of outranking
        the recent conversation.
        """
        classified = classify_messages(messages, self.config.preservation_threshold)
        total = len(messages)
        for i, c in enumerate(classified):
            if is_generated(c.message):
                importance = calculate_importance(
                    {"content": c.message.get("content")}, i, total, ContentType.EXPLANATION
                )
                classified[i] = ClassifiedMessage(
                    message=c.message,
                    content_type=ContentType.EXPLANATION,
                    importance=importance,
                    preserve=False,
                )
        return classified

    def _fit_section(self, section: str, budget: int) -> str:
        tokens = self.counter.count_tokens(section, self.model)
        if tokens <= budget:
            return section

        marker = "\n[Section truncated]"
        cut = int(len(section) * budget / tokens)
        while cut > 0:
            text = section[:cut] + marker
            if self.counter.count_tokens(text, self.model) <= budget:
                return text
            cut = min(cut - 1, int(cut * 0.9))
        return ""

    def _result(
        self,
        original: list[Message],
        messages: list[Message],
        original_tokens: int,
        start: float,
        applied: list[str],
        key_info: KeyInformation,
        archive: ContextArchive | None = None,
        tools_truncated: int = 0,
    ) -> EnhancedCompressionResult:
        final_tokens = self._count(messages)
        if applied:
            self.stats.record(original_tokens, final_tokens, time.time())

        if archive is not None:
            archive = dataclasses.replace(archive, messages=copy.deepcopy(archive.messages))

        return EnhancedCompressionResult(
            messages=messages,
            compressed=final_tokens < original_tokens,
            original_tokens=original_tokens,
            final_tokens=final_tokens,
            tokens_reduced=original_tokens - final_tokens,
            compression_ratio=compression_ratio(final_tokens, original_tokens),
            strategy=applied[-1] if applied else "none",
            strategies_applied=applied,
            preserved_info=key_info,
            archive=archive,
            messages_removed=max(0, len(original) - len(messages)),
            tool_results_truncated=tools_truncated,
            duration=time.monotonic() - start,
        )

    @staticmethod
    def _check_cancelled(cancel_event: Any) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CompactionCancelledError("compression cancelled")


def is_generated(message: Message) -> bool:
    """Check if a message is a summary or marker produced by compaction."""
    content = message.get("content")
    return (
        message.get("role") == "system"
        and isinstance(content, str)
        and content.startswith(GENERATED_PREFIXES)
    )


def is_pinned_system(message: Message) -> bool:
    """Check if a message is a caller system prompt kept outside the cascade."""
    return message.get("role") == "system" and not is_generated(message)


def _truncation_marker(removed: int) -> str:
    return f"\n... [truncated {removed} chars] ...\n"


def truncate_output(content: str, max_length: int) -> str:
    """
    Keep 60% head and 30% tail of max_length with a removed-count marker.

    The result never exceeds max_length. When the marker does not fit in the
    remaining 10%, it is paid for out of the head and tail, split 2:1.
    """
    if len(content) <= max_length:
        return content

    keep_start = int(max_length * 0.6)
    keep_end = int(max_length * 0.3)

    # Upper bound on the marker length, removed count <= len(content)
    marker_length = len(_truncation_marker(len(content)))
    if keep_start + keep_end + marker_length > max_length:
        available = max_length - marker_length
        if available <= 0:
            return content[:max(0, max_length)]
        keep_start = available * 2 // 3
        keep_end = available // 3

    removed = len(content) - keep_start - keep_end
    tail = content[-keep_end:] if keep_end > 0 else ""
    return f"{content[:keep_start]}{_truncation_marker(removed)}{tail}"


def create_context_summary(messages: list[Message]) -> str:
    """Role counts plus up to five topics taken from user message first lines."""
    counts: dict[str, int] = {}
    for msg in messages:
        role = msg.get("role", "unknown")
        counts[role] = counts.get(role, 0) + 1

    parts = [
        f"Messages: {len(messages)} ({', '.join(f'{k}: {v}' for k, v in counts.items())})"
    ]

    topics: list[str] = []
    for msg in messages:
        if msg.get("role") != "user":
            continue
        topic = content_text(msg.get("content")).split("\n")[0][:50]
        if len(topic) > 10 and topic not in topics:
            topics.append(topic)
    if topics:
        parts.append(f"Topics discussed: {'; '.join(topics[:MAX_TOPICS])}")

    return "\n".join(parts)


def summarize_conversation_flow(messages: list[Message]) -> str:
    """One bullet per user topic change and a short gist of each assistant reply."""
    flows: list[str] = []
    current_topic = ""

    for msg in messages:
        role = msg.get("role")
        text = content_text(msg.get("content"))
        if role == "user" and text:
            first_line = text.split("\n")[0][:100]
            if first_line != current_topic:
                current_topic = first_line
                ellipsis = "..." if len(text) > 100 else ""
                flows.append(f"- User asked: {first_line}{ellipsis}")
        elif role == "assistant" and text:
            words = " ".join(text.split()[:10])
            if words:
                flows.append(f"  Assistant: {words}...")

    return "\n".join(flows[:MAX_FLOW_LINES])
