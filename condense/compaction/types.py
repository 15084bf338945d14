"""Types for compaction system."""

import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


Message = dict[str, Any]


def content_text(content: Any) -> str:
    """
    Flatten message content to plain text.

    Content is either a string, a list of multi-part blocks, or some other
    structured payload (tool results are often dicts).
    """
    match content:
        case None:
            return ""
        case str():
            return content
        case list():
            parts = []
            for part in content:
                if isinstance(part, dict):
                    if part.get("type") == "text":
                        parts.append(part.get("text", ""))
                elif isinstance(part, str):
                    parts.append(part)
            return " ".join(p for p in parts if p)
        case _:
            try:
                return json.dumps(content, ensure_ascii=False, default=str)
            except (TypeError, ValueError):
                return str(content)


def message_text(message: Message) -> str:
    """Get the plain text of a message's content."""
    return content_text(message.get("content"))


class ContentType(str, Enum):
    """Content type detected for a message."""

    SYSTEM = "system"
    ERROR = "error"
    DECISION = "decision"
    CODE = "code"
    COMMAND = "command"
    FILE_CONTENT = "file_content"
    TOOL_RESULT = "tool_result"
    EXPLANATION = "explanation"
    CONVERSATION = "conversation"


@dataclass
class MemoryFlushConfig:
    """Configuration for pre-compaction memory flush."""

    enabled: bool = True
    soft_threshold_tokens: int = 4000
    prompt: str = (
        "Pre-compaction memory flush. "
        "List the durable facts from this conversation worth remembering "
        "(decisions, constraints, preferences, open TODOs) as '- ' bullets. "
        "If nothing to store, reply with NO_REPLY."
    )
    system_prompt: str = (
        "Pre-compaction memory flush turn. "
        "The session is near auto-compaction; capture durable memories. "
        "Usually NO_REPLY is correct."
    )


@dataclass
class CompactionConfig:
    """Configuration for the compaction orchestrator."""

    # Below this many messages compaction is a no-op
    min_messages: int = 5

    # Initial fan-out; retry n uses parallel_chunks * (n + 1)
    parallel_chunks: int = 4
    max_retries: int = 2

    flush_to_memory: bool = True

    # Head/tail kept when a chunk summary falls back to truncation
    truncate_head_chars: int = 1500
    truncate_tail_chars: int = 1500

    # Thresholds for compact_if_needed
    context_window: int = 128_000
    reserve_tokens_floor: int = 20_000
    max_history_share: float = 0.5

    memory_flush: MemoryFlushConfig = field(default_factory=MemoryFlushConfig)


@dataclass
class SlidingWindowConfig:
    """Sliding window settings for the enhanced compressor."""

    window_size: int = 15
    overlap_size: int = 3
    summarize_old_messages: bool = True


@dataclass
class SummarizationConfig:
    """Intelligent summarization settings for the enhanced compressor."""

    max_summary_tokens: int = 500
    preserve_key_entities: bool = True
    preserve_errors: bool = True
    preserve_decisions: bool = True
    min_messages_for_summarization: int = 5


@dataclass
class EnhancedCompressionConfig:
    """Configuration for the enhanced compressor."""

    sliding_window: SlidingWindowConfig = field(default_factory=SlidingWindowConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    max_tool_output_length: int = 800
    enable_archiving: bool = True
    max_archives: int = 5
    preservation_threshold: float = 0.7


@dataclass
class MessageChunk:
    """A contiguous, token-counted slice of the history."""

    index: int
    messages: list[Message]
    token_count: int


@dataclass
class ChunkSummary:
    """Summary of one chunk."""

    index: int
    summary: str
    token_count: int
    original_token_count: int
    compression_ratio: float
    degraded: bool = False  # summarizer failed, head/tail truncation used


@dataclass
class FallbackResult:
    """Result of a progressive fallback strategy."""

    content: str
    token_count: int
    strategy: str
    original_tokens: int
    compression_ratio: float


@dataclass
class CompactionResult:
    """Result of a compaction operation."""

    messages: list[Message]
    total_tokens: int
    original_tokens: int
    compression_ratio: float
    messages_compacted: int
    memories_flushed: int = 0
    used_fallback: bool = False
    duration: float = 0.0
    strategy: str = "none"
    summary: str = ""
    degraded_chunks: int = 0
    attempts: int = 0


@dataclass
class ClassifiedMessage:
    """A message with derived classification. Never persisted."""

    message: Message
    content_type: ContentType
    importance: float
    preserve: bool


@dataclass
class DecisionRecord:
    message: str
    index: int
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ErrorRecord:
    message: str
    index: int
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class FileOperation:
    path: str
    operation: str  # create, edit or delete
    index: int


@dataclass
class CodeSnippet:
    content: str
    index: int
    language: str | None = None


@dataclass
class ToolCallRecord:
    name: str
    arguments: str
    index: int


@dataclass
class KeyInformation:
    """Facts extracted from the history to seed summaries."""

    decisions: list[DecisionRecord] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    modified_files: list[FileOperation] = field(default_factory=list)
    code_snippets: list[CodeSnippet] = field(default_factory=list)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


@dataclass
class ContextArchive:
    """Full-history snapshot taken before destructive compression."""

    id: str
    timestamp: datetime
    messages: list[Message]
    token_count: int
    session_id: str | None = None
    reason: str = "compression"


@dataclass
class EnhancedCompressionResult:
    """Result of an enhanced compression run."""

    messages: list[Message]
    compressed: bool
    original_tokens: int
    final_tokens: int
    tokens_reduced: int
    compression_ratio: float
    strategy: str
    strategies_applied: list[str] = field(default_factory=list)
    preserved_info: KeyInformation = field(default_factory=KeyInformation)
    archive: ContextArchive | None = None
    messages_removed: int = 0
    tool_results_truncated: int = 0
    duration: float = 0.0


@dataclass
class CompressionStats:
    """Running statistics across compression calls."""

    total_compressions: int = 0
    total_tokens_saved: int = 0
    average_savings: float = 0.0
    history: deque = field(default_factory=lambda: deque(maxlen=STATS_HISTORY_LIMIT))

    def record(self, original_tokens: int, final_tokens: int, timestamp: float) -> None:
        saved = max(0, original_tokens - final_tokens)
        savings = (saved / original_tokens * 100) if original_tokens > 0 else 0.0
        self.total_compressions += 1
        self.total_tokens_saved += saved
        self.average_savings = self.total_tokens_saved / self.total_compressions
        self.history.append((timestamp, savings))


def compression_ratio(final_tokens: int, original_tokens: int) -> float:
    """1 - final/original, clamped to [0, 1]; 0 for an empty original."""
    if original_tokens <= 0:
        return 0.0
    return min(1.0, max(0.0, 1 - final_tokens / original_tokens))


class CompactionError(Exception):
    """Base error for the compaction engine."""


class SummarizationError(CompactionError):
    """A summarizer could not produce a summary."""


class CompactionCancelledError(CompactionError):
    """The caller cancelled a compaction between stages."""


# Constants
STATS_HISTORY_LIMIT = 100

SUMMARY_PREFIX = "[Previous conversation summary]\n\n"

SILENT_REPLY_TOKEN = "NO_REPLY"
