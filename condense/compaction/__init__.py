"""Compaction system for context management."""

from condense.compaction.estimator import (
    TokenCounter,
    estimate_tokens,
    estimate_message_tokens,
    estimate_messages_tokens,
)
from condense.compaction.chunker import AdaptiveChunker
from condense.compaction.summarizer import (
    Summarizer,
    LocalSummarizer,
    LLMSummarizer,
    format_messages_for_summary,
    summarize_chunks_parallel,
    merge_summaries,
)
from condense.compaction.fallback import ProgressiveFallback
from condense.compaction.memory import LLMMemoryFlusher, MemoryFlusher
from condense.compaction.classifier import (
    classify_messages,
    detect_content_type,
    extract_key_information,
)
from condense.compaction.observation import compress_tool_result
from condense.compaction.service import CompactionService
from condense.compaction.enhanced import EnhancedCompressor
from condense.compaction.types import (
    CompactionCancelledError,
    CompactionConfig,
    CompactionError,
    CompactionResult,
    ContentType,
    EnhancedCompressionConfig,
    EnhancedCompressionResult,
    FallbackResult,
    MemoryFlushConfig,
    SummarizationError,
)

__all__ = [
    # Estimator
    "TokenCounter",
    "estimate_tokens",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    # Chunking and summarization
    "AdaptiveChunker",
    "Summarizer",
    "LocalSummarizer",
    "LLMSummarizer",
    "format_messages_for_summary",
    "summarize_chunks_parallel",
    "merge_summaries",
    # Fallback
    "ProgressiveFallback",
    # Memory flush
    "MemoryFlusher",
    "LLMMemoryFlusher",
    # Classification
    "classify_messages",
    "detect_content_type",
    "extract_key_information",
    "compress_tool_result",
    # Engines
    "CompactionService",
    "EnhancedCompressor",
    # Types
    "CompactionConfig",
    "CompactionResult",
    "ContentType",
    "EnhancedCompressionConfig",
    "EnhancedCompressionResult",
    "FallbackResult",
    "MemoryFlushConfig",
    # Errors
    "CompactionError",
    "CompactionCancelledError",
    "SummarizationError",
]
