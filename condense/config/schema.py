"""Configuration schema using Pydantic."""

from pathlib import Path
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from condense.compaction.types import (
    CompactionConfig,
    EnhancedCompressionConfig,
    MemoryFlushConfig,
    SlidingWindowConfig,
    SummarizationConfig,
)


class MemoryFlushSettings(BaseModel):
    """Pre-compaction memory flush configuration."""
    enabled: bool = True
    soft_threshold_tokens: int = 4000
    workspace: str = "~/.condense/workspace"  # memory/YYYY-MM-DD.md lives here


class CompactionSettings(BaseModel):
    """Summary-based compaction configuration."""
    min_messages: int = Field(default=5, ge=1)
    parallel_chunks: int = Field(default=4, ge=1)
    max_retries: int = Field(default=2, ge=0)
    flush_to_memory: bool = True
    truncate_head_chars: int = Field(default=1500, ge=0)
    truncate_tail_chars: int = Field(default=1500, ge=0)
    summarizer: str = "local"  # "local" or "llm"
    context_window: int = 128000
    reserve_tokens_floor: int = 20000
    max_history_share: float = Field(default=0.5, ge=0.1, le=0.9)
    memory_flush: MemoryFlushSettings = Field(default_factory=MemoryFlushSettings)

    def to_compaction_config(self) -> CompactionConfig:
        """Build the runtime config used by CompactionService."""
        return CompactionConfig(
            min_messages=self.min_messages,
            parallel_chunks=self.parallel_chunks,
            max_retries=self.max_retries,
            flush_to_memory=self.flush_to_memory,
            truncate_head_chars=self.truncate_head_chars,
            truncate_tail_chars=self.truncate_tail_chars,
            context_window=self.context_window,
            reserve_tokens_floor=self.reserve_tokens_floor,
            max_history_share=self.max_history_share,
            memory_flush=MemoryFlushConfig(
                enabled=self.memory_flush.enabled,
                soft_threshold_tokens=self.memory_flush.soft_threshold_tokens,
            ),
        )


class SlidingWindowSettings(BaseModel):
    """Sliding window configuration."""
    window_size: int = Field(default=15, ge=0)
    overlap_size: int = Field(default=3, ge=0)
    summarize_old_messages: bool = True


class SummarizationSettings(BaseModel):
    """Intelligent summarization configuration."""
    max_summary_tokens: int = Field(default=500, ge=1)
    preserve_key_entities: bool = True
    preserve_errors: bool = True
    preserve_decisions: bool = True
    min_messages_for_summarization: int = 5


class EnhancedCompressionSettings(BaseModel):
    """Enhanced compressor configuration."""
    sliding_window: SlidingWindowSettings = Field(default_factory=SlidingWindowSettings)
    summarization: SummarizationSettings = Field(default_factory=SummarizationSettings)
    max_tool_output_length: int = Field(default=800, ge=1)
    enable_archiving: bool = True
    max_archives: int = Field(default=5, ge=0)
    preservation_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    def to_enhanced_config(self) -> EnhancedCompressionConfig:
        """Build the runtime config used by EnhancedCompressor."""
        return EnhancedCompressionConfig(
            sliding_window=SlidingWindowConfig(**self.sliding_window.model_dump()),
            summarization=SummarizationConfig(**self.summarization.model_dump()),
            max_tool_output_length=self.max_tool_output_length,
            enable_archiving=self.enable_archiving,
            max_archives=self.max_archives,
            preservation_threshold=self.preservation_threshold,
        )


class ProviderConfig(BaseModel):
    """LLM provider configuration for LLM-backed summaries."""
    api_key: str = ""
    api_base: str | None = None
    model: str = "anthropic/claude-haiku-4-5"


class Config(BaseSettings):
    """Root configuration for condense."""
    model_config = SettingsConfigDict(env_prefix="CONDENSE_", env_nested_delimiter="__")

    model: str = "gpt-4"  # Used for token counting
    compaction: CompactionSettings = Field(default_factory=CompactionSettings)
    enhanced: EnhancedCompressionSettings = Field(default_factory=EnhancedCompressionSettings)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded memory workspace path."""
        return Path(self.compaction.memory_flush.workspace).expanduser()
