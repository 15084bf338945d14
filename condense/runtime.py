"""Build compaction engines from configuration."""

from condense.compaction.enhanced import EnhancedCompressor
from condense.compaction.estimator import TokenCounter
from condense.compaction.memory import LLMMemoryFlusher
from condense.compaction.service import CompactionService, ProgressCallback
from condense.compaction.summarizer import LLMSummarizer, LocalSummarizer, Summarizer
from condense.config.schema import Config
from condense.providers.base import LLMProvider
from condense.providers.litellm_provider import LiteLLMProvider


def create_provider(config: Config) -> LLMProvider | None:
    """Create the LLM provider if one is configured."""
    if not config.provider.api_key and not config.provider.api_base:
        return None
    return LiteLLMProvider(
        api_key=config.provider.api_key or None,
        api_base=config.provider.api_base,
        default_model=config.provider.model,
    )


def create_compaction_service(
    config: Config,
    provider: LLMProvider | None = None,
    on_progress: ProgressCallback | None = None,
) -> CompactionService:
    """
    Create a CompactionService from configuration.

    The LLM summarizer and memory flusher are only used when a provider is
    available; otherwise compaction stays local.
    """
    provider = provider or create_provider(config)
    settings = config.compaction

    summarizer: Summarizer = LocalSummarizer()
    if settings.summarizer == "llm" and provider is not None:
        summarizer = LLMSummarizer(provider, model=config.provider.model)

    memory_flusher = None
    if settings.flush_to_memory and settings.memory_flush.enabled and provider is not None:
        memory_flusher = LLMMemoryFlusher(
            provider,
            workspace=config.workspace_path,
            model=config.provider.model,
        )

    return CompactionService(
        summarizer=summarizer,
        counter=TokenCounter(config.model),
        config=settings.to_compaction_config(),
        memory_flusher=memory_flusher,
        model=config.model,
        on_progress=on_progress,
    )


def create_enhanced_compressor(config: Config) -> EnhancedCompressor:
    """Create an EnhancedCompressor from configuration."""
    return EnhancedCompressor(
        counter=TokenCounter(config.model),
        config=config.enhanced.to_enhanced_config(),
        model=config.model,
    )
