"""Compaction service for managing context compression."""

import time
from typing import Any, Callable

from loguru import logger

from condense.compaction.chunker import AdaptiveChunker
from condense.compaction.estimator import TokenCounter
from condense.compaction.fallback import ProgressiveFallback
from condense.compaction.memory import MemoryFlusher
from condense.compaction.summarizer import (
    LocalSummarizer,
    Summarizer,
    format_messages_for_summary,
    merge_summaries,
    summarize_chunks_parallel,
)
from condense.compaction.types import (
    CompactionCancelledError,
    CompactionConfig,
    CompactionResult,
    CompressionStats,
    Message,
    SUMMARY_PREFIX,
    compression_ratio,
)

ProgressCallback = Callable[[str, dict[str, Any]], None]


class CompactionService:
    """
    Service for managing context compaction.

    Handles:
    - Best-effort memory flush before compaction
    - Adaptive chunking with parallel per-chunk summarization
    - Retries with finer chunking when the merged summary is over budget
    - Progressive fallback when summarization cannot meet the budget
    """

    def __init__(
        self,
        summarizer: Summarizer | None = None,
        counter: TokenCounter | None = None,
        config: CompactionConfig | None = None,
        memory_flusher: MemoryFlusher | None = None,
        model: str | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        """
        Initialize the compaction service.

        Args:
            summarizer: Summarizer for chunks, defaults to LocalSummarizer.
            counter: Token counter.
            config: Compaction configuration.
            memory_flusher: Optional sink called before compaction.
            model: Model used for token counting.
            on_progress: Optional callback receiving (stage, info).
        """
        self.summarizer = summarizer or LocalSummarizer()
        self.counter = counter or TokenCounter()
        self.config = config or CompactionConfig()
        self.memory_flusher = memory_flusher
        self.model = model
        self.on_progress = on_progress
        self.chunker = AdaptiveChunker(self.counter, model)
        self.fallback = ProgressiveFallback(self.counter, model)
        self.stats = CompressionStats()
        self._compaction_count = 0
        self._memory_flush_compaction_count: int | None = None

    def should_compact(self, total_tokens: int) -> bool:
        """
        Check if compaction should be triggered.

        Args:
            total_tokens: Current total tokens in context.

        Returns:
            True if compaction is needed.
        """
        threshold = self.config.context_window - self.config.reserve_tokens_floor
        return total_tokens > threshold

    def should_memory_flush(self, total_tokens: int) -> bool:
        """
        Check if memory flush should run before compaction.

        Args:
            total_tokens: Current total tokens in context.

        Returns:
            True if memory flush should run.
        """
        if not self.config.memory_flush.enabled:
            return False

        # Already flushed in this compaction cycle
        if self._memory_flush_compaction_count == self._compaction_count:
            return False

        threshold = (
            self.config.context_window
            - self.config.reserve_tokens_floor
            - self.config.memory_flush.soft_threshold_tokens
        )
        return total_tokens > threshold

    def mark_memory_flush_done(self) -> None:
        """Mark that memory flush has been done for this compaction cycle."""
        self._memory_flush_compaction_count = self._compaction_count

    async def compact(
        self,
        messages: list[Message],
        target_tokens: int,
        *,
        project_id: str | None = None,
        session_id: str | None = None,
        cancel_event: Any = None,
    ) -> CompactionResult:
        """
        Compact messages into a single summary message within target_tokens.

        Never raises for input shape; collaborator failures degrade to the
        fallback cascade. Only cancellation escapes.

        Args:
            messages: Messages to compact. Not modified.
            target_tokens: Token budget for the result.
            project_id: Passed through to the memory flusher.
            session_id: Passed through to the memory flusher.
            cancel_event: Object with ``is_set()``, checked between stages.

        Returns:
            CompactionResult.
        """
        start = time.monotonic()
        original_tokens = self.counter.count_messages_tokens(messages, self.model)

        if len(messages) < self.config.min_messages or original_tokens <= target_tokens:
            return CompactionResult(
                messages=messages,
                total_tokens=original_tokens,
                original_tokens=original_tokens,
                compression_ratio=0.0,
                messages_compacted=0,
                duration=time.monotonic() - start,
            )

        memories_flushed = 0
        if self._flush_due():
            self._emit("flush", {"messages": len(messages)})
            memories_flushed = await self._flush(messages, project_id, session_id)
            self.mark_memory_flush_done()

        self._check_cancelled(cancel_event)

        wrapper_tokens = self.counter.count_message_tokens(
            {"role": "system", "content": SUMMARY_PREFIX}, self.model
        )

        result_text: str | None = None
        strategy = "summarization"
        degraded_chunks = 0
        attempts = 0
        last_chunk_count = 0

        for attempt in range(self.config.max_retries + 1):
            chunk_count = self.config.parallel_chunks * (attempt + 1)
            try:
                chunks = self.chunker.balance(
                    self.chunker.chunk(messages, chunk_count, self.model), self.model
                )
                if len(chunks) == last_chunk_count:
                    # One message per chunk already, finer chunking cannot help
                    break
                last_chunk_count = len(chunks)
                attempts += 1
                self._emit("chunk", {"attempt": attempt, "chunks": len(chunks)})

                self._check_cancelled(cancel_event)
                summaries = await summarize_chunks_parallel(
                    chunks,
                    self.summarizer,
                    self.counter,
                    self.model,
                    self.config.truncate_head_chars,
                    self.config.truncate_tail_chars,
                )
                merged, merged_tokens = merge_summaries(summaries, self.counter, self.model)
            except CompactionCancelledError:
                raise
            except Exception as e:
                logger.error(f"Compaction summarization attempt {attempt} failed: {e}")
                break

            degraded_chunks = sum(1 for s in summaries if s.degraded)
            self._emit("summarize", {
                "attempt": attempt,
                "tokens": merged_tokens,
                "degraded": degraded_chunks,
            })

            summary_tokens = self.counter.count_message_tokens(
                {"role": "system", "content": f"{SUMMARY_PREFIX}{merged}"}, self.model
            )
            if merged and summary_tokens <= target_tokens:
                result_text = merged
                break

            logger.info(
                f"Merged summary of {merged_tokens} tokens exceeds target {target_tokens} "
                f"(attempt {attempt + 1}/{self.config.max_retries + 1})"
            )
            self._check_cancelled(cancel_event)

        used_fallback = result_text is None
        if used_fallback:
            self._check_cancelled(cancel_event)
            transcript = format_messages_for_summary(messages)
            fallback = self.fallback.run(transcript, max(0, target_tokens - wrapper_tokens))
            self._emit("fallback", {"strategy": fallback.strategy, "tokens": fallback.token_count})
            result_text = fallback.content
            strategy = fallback.strategy
            logger.warning(
                f"Compaction fell back to {fallback.strategy} "
                f"({fallback.token_count} tokens, target {target_tokens})"
            )

        summary_message = {"role": "system", "content": f"{SUMMARY_PREFIX}{result_text}"}
        compacted = [summary_message]
        total_tokens = self.counter.count_messages_tokens(compacted, self.model)

        self._compaction_count += 1
        self.stats.record(original_tokens, total_tokens, time.time())

        result = CompactionResult(
            messages=compacted,
            total_tokens=total_tokens,
            original_tokens=original_tokens,
            compression_ratio=compression_ratio(total_tokens, original_tokens),
            messages_compacted=len(messages),
            memories_flushed=memories_flushed,
            used_fallback=used_fallback,
            duration=time.monotonic() - start,
            strategy=strategy,
            summary=result_text,
            degraded_chunks=degraded_chunks,
            attempts=attempts,
        )
        self._emit("done", {
            "original_tokens": original_tokens,
            "total_tokens": total_tokens,
            "used_fallback": used_fallback,
        })
        logger.info(
            f"Compacted {len(messages)} messages: {original_tokens} -> {total_tokens} tokens "
            f"via {strategy}"
        )
        return result

    async def compact_if_needed(
        self,
        messages: list[Message],
        **kwargs: Any,
    ) -> tuple[list[Message], CompactionResult | None]:
        """
        Compact messages if threshold exceeded.

        Args:
            messages: Current messages.
            **kwargs: Passed to ``compact``.

        Returns:
            Tuple of (possibly compacted messages, CompactionResult or None).
        """
        total_tokens = self.counter.count_messages_tokens(messages, self.model)

        if not self.should_compact(total_tokens):
            return messages, None

        logger.info(f"Compacting context: {total_tokens} tokens exceeds threshold")

        target = int(self.config.context_window * self.config.max_history_share)
        result = await self.compact(messages, target, **kwargs)
        return result.messages, result

    @property
    def compaction_count(self) -> int:
        """Get the number of compactions performed."""
        return self._compaction_count

    def _flush_due(self) -> bool:
        """Flush before compacting unless disabled or already done this cycle."""
        return (
            self.config.flush_to_memory
            and self.config.memory_flush.enabled
            and self.memory_flusher is not None
            and self._memory_flush_compaction_count != self._compaction_count
        )

    async def _flush(
        self,
        messages: list[Message],
        project_id: str | None,
        session_id: str | None,
    ) -> int:
        try:
            flushed = await self.memory_flusher(
                messages, project_id=project_id, session_id=session_id
            )
            return int(flushed or 0)
        except Exception as e:
            logger.warning(f"Memory flush failed, continuing with compaction: {e}")
            return 0

    def _emit(self, stage: str, info: dict[str, Any]) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(stage, info)
        except Exception as e:
            logger.warning(f"Compaction progress callback failed at {stage}: {e}")

    @staticmethod
    def _check_cancelled(cancel_event: Any) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CompactionCancelledError("compaction cancelled")
