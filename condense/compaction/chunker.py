"""Adaptive message chunking."""

from loguru import logger

from condense.compaction.estimator import TokenCounter
from condense.compaction.types import Message, MessageChunk


def normalize_parts(parts: int, message_count: int) -> int:
    """Normalize parts count to valid range."""
    if parts <= 1:
        return 1
    return min(parts, max(1, message_count))


class AdaptiveChunker:
    """
    Splits a message history into contiguous, token-balanced chunks.

    Chunks target equal token counts rather than equal message counts, so a
    single large tool output can end up alone in its chunk.
    """

    def __init__(self, counter: TokenCounter | None = None, model: str | None = None):
        self.counter = counter or TokenCounter()
        self.model = model

    def chunk(
        self,
        messages: list[Message],
        target_chunk_count: int,
        model: str | None = None,
    ) -> list[MessageChunk]:
        """
        Split messages into contiguous chunks by token share.

        Args:
            messages: Ordered messages to split.
            target_chunk_count: Desired number of chunks.
            model: Model override for token counting.

        Returns:
            Chunks in original order. Empty input gives an empty list.
        """
        if not messages:
            return []

        model = model or self.model
        token_counts = [self.counter.count_message_tokens(m, model) for m in messages]

        parts = normalize_parts(target_chunk_count, len(messages))
        if parts <= 1:
            return [MessageChunk(index=0, messages=list(messages), token_count=sum(token_counts))]

        target_tokens = sum(token_counts) / parts
        groups: list[list[int]] = []
        current: list[int] = []
        current_tokens = 0

        for i, message_tokens in enumerate(token_counts):
            remaining = len(messages) - i
            must_split = len(groups) + 1 + remaining <= parts  # one message per remaining chunk
            if (
                len(groups) < parts - 1
                and current
                and (current_tokens + message_tokens > target_tokens or must_split)
            ):
                groups.append(current)
                current = []
                current_tokens = 0

            current.append(i)
            current_tokens += message_tokens

        if current:
            groups.append(current)

        chunks = [
            MessageChunk(
                index=index,
                messages=[messages[i] for i in group],
                token_count=sum(token_counts[i] for i in group),
            )
            for index, group in enumerate(groups)
        ]
        logger.debug(
            f"Chunked {len(messages)} messages into {len(chunks)} chunk(s) "
            f"(target {parts}, ~{int(target_tokens)} tokens each)"
        )
        return chunks

    def balance(self, chunks: list[MessageChunk], model: str | None = None) -> list[MessageChunk]:
        """
        Reduce the token spread between adjacent chunks.

        Moves single boundary messages between neighbours while that lowers the
        larger of the two totals. Order is never changed and no chunk is emptied.

        Args:
            chunks: Chunks from ``chunk``.
            model: Model override for token counting, as passed to ``chunk``.

        Returns:
            New, re-indexed chunks.
        """
        if len(chunks) <= 1:
            return [
                MessageChunk(index=i, messages=list(c.messages), token_count=c.token_count)
                for i, c in enumerate(chunks)
            ]

        model = model or self.model
        groups = [list(c.messages) for c in chunks]
        sizes = [[self.counter.count_message_tokens(m, model) for m in g] for g in groups]
        totals = [sum(s) for s in sizes]

        max_passes = sum(len(g) for g in groups)
        for _ in range(max_passes):
            moved = False
            for i in range(len(groups) - 1):
                left, right = totals[i], totals[i + 1]
                if left > right and len(groups[i]) > 1:
                    size = sizes[i][-1]
                    if max(left - size, right + size) < left:
                        groups[i + 1].insert(0, groups[i].pop())
                        sizes[i + 1].insert(0, sizes[i].pop())
                        totals[i] -= size
                        totals[i + 1] += size
                        moved = True
                elif right > left and len(groups[i + 1]) > 1:
                    size = sizes[i + 1][0]
                    if max(left + size, right - size) < right:
                        groups[i].append(groups[i + 1].pop(0))
                        sizes[i].append(sizes[i + 1].pop(0))
                        totals[i] += size
                        totals[i + 1] -= size
                        moved = True
            if not moved:
                break

        return [
            MessageChunk(index=i, messages=group, token_count=totals[i])
            for i, group in enumerate(groups)
        ]


def token_spread(chunks: list[MessageChunk]) -> int:
    """Max minus min chunk token count."""
    if not chunks:
        return 0
    counts = [c.token_count for c in chunks]
    return max(counts) - min(counts)
