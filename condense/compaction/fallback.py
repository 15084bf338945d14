"""Progressive fallback for when summarization cannot meet the budget.

Every strategy is a pure text reduction. They are tried in a fixed order of
increasing aggressiveness, and each miss shrinks the target by 20% for the
next one. The last strategy always fits the target it is given.
"""

import re

from loguru import logger

from condense.compaction.estimator import TokenCounter
from condense.compaction.types import FallbackResult, compression_ratio

FALLBACK_ORDER = ("truncate", "remove_middle", "extract_key", "aggressive_truncate")
TARGET_SHRINK = 0.8

TRUNCATE_MARKER = "\n...\n"
AGGRESSIVE_MARKER = "\n\n[... truncated ...]"

KEY_SENTENCE_WEIGHTS = (
    (re.compile(r"\b(error|bug)", re.IGNORECASE), 5),
    (re.compile(r"\b(fix|solution)", re.IGNORECASE), 4),
    (re.compile(r"\b(important|critical)", re.IGNORECASE), 4),
    (re.compile(r"\b(decided|decision)", re.IGNORECASE), 3),
    (re.compile(r"\b(todo|need to)", re.IGNORECASE), 3),
    (re.compile(r"\b(created|added)", re.IGNORECASE), 2),
    (re.compile(r"\b(modified|changed)", re.IGNORECASE), 2),
    (re.compile(r"\b(file|function)", re.IGNORECASE), 1),
    (re.compile(r"```|`[^`\n]+`|\bdef \w+|\bclass \w+|=>"), 2),
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")


def _removed_marker(removed: int) -> str:
    return f"\n\n[... {removed} characters removed ...]\n\n"


def score_sentence(sentence: str) -> int:
    """Keyword score of a sentence for key extraction."""
    return sum(weight for pattern, weight in KEY_SENTENCE_WEIGHTS if pattern.search(sentence))


class ProgressiveFallback:
    """Cascade of deterministic, non-LLM size reduction strategies."""

    def __init__(self, counter: TokenCounter | None = None, model: str | None = None):
        self.counter = counter or TokenCounter()
        self.model = model

    def run(self, content: str, target_tokens: int) -> FallbackResult:
        """
        Reduce content until it fits target_tokens.

        Args:
            content: Text to reduce.
            target_tokens: Token budget.

        Returns:
            The first strategy result within its target, else the terminal
            strategy's result.
        """
        original = self._count(content)
        if original <= target_tokens:
            return FallbackResult(
                content=content,
                token_count=original,
                strategy="none",
                original_tokens=original,
                compression_ratio=0.0,
            )

        current_target = target_tokens
        result: FallbackResult | None = None
        for name in FALLBACK_ORDER:
            strategy = getattr(self, name)
            result = strategy(content, current_target)
            if result.token_count <= current_target:
                logger.debug(
                    f"Fallback strategy {result.strategy} fit {result.token_count}/{current_target} tokens"
                )
                return result
            logger.debug(
                f"Fallback strategy {name} missed ({result.token_count} > {current_target} tokens)"
            )
            current_target = int(current_target * TARGET_SHRINK)

        return result

    def truncate(self, content: str, target_tokens: int) -> FallbackResult:
        """Keep the head (60%) and tail (40%) of the character budget."""
        original = self._count(content)
        target_chars = self._target_chars(content, original, target_tokens)
        if len(content) <= target_chars:
            return self._result(content, "truncate", original)

        # The marker is paid for out of the budget
        available = target_chars - len(TRUNCATE_MARKER)
        if available <= 0:
            return self._result(content[:target_chars], "truncate", original)

        head = int(available * 0.6)
        tail = int(available * 0.4)
        text = content[:head] + TRUNCATE_MARKER + (content[-tail:] if tail > 0 else "")
        return self._result(text, "truncate", original)

    def remove_middle(self, content: str, target_tokens: int) -> FallbackResult:
        """Keep head (70%) and tail (30%) with an explicit removed-count marker."""
        original = self._count(content)
        target_chars = self._target_chars(content, original, target_tokens)
        if len(content) <= target_chars:
            return self._result(content, "remove_middle", original)

        # Upper bound on the marker length, removed count <= len(content)
        available = target_chars - len(_removed_marker(len(content)))
        if available <= 0:
            return self._result(content[:target_chars], "remove_middle", original)

        head = int(available * 0.7)
        tail = int(available * 0.3)
        removed = len(content) - head - tail
        text = content[:head] + _removed_marker(removed) + (content[-tail:] if tail > 0 else "")
        return self._result(text, "remove_middle", original)

    def extract_key(self, content: str, target_tokens: int) -> FallbackResult:
        """
        Keep the highest scoring sentences that fit the character budget.

        Sentences are packed by score, not by position. Falls through to
        aggressive truncation when no sentence scores at all.
        """
        original = self._count(content)
        target_chars = self._target_chars(content, original, target_tokens)

        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(content) if s.strip()]
        scored = [(score_sentence(s), s) for s in sentences]
        scored = [item for item in scored if item[0] > 0]
        if not scored:
            return self.aggressive_truncate(content, target_tokens)

        # sorted() is stable, so equal scores keep their original order
        ranked = sorted(scored, key=lambda item: -item[0])
        picked: list[str] = []
        used = 0
        for _, sentence in ranked:
            cost = len(sentence) + (1 if picked else 0)
            if used + cost <= target_chars:
                picked.append(sentence)
                used += cost

        if not picked:
            return self.aggressive_truncate(content, target_tokens)

        return self._result(" ".join(picked), "extract_key", original)

    def aggressive_truncate(self, content: str, target_tokens: int) -> FallbackResult:
        """
        Hard head cut at 90% of the character budget. Always fits.

        Below the marker's own token cost the marker is dropped; a budget of
        zero gives empty content.
        """
        original = self._count(content)
        target_chars = self._target_chars(content, original, target_tokens)

        use_marker = target_tokens > self._count(AGGRESSIVE_MARKER)
        if not use_marker:
            logger.warning(
                f"Budget of {target_tokens} tokens is below the truncation marker size; "
                "returning an unmarked cut"
            )

        cut = max(0, min(len(content), int(target_chars * 0.9)))
        while True:
            text = content[:cut] + (AGGRESSIVE_MARKER if use_marker else "")
            tokens = self._count(text)
            if tokens <= target_tokens or cut == 0:
                break
            cut = min(cut - 1, int(cut * 0.9))

        return FallbackResult(
            content=text,
            token_count=tokens,
            strategy="aggressive_truncate",
            original_tokens=original,
            compression_ratio=compression_ratio(tokens, original),
        )

    def _count(self, text: str) -> int:
        return self.counter.count_tokens(text, self.model)

    @staticmethod
    def _target_chars(content: str, original_tokens: int, target_tokens: int) -> int:
        chars_per_token = len(content) / max(1, original_tokens)
        return max(0, int(target_tokens * chars_per_token))

    def _result(self, text: str, strategy: str, original: int) -> FallbackResult:
        tokens = self._count(text)
        return FallbackResult(
            content=text,
            token_count=tokens,
            strategy=strategy,
            original_tokens=original,
            compression_ratio=compression_ratio(tokens, original),
        )
