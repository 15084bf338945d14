"""Pre-compaction memory flush."""

from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Protocol

from loguru import logger

from condense.compaction.summarizer import format_messages_for_summary
from condense.compaction.types import Message, MemoryFlushConfig, SILENT_REPLY_TOKEN
from condense.providers.base import LLMProvider


class MemoryFlusher(Protocol):
    """
    Write sink for durable facts, called before destructive compaction.

    Returns the number of memories stored. Failures are logged and ignored
    by the caller.
    """

    def __call__(
        self,
        messages: list[Message],
        *,
        project_id: str | None = None,
        session_id: str | None = None,
    ) -> Awaitable[int]: ...


def is_silent_reply(response: str) -> bool:
    """Check if a response starts with the NO_REPLY token."""
    return response.strip().startswith(SILENT_REPLY_TOKEN)


def strip_silent_token(response: str) -> str:
    """Strip the NO_REPLY token from a response."""
    stripped = response.strip()
    if stripped.startswith(SILENT_REPLY_TOKEN):
        return stripped[len(SILENT_REPLY_TOKEN):].strip()
    return response


class LLMMemoryFlusher:
    """
    Ask the model for durable facts and append them to the daily memory file.

    Memories go to ``<workspace>/memory/YYYY-MM-DD.md``, one bullet per fact.
    """

    def __init__(
        self,
        provider: LLMProvider,
        workspace: Path,
        model: str | None = None,
        config: MemoryFlushConfig | None = None,
        max_tokens: int = 1024,
    ):
        self.provider = provider
        self.workspace = Path(workspace).expanduser()
        self.model = model
        self.config = config or MemoryFlushConfig()
        self.max_tokens = max_tokens

    @property
    def memory_dir(self) -> Path:
        return self.workspace / "memory"

    def memory_file(self, day: datetime | None = None) -> Path:
        day = day or datetime.now()
        return self.memory_dir / f"{day:%Y-%m-%d}.md"

    async def __call__(
        self,
        messages: list[Message],
        *,
        project_id: str | None = None,
        session_id: str | None = None,
    ) -> int:
        if not self.config.enabled or not messages:
            return 0

        conversation = format_messages_for_summary(messages)
        response = await self.provider.chat(
            messages=[
                {"role": "system", "content": self.config.system_prompt},
                {"role": "user", "content": f"{conversation}\n\n{self.config.prompt}"},
            ],
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0.2,
        )

        if response.finish_reason == "error":
            raise RuntimeError(response.content or "memory flush LLM call failed")

        content = response.content or ""
        if not content.strip() or is_silent_reply(content):
            logger.debug("Memory flush: nothing to store")
            return 0

        memories = extract_bullets(strip_silent_token(content))
        if not memories:
            return 0

        self._append(memories, project_id=project_id, session_id=session_id)
        logger.info(f"Memory flush stored {len(memories)} memories in {self.memory_file()}")
        return len(memories)

    def _append(self, memories: list[str], **context: Any) -> None:
        self.memory_dir.mkdir(parents=True, exist_ok=True)
        header_bits = [f"{k}={v}" for k, v in context.items() if v]
        header = f"## {datetime.now():%H:%M} compaction flush"
        if header_bits:
            header += f" ({', '.join(header_bits)})"

        with open(self.memory_file(), "a", encoding="utf-8") as f:
            f.write(header + "\n")
            for memory in memories:
                f.write(f"- {memory}\n")
            f.write("\n")


def extract_bullets(text: str) -> list[str]:
    """Extract '- ' or '* ' bullet lines from a reply."""
    bullets = []
    for line in text.splitlines():
        line = line.strip()
        if line[:2] in ("- ", "* "):
            item = line[2:].strip()
            if item:
                bullets.append(item)
    return bullets
