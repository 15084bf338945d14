"""Message classification, importance scoring and key information extraction."""

import re

from condense.compaction.types import (
    ClassifiedMessage,
    CodeSnippet,
    ContentType,
    DecisionRecord,
    ErrorRecord,
    FileOperation,
    KeyInformation,
    Message,
    ToolCallRecord,
    content_text,
)

# Evaluated top to bottom, first match wins. Text often matches several
# families (a code block mentioning an error), so the order is part of the
# behaviour.
CONTENT_RULES: tuple[tuple[ContentType, tuple[re.Pattern, ...]], ...] = (
    (ContentType.CODE, (
        re.compile(r"```[\s\S]*?```"),
        re.compile(r"^\s{4,}\S", re.MULTILINE),
        re.compile(r"^(function|const|let|var|class|import|export|def|async|public|private)\s", re.MULTILINE),
        re.compile(r"[{};]\s*$", re.MULTILINE),
    )),
    (ContentType.ERROR, (
        re.compile(r"error", re.IGNORECASE),
        re.compile(r"exception", re.IGNORECASE),
        re.compile(r"failed", re.IGNORECASE),
        re.compile(r"traceback", re.IGNORECASE),
        re.compile(r"stack trace", re.IGNORECASE),
        re.compile(r"at\s+[\w.]+\s*\(", re.IGNORECASE),
        re.compile(r"^\s*at\s+", re.MULTILINE),
    )),
    (ContentType.DECISION, (
        re.compile(r"\b(yes|no|confirm|approve|deny|accept|reject)\b", re.IGNORECASE),
        re.compile(r"\b(decided|decision|chose|selected)\b", re.IGNORECASE),
        re.compile(r"\b(will|won't|should|shouldn't)\s+(do|use|implement)", re.IGNORECASE),
    )),
    (ContentType.FILE_CONTENT, (
        re.compile(r"^(file|path|filename):\s*", re.IGNORECASE | re.MULTILINE),
        re.compile(r"^---\s*$", re.MULTILINE),
        re.compile(r"^\+\+\+\s", re.MULTILINE),
        re.compile(r"^@@\s", re.MULTILINE),
    )),
    (ContentType.COMMAND, (
        re.compile(r"^\$\s+", re.MULTILINE),
        re.compile(r"^>\s+", re.MULTILINE),
        re.compile(r"\b(npm|yarn|pip|git|docker|kubectl|curl|wget)\s"),
        re.compile(r"^(cd|ls|mkdir|rm|cp|mv|cat|echo)\s", re.MULTILINE),
    )),
)

CONTENT_TYPE_BONUS = {
    ContentType.SYSTEM: 0.3,
    ContentType.ERROR: 0.25,
    ContentType.DECISION: 0.2,
    ContentType.CODE: 0.15,
    ContentType.COMMAND: 0.1,
    ContentType.FILE_CONTENT: 0.1,
    ContentType.TOOL_RESULT: 0.05,
    ContentType.EXPLANATION: 0.05,
    ContentType.CONVERSATION: 0.0,
}

ROLE_BONUS = {"system": 0.2, "user": 0.1}

BASE_IMPORTANCE = 0.5
MAX_RECENCY_BONUS = 0.3
LONG_MESSAGE_CHARS = 5000
LONG_MESSAGE_PENALTY = 0.1

FILE_OPERATION_PATTERN = re.compile(
    r"\b(creat(?:e|ed|ing)|wr(?:ote|ite|itten|iting)|edit(?:ed|ing)?|"
    r"modif(?:y|ied|ying)|updat(?:e|ed|ing)|delet(?:e|ed|ing)|remov(?:e|ed|ing))"
    r"\s+(?:the\s+)?(?:file\s+)?([`'\"]?)((?:[/\\]?[\w.-]+[/\\])*[\w.-]+\.\w+)\2",
    re.IGNORECASE,
)
ERROR_MESSAGE_PATTERN = re.compile(r"(?:error|exception|failed):\s*(.+?)(?:\n|$)", re.IGNORECASE)
DECISION_PATTERN = re.compile(
    r"\b(?:decided|chose|will|confirmed?)(?:\s+to)?\s+(.+?)(?:\.|\n|$)", re.IGNORECASE
)
CODE_BLOCK_PATTERN = re.compile(r"```(\w*)\n([\s\S]*?)```")

MAX_SNIPPET_CHARS = 500


def classify_text(text: str) -> ContentType:
    """Detect a content type from text alone."""
    for content_type, patterns in CONTENT_RULES:
        if any(pattern.search(text) for pattern in patterns):
            return content_type
    return ContentType.CONVERSATION


def detect_content_type(message: Message) -> ContentType:
    """Detect the content type of a message. System and tool roles short-circuit."""
    role = message.get("role")
    if role == "system":
        return ContentType.SYSTEM
    if role == "tool":
        return ContentType.TOOL_RESULT
    return classify_text(content_text(message.get("content")))


def calculate_importance(
    message: Message,
    index: int,
    total_messages: int,
    content_type: ContentType,
) -> float:
    """
    Score a message in [0, 1].

    Base 0.5, plus up to 0.3 for recency, a content type bonus and a role
    bonus, minus a penalty for very long content.
    """
    score = BASE_IMPORTANCE
    score += index / max(1, total_messages - 1) * MAX_RECENCY_BONUS
    score += CONTENT_TYPE_BONUS.get(content_type, 0.0)
    score += ROLE_BONUS.get(message.get("role"), 0.0)

    if len(content_text(message.get("content"))) > LONG_MESSAGE_CHARS:
        score -= LONG_MESSAGE_PENALTY

    return min(1.0, max(0.0, score))


def classify_messages(
    messages: list[Message],
    preservation_threshold: float = 0.7,
) -> list[ClassifiedMessage]:
    """Classify every message; the result is index-aligned with the input."""
    classified = []
    total = len(messages)
    for i, msg in enumerate(messages):
        content_type = detect_content_type(msg)
        importance = calculate_importance(msg, i, total, content_type)
        preserve = (
            importance >= preservation_threshold
            or content_type in (ContentType.ERROR, ContentType.DECISION)
            or msg.get("role") == "system"
        )
        classified.append(ClassifiedMessage(
            message=msg,
            content_type=content_type,
            importance=importance,
            preserve=preserve,
        ))
    return classified


def extract_key_information(messages: list[Message]) -> KeyInformation:
    """Pull file operations, errors, decisions, tool calls and code blocks out of the history."""
    info = KeyInformation()

    for index, msg in enumerate(messages):
        content = content_text(msg.get("content"))

        for match in FILE_OPERATION_PATTERN.finditer(content):
            verb = match.group(1).lower()
            if verb.startswith(("delet", "remov")):
                operation = "delete"
            elif verb.startswith(("creat", "wr")):
                operation = "create"
            else:
                operation = "edit"
            info.modified_files.append(FileOperation(path=match.group(3), operation=operation, index=index))

        for match in ERROR_MESSAGE_PATTERN.finditer(content):
            message = match.group(1).strip()
            if message:
                info.errors.append(ErrorRecord(message=message, index=index))

        for match in DECISION_PATTERN.finditer(content):
            message = match.group(1).strip()
            if message:
                info.decisions.append(DecisionRecord(message=message, index=index))

        if msg.get("role") == "assistant":
            for tc in msg.get("tool_calls") or []:
                if isinstance(tc, dict) and tc.get("type", "function") == "function":
                    func = tc.get("function", {})
                    args = func.get("arguments", "")
                    info.tool_calls.append(ToolCallRecord(
                        name=func.get("name", ""),
                        arguments=args if isinstance(args, str) else content_text(args),
                        index=index,
                    ))

        for match in CODE_BLOCK_PATTERN.finditer(content):
            info.code_snippets.append(CodeSnippet(
                content=match.group(2)[:MAX_SNIPPET_CHARS],
                language=match.group(1) or None,
                index=index,
            ))

    return info
