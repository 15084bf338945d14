"""Single tool output compression.

Applied to one observation at a time, before it enters the history, so the
compaction pipelines have less to do later.
"""

import re

from condense.compaction.estimator import TokenCounter

SEARCH_TOOLS = ("search", "find_symbols", "find_references", "list_files")
SHELL_TOOLS = ("bash", "git_status", "git_log", "git_diff")

_ERROR_LINE = re.compile(r"error|warning|failed", re.IGNORECASE)
_STAT_LINE = re.compile(r"^\s*\d+\s+(file|insertion|deletion|change)", re.IGNORECASE)

MAX_PLAIN_LINES = 30


def compress_tool_result(
    content: str,
    tool_name: str,
    mask_threshold: int = 2000,
    counter: TokenCounter | None = None,
) -> str:
    """
    Compress a tool output that exceeds mask_threshold tokens.

    Args:
        content: Raw tool output.
        tool_name: Name of the tool that produced it.
        mask_threshold: Outputs at or below this many tokens pass through.
        counter: Token counter.

    Returns:
        The original or a compressed rendition of the output.
    """
    counter = counter or TokenCounter()
    if counter.count_tokens(content) <= mask_threshold:
        return content

    lines = [line for line in content.split("\n") if line.strip()]

    if tool_name in SEARCH_TOOLS:
        more = f"\n... and {len(lines) - 10} more" if len(lines) > 10 else ""
        return f"[{tool_name}: {len(lines)} results]\n" + "\n".join(lines[:10]) + more

    if tool_name == "read_file":
        if len(lines) > 30:
            return (
                f"[File: {len(lines)} lines]\n"
                + "\n".join(lines[:15])
                + "\n[... middle content omitted ...]\n"
                + "\n".join(lines[-10:])
            )
        return content

    if tool_name in SHELL_TOOLS:
        error_lines = [line for line in lines if _ERROR_LINE.search(line)]
        stat_lines = [line for line in lines if _STAT_LINE.search(line)]

        summary = f"[{tool_name}: {len(lines)} lines]"
        if error_lines:
            summary += "\nErrors:\n" + "\n".join(error_lines[:5])
        if stat_lines:
            summary += "\nSummary:\n" + "\n".join(stat_lines)
        if len(lines) > 20:
            summary += "\nPreview:\n" + "\n".join(lines[:10]) + "\n..."
        else:
            summary += "\n" + content
        return summary

    return truncate_lines(content)


def truncate_lines(content: str, max_lines: int = MAX_PLAIN_LINES) -> str:
    """Keep the first and last halves of max_lines with an omitted-lines marker."""
    lines = content.split("\n")
    if len(lines) <= max_lines:
        return content

    half = max_lines // 2
    return (
        f"[Truncated: {len(lines)} lines]\n"
        + "\n".join(lines[:half])
        + f"\n[... {len(lines) - max_lines} lines omitted ...]\n"
        + "\n".join(lines[-half:])
    )
