"""Tests for the enhanced compressor."""

import asyncio
import copy

import pytest

from condense.compaction.classifier import extract_key_information
from condense.compaction.enhanced import (
    TRANSITION_MARKER,
    EnhancedCompressor,
    create_context_summary,
    is_generated,
    summarize_conversation_flow,
    truncate_output,
)
from condense.compaction.types import (
    CompactionCancelledError,
    EnhancedCompressionConfig,
    SlidingWindowConfig,
)


def make_compressor(counter, **config) -> EnhancedCompressor:
    return EnhancedCompressor(counter=counter, config=EnhancedCompressionConfig(**config))


def tool_session(tool_output: str) -> list[dict]:
    return [
        {"role": "user", "content": "run the test suite"},
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"type": "function", "function": {"name": "exec", "arguments": '{"cmd": "pytest"}'}}],
        },
        {"role": "tool", "content": tool_output},
        {"role": "user", "content": "ok"},
    ]


# ── compress ────────────────────────────────────────────────────────


class TestCompress:
    def test_within_limit_is_untouched(self, counter, conversation):
        compressor = make_compressor(counter)
        result = compressor.compress(conversation, 1_000_000)

        assert result.messages is conversation
        assert result.compressed is False
        assert result.strategy == "none"
        assert result.strategies_applied == []
        assert result.archive is None
        assert compressor.list_archives() == []
        assert compressor.stats.total_compressions == 0

    def test_sliding_window_only(self, counter, conversation_factory):
        messages = conversation_factory(30)
        result = make_compressor(counter).compress(messages, 1500)

        assert result.strategies_applied == ["sliding_window_overlap"]
        out = result.messages
        assert out[0]["role"] == "system"
        assert out[0]["content"].startswith("[Context Summary - 11 earlier messages]")
        assert out[1] is messages[10]
        assert out[2] == {"role": "system", "content": TRANSITION_MARKER}
        assert out[3:6] == messages[12:15]
        assert out[6:] == messages[15:]
        assert result.final_tokens <= 1500
        assert result.messages_removed == 30 - len(out)

    def test_tool_truncation(self, counter):
        messages = tool_session("Error: " + "e" * 9993)
        result = make_compressor(counter).compress(messages, 600)

        assert result.strategies_applied == ["sliding_window_overlap", "smart_tool_truncation"]
        assert result.tool_results_truncated == 1
        content = result.messages[2]["content"]
        assert "[truncated 8920 chars]" in content
        assert content.startswith("Error: ")
        assert result.final_tokens <= 600

    def test_full_cascade_meets_limit(self, counter, conversation):
        result = make_compressor(counter).compress(conversation, 100)

        assert result.strategies_applied == [
            "sliding_window_overlap",
            "smart_tool_truncation",
            "intelligent_summarization",
            "importance_removal",
        ]
        assert result.strategy == "importance_removal"
        assert result.final_tokens <= 100
        assert result.compressed is True
        assert result.tokens_reduced == result.original_tokens - result.final_tokens

    def test_system_messages_kept_first(self, counter, conversation):
        system = {"role": "system", "content": "You are a coding agent."}
        messages = [system, *conversation]
        result = make_compressor(counter).compress(messages, 300)

        assert result.messages[0] is system
        assert result.final_tokens <= 300

    def test_previous_summary_is_not_pinned(self, counter, conversation_factory):
        system = {"role": "system", "content": "You are a coding agent."}
        old_summary = {
            "role": "system",
            "content": "[Context Summary - 40 earlier messages]\nMessages: 40 (user: 20, assistant: 20)",
        }
        messages = [system, old_summary, *conversation_factory(30)]

        result = make_compressor(counter).compress(messages, 1500)

        assert result.messages[0] is system
        assert old_summary not in result.messages
        assert sum(1 for m in result.messages if is_generated(m)) <= 2
        assert result.final_tokens <= 1500

    def test_repeated_rounds_keep_recent_messages(self, counter, conversation_factory):
        compressor = make_compressor(counter)
        history = conversation_factory(30)

        for round_number in range(15):
            result = compressor.compress(history, 1500)
            out = result.messages

            assert result.final_tokens <= 1500
            assert sum(1 for m in out if is_generated(m)) <= 2
            assert out[-1] is history[-1]
            assert sum(1 for m in out if m["role"] != "system") >= 10

            new = [
                {**m, "content": f"Round {round_number}. {m['content']}"}
                for m in conversation_factory(20)
            ]
            history = out + new

    def test_input_not_modified(self, counter, conversation):
        messages = conversation + tool_session("x" * 5000)
        snapshot = copy.deepcopy(messages)
        make_compressor(counter).compress(messages, 200)
        assert messages == snapshot

    def test_key_information_reported(self, counter, conversation):
        messages = conversation + [{"role": "tool", "content": "Error: connection refused"}]
        result = make_compressor(counter).compress(messages, 500)
        assert [e.message for e in result.preserved_info.errors] == ["connection refused"]

    def test_cancelled(self, counter, conversation):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(CompactionCancelledError):
            make_compressor(counter).compress(conversation, 100, cancel_event=cancel)

    def test_stats_recorded(self, counter, conversation):
        compressor = make_compressor(counter)
        compressor.compress(conversation, 500)
        assert compressor.stats.total_compressions == 1
        assert compressor.stats.average_savings > 0


# ── Stages ──────────────────────────────────────────────────────────


class TestStages:
    def test_sliding_window_short_history_untouched(self, counter, conversation_factory):
        messages = conversation_factory(10)
        assert make_compressor(counter).apply_sliding_window(messages) is messages

    def test_sliding_window_without_summary(self, counter, conversation_factory):
        messages = conversation_factory(30)
        compressor = make_compressor(
            counter, sliding_window=SlidingWindowConfig(summarize_old_messages=False)
        )
        out = compressor.apply_sliding_window(messages)
        assert out[0] is messages[10]
        assert not any("Context Summary" in str(m["content"]) for m in out)

    def test_tool_output_multipliers(self, counter):
        compressor = make_compressor(counter)
        code = "```\n" + "x" * 2000 + "\n```"
        messages = [
            {"role": "tool", "content": "y" * 2000},
            {"role": "tool", "content": code},
            {"role": "tool", "content": "short"},
            {"role": "tool", "content": [{"type": "text", "text": "z" * 5000}]},
            {"role": "user", "content": "u" * 5000},
        ]
        out, truncated = compressor.truncate_tool_outputs(messages)

        assert truncated == 3
        assert out[0]["content"].startswith("y" * 480 + "\n... [truncated 1280 chars]")
        assert "[truncated 1144 chars]" in out[1]["content"]
        assert out[2] is messages[2]
        assert out[3]["content"] == "z" * 480 + "\n... [truncated 4280 chars] ...\n" + "z" * 240
        assert out[4] is messages[4]

    def test_structured_tool_output_truncated(self, counter):
        payload = {"stdout": "o" * 3000, "exit_code": 0}
        messages = [{"role": "tool", "tool_call_id": "call_1", "content": payload}]

        out, truncated = make_compressor(counter).truncate_tool_outputs(messages)

        assert truncated == 1
        assert out[0]["tool_call_id"] == "call_1"
        assert isinstance(out[0]["content"], str)
        assert out[0]["content"].startswith('{"stdout": "ooo')
        assert "[truncated " in out[0]["content"]
        # JSON ending in a brace classifies as code, so the limit is 800 * 1.2
        assert len(out[0]["content"]) <= 960
        assert messages[0]["content"] is payload

    def test_small_tool_limit_never_grows_output(self, counter):
        compressor = make_compressor(counter, max_tool_output_length=100)
        messages = [{"role": "tool", "content": "y" * 105}]

        out, truncated = compressor.truncate_tool_outputs(messages)

        assert truncated == 1
        assert len(out[0]["content"]) <= 100

    def test_remove_by_importance_drops_old_summary_first(self, counter):
        summary = {"role": "system", "content": "[Intelligent Summary of 9 messages]\n## Conversation Flow"}
        messages = [summary, {"role": "user", "content": "x" * 40}, {"role": "user", "content": "y" * 40}]

        out = make_compressor(counter).remove_by_importance(messages, 30)

        assert out == messages[1:]

    def test_intelligent_summarization_sections(self, counter, conversation_factory):
        messages = conversation_factory(20)
        messages[1] = {"role": "assistant", "content": "I created the file src/app.py for you."}
        messages[2] = {"role": "tool", "content": "Error: boom happened"}
        messages[3] = {"role": "assistant", "content": "We decided to use pytest."}
        key_info = extract_key_information(messages)

        out = make_compressor(counter).apply_intelligent_summarization(messages, key_info)

        assert len(out) == 16
        assert out[1:] == messages[5:]
        summary = out[0]["content"]
        assert summary.startswith("[Intelligent Summary of 5 messages]\n## Conversation Flow")
        assert "## Files Modified\n- src/app.py" in summary
        assert "## Recent Errors\n- boom happened" in summary
        assert "## Key Decisions\n- use pytest" in summary

    def test_intelligent_summarization_sections_fit_budget(self, counter, conversation_factory):
        messages = conversation_factory(40)
        compressor = make_compressor(counter)
        compressor.update_config(summarization={"max_summary_tokens": 40})

        out = compressor.apply_intelligent_summarization(messages, extract_key_information(messages))

        summary = out[0]["content"]
        assert summary.endswith("[Section truncated]")
        body = summary.split("\n", 1)[1]
        assert counter.count_tokens(body) <= 40

    def test_remove_by_importance_tie_goes_to_earlier(self, counter):
        messages = [{"role": "user", "content": f"Error: failure number {i}"} for i in range(4)]
        compressor = make_compressor(counter)

        assert compressor.remove_by_importance(messages, 10) == [messages[2]]
        assert compressor.remove_by_importance(messages, 30) == messages[1:]

    def test_hard_truncate_keeps_recent(self, counter):
        messages = [{"role": "user", "content": "x" * 40} for _ in range(5)]
        out = make_compressor(counter).hard_truncate(messages, 30)
        assert out == messages[3:]
        assert out[0] is messages[3]


# ── Archive ─────────────────────────────────────────────────────────


class TestArchive:
    def test_archive_and_recover(self, counter, conversation):
        compressor = make_compressor(counter)
        result = compressor.compress(conversation, 500, session_id="s1")

        archives = compressor.list_archives()
        assert len(archives) == 1
        assert archives[0]["message_count"] == 50
        assert archives[0]["session_id"] == "s1"
        assert archives[0]["id"] == result.archive.id

        recovered = compressor.recover_context()
        assert recovered == conversation
        recovered[0]["content"] = "changed"
        assert compressor.recover_context(result.archive.id) == conversation

    def test_result_archive_is_a_copy(self, counter, conversation):
        compressor = make_compressor(counter)
        result = compressor.compress(conversation, 500)
        result.archive.messages.clear()
        assert compressor.recover_context() == conversation

    def test_ring_evicts_oldest(self, counter, conversation):
        compressor = make_compressor(counter, max_archives=2)
        first = compressor.compress(conversation, 500).archive
        compressor.compress(conversation, 400)
        compressor.compress(conversation, 300)

        assert len(compressor.list_archives()) == 2
        assert compressor.recover_context(first.id) is None

    def test_unknown_and_empty(self, counter):
        compressor = make_compressor(counter)
        assert compressor.recover_context() is None
        assert compressor.recover_context("missing") is None

    def test_clear(self, counter, conversation):
        compressor = make_compressor(counter)
        compressor.compress(conversation, 500)
        compressor.clear_archives()
        assert compressor.list_archives() == []

    def test_archiving_disabled(self, counter, conversation):
        compressor = make_compressor(counter, enable_archiving=False)
        result = compressor.compress(conversation, 500)
        assert result.archive is None
        assert compressor.list_archives() == []


# ── Configuration ───────────────────────────────────────────────────


class TestConfig:
    def test_partial_nested_update(self, counter):
        compressor = make_compressor(counter)
        compressor.update_config(sliding_window={"window_size": 5}, max_tool_output_length=100)

        config = compressor.get_config()
        assert config.sliding_window.window_size == 5
        assert config.sliding_window.overlap_size == 3
        assert config.max_tool_output_length == 100

    def test_get_config_returns_copy(self, counter):
        compressor = make_compressor(counter)
        compressor.get_config().sliding_window.window_size = 1
        assert compressor.config.sliding_window.window_size == 15

    def test_shrinking_ring_keeps_newest(self, counter, conversation):
        compressor = make_compressor(counter)
        for limit in (500, 400, 300):
            compressor.compress(conversation, limit)
        newest = compressor.list_archives()[-1]["id"]

        compressor.update_config(max_archives=1)
        assert [a["id"] for a in compressor.list_archives()] == [newest]


# ── Helpers ─────────────────────────────────────────────────────────


class TestHelpers:
    def test_truncate_output(self):
        out = truncate_output("a" * 720 + "b" * 8920 + "c" * 360, 1200)
        assert out == "a" * 720 + "\n... [truncated 8920 chars] ...\n" + "c" * 360

    def test_truncate_output_marker_paid_from_head_and_tail(self):
        out = truncate_output("y" * 105, 100)
        assert out == "y" * 46 + "\n... [truncated 36 chars] ...\n" + "y" * 23

        for length in (101, 150, 1000, 50_000):
            assert len(truncate_output("y" * length, 100)) <= 100

    def test_truncate_output_tiny_limit(self):
        assert truncate_output("z" * 50, 10) == "z" * 10
        assert truncate_output("abc", 10) == "abc"

    def test_is_generated(self):
        assert is_generated({"role": "system", "content": TRANSITION_MARKER})
        assert is_generated({"role": "system", "content": "[Context Summary - 3 earlier messages]\n"})
        assert not is_generated({"role": "system", "content": "You are a coding agent."})
        assert not is_generated({"role": "user", "content": TRANSITION_MARKER})

    def test_create_context_summary(self):
        messages = [
            {"role": "user", "content": "How do I configure logging?"},
            {"role": "assistant", "content": "Use loguru"},
            {"role": "user", "content": "short"},
        ]
        assert create_context_summary(messages) == (
            "Messages: 3 (user: 2, assistant: 1)\n"
            "Topics discussed: How do I configure logging?"
        )

    def test_summarize_conversation_flow(self):
        messages = [
            {"role": "user", "content": "Fix the login bug\nDetails follow"},
            {"role": "assistant", "content": "Sure, I will look at the authentication module and fix it now"},
            {"role": "user", "content": "Fix the login bug"},
            {"role": "tool", "content": "ignored"},
        ]
        assert summarize_conversation_flow(messages) == (
            "- User asked: Fix the login bug\n"
            "  Assistant: Sure, I will look at the authentication module and fix..."
        )
