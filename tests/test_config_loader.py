"""Tests for configuration loading and key conversion."""

import json
from pathlib import Path

from condense.config.loader import (
    camel_to_snake,
    convert_keys,
    convert_to_camel,
    load_config,
    save_config,
    snake_to_camel,
)
from condense.config.schema import Config


# ── Key conversion ──────────────────────────────────────────────────


class TestCamelToSnake:
    def test_simple(self):
        assert camel_to_snake("apiKey") == "api_key"

    def test_multiple_words(self):
        assert camel_to_snake("maxToolOutputLength") == "max_tool_output_length"

    def test_single_word(self):
        assert camel_to_snake("enabled") == "enabled"

    def test_already_snake(self):
        assert camel_to_snake("api_key") == "api_key"

    def test_empty(self):
        assert camel_to_snake("") == ""


class TestSnakeToCamel:
    def test_simple(self):
        assert snake_to_camel("api_key") == "apiKey"

    def test_multiple_words(self):
        assert snake_to_camel("min_messages_for_summarization") == "minMessagesForSummarization"

    def test_single_word(self):
        assert snake_to_camel("enabled") == "enabled"

    def test_empty(self):
        assert snake_to_camel("") == ""


class TestConvertKeys:
    def test_nested_dict(self):
        data = {"enhanced": {"slidingWindow": {"windowSize": 10}}}
        assert convert_keys(data) == {"enhanced": {"sliding_window": {"window_size": 10}}}

    def test_list_of_dicts(self):
        data = {"rules": [{"toolName": "bash"}]}
        assert convert_keys(data) == {"rules": [{"tool_name": "bash"}]}

    def test_non_dict(self):
        assert convert_keys("hello") == "hello"
        assert convert_keys(42) == 42
        assert convert_keys(None) is None


class TestConvertToCamel:
    def test_nested_dict(self):
        data = {"compaction": {"memory_flush": {"soft_threshold_tokens": 100}}}
        assert convert_to_camel(data) == {"compaction": {"memoryFlush": {"softThresholdTokens": 100}}}

    def test_roundtrip(self):
        """camelCase → snake_case → camelCase should preserve keys."""
        original = {"apiKey": "test", "parallelChunks": 4, "maxRetries": 2}
        assert convert_to_camel(convert_keys(original)) == original


# ── Config load/save ────────────────────────────────────────────────


class TestLoadConfig:
    def test_default_when_no_file(self, tmp_path: Path):
        config = load_config(tmp_path / "nonexistent.json")
        assert isinstance(config, Config)
        assert config.compaction.parallel_chunks == 4

    def test_load_camel_case_json(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "model": "gpt-4o",
            "compaction": {"parallelChunks": 8, "memoryFlush": {"enabled": False}},
            "enhanced": {"slidingWindow": {"windowSize": 10}, "maxArchives": 2},
            "provider": {"apiKey": "sk-test"},
        }))
        config = load_config(config_file)
        assert config.model == "gpt-4o"
        assert config.compaction.parallel_chunks == 8
        assert config.compaction.memory_flush.enabled is False
        assert config.enhanced.sliding_window.window_size == 10
        assert config.enhanced.max_archives == 2
        assert config.provider.api_key == "sk-test"

    def test_invalid_json_returns_default(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text("not json{{{")
        config = load_config(config_file)
        assert config.compaction.parallel_chunks == 4

    def test_invalid_values_return_default(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"compaction": {"parallelChunks": 0}}))
        config = load_config(config_file)
        assert config.compaction.parallel_chunks == 4

    def test_empty_file_returns_default(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text("")
        assert isinstance(load_config(config_file), Config)


class TestSaveConfig:
    def test_save_creates_file(self, tmp_path: Path):
        config_file = tmp_path / "subdir" / "config.json"
        save_config(Config(), config_file)
        assert config_file.exists()

    def test_save_uses_camel_case(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        save_config(Config(), config_file)

        data = json.loads(config_file.read_text())
        assert "parallelChunks" in data["compaction"]
        assert "windowSize" in data["enhanced"]["slidingWindow"]
        assert "apiKey" in data["provider"]

    def test_roundtrip(self, tmp_path: Path):
        """Save and reload should produce equivalent config."""
        original = Config()
        original.compaction.max_retries = 5
        original.enhanced.sliding_window.overlap_size = 1

        config_file = tmp_path / "config.json"
        save_config(original, config_file)
        loaded = load_config(config_file)

        assert loaded.compaction.max_retries == 5
        assert loaded.enhanced.sliding_window.overlap_size == 1
