"""Tests for runtime configuration loading and structured logging."""

import json
import logging

import pytest

from railgraph import config
from railgraph.config import MultiAgentMode, RuntimeConfig
from railgraph.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    get_trace_context,
    set_trace_context,
    strip_ansi_codes,
)

# === HELPER FUNCTIONS ===


def make_record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("railgraph.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Point the config loader at a temporary configuration.json."""
    path = tmp_path / "configuration.json"
    monkeypatch.setattr(config, "RAILGRAPH_CONFIG_FILE", path)
    monkeypatch.delenv("RAILGRAPH_MULTI_AGENT_MODE", raising=False)
    monkeypatch.delenv("RAILGRAPH_STORAGE_PATH", raising=False)
    return path


# === CONFIG TESTS ===


class TestMultiAgentMode:
    @pytest.mark.parametrize(
        "mode,limit", [(MultiAgentMode.OFF, 1), (MultiAgentMode.BALANCED, 2), (MultiAgentMode.MAX, 4)]
    )
    def test_max_concurrency(self, mode, limit):
        assert mode.max_concurrency == limit
        assert RuntimeConfig(multi_agent_mode=mode, api_key=None).max_concurrency == limit


class TestConfigFile:
    def test_missing_file_gives_defaults(self, config_file):
        assert config.get_railgraph_config() == {}
        assert config.get_preferred_model() == config.DEFAULT_MODEL
        assert config.get_multi_agent_mode() == MultiAgentMode.OFF

    def test_invalid_json_is_ignored(self, config_file):
        config_file.write_text("{not json")
        assert config.get_railgraph_config() == {}

    def test_values_from_file(self, config_file, monkeypatch):
        monkeypatch.setenv("MY_KEY", "secret")
        config_file.write_text(
            json.dumps(
                {
                    "llm": {"provider": "openai", "model": "gpt-4o", "api_key_env_var": "MY_KEY"},
                    "runtime": {"multi_agent_mode": "balanced", "output_schema_max_retry": 3},
                    "storage": {"path": "/tmp/railgraph-runs"},
                }
            )
        )

        runtime = RuntimeConfig()

        assert runtime.model == "openai/gpt-4o"
        assert runtime.api_key == "secret"
        assert runtime.multi_agent_mode == MultiAgentMode.BALANCED
        assert runtime.output_schema_max_retry == 3
        assert str(runtime.storage_path) == "/tmp/railgraph-runs"

    def test_environment_overrides_file(self, config_file, monkeypatch):
        config_file.write_text(json.dumps({"runtime": {"multi_agent_mode": "balanced"}}))
        monkeypatch.setenv("RAILGRAPH_MULTI_AGENT_MODE", "MAX")
        assert config.get_multi_agent_mode() == MultiAgentMode.MAX

    def test_unknown_mode_falls_back_to_off(self, config_file, monkeypatch):
        monkeypatch.setenv("RAILGRAPH_MULTI_AGENT_MODE", "turbo")
        assert config.get_multi_agent_mode() == MultiAgentMode.OFF


# === LOGGING TESTS ===


class TestTraceContext:
    def test_set_merges_and_clear_resets(self):
        set_trace_context(run_id="run_1")
        set_trace_context(node_id="a")
        assert get_trace_context() == {"run_id": "run_1", "node_id": "a"}

        clear_trace_context()
        assert get_trace_context() == {}


class TestFormatters:
    def test_json_line_carries_trace_and_extras(self):
        set_trace_context(run_id="run_1", trace_id="abc")
        record = make_record("\x1b[32mstarted\x1b[0m", event="node_started", latency_ms=12)

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "started"
        assert entry["level"] == "info"
        assert entry["run_id"] == "run_1"
        assert entry["trace_id"] == "abc"
        assert entry["event"] == "node_started"
        assert entry["latency_ms"] == 12

    def test_human_prefix(self):
        set_trace_context(run_id="run_20260101_abcdefgh", node_id="judge")
        line = HumanReadableFormatter().format(make_record("done"))
        assert "[run:abcdefgh | node:judge] done" in line

    def test_strip_ansi(self):
        assert strip_ansi_codes("\x1b[31mred\x1b[0m") == "red"
