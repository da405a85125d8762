"""
Tests for configuration loading.
"""

import json
from pathlib import Path

import pytest

from qaforge.agents.providers import CLAUDE, GEMINI, create_agent_from_env
from qaforge.config import (
    DEFAULT_AGENT_MAX_RETRIES,
    DEFAULT_AGENT_TIMEOUT,
    AgentRunConfig,
    OutputFormat,
    ServerConfig,
)

SERVER_ENV = (
    "QAFORGE_DB_PATH",
    "QAFORGE_HOST",
    "QAFORGE_PORT",
    "AGENT_TYPE",
    "QAFORGE_BUFFER_CAPACITY",
    "QAFORGE_BATCH_SIZE",
    "QAFORGE_FLUSH_INTERVAL",
    "QAFORGE_VERBOSE",
)


@pytest.fixture
def clean_env(monkeypatch, temp_dir):
    """Run in an empty directory with no QA Forge variables set."""
    monkeypatch.chdir(temp_dir)
    for name in SERVER_ENV:
        monkeypatch.delenv(name, raising=False)
    for prefix in ("CLAUDE", "GEMINI", "CURSOR"):
        for suffix in ("PATH", "TIMEOUT", "MAX_RETRIES", "WORKING_DIR", "OUTPUT_FORMAT"):
            monkeypatch.delenv(f"{prefix}_AGENT_{suffix}", raising=False)
        monkeypatch.delenv(f"{prefix}_API_KEY", raising=False)
    return monkeypatch


class TestServerConfig:
    """ServerConfig.load precedence."""

    def test_defaults(self, clean_env):
        config = ServerConfig.load()

        assert config.database_path == Path("data/qaforge.db")
        assert config.host == "0.0.0.0"
        assert config.port == 8080
        assert config.agent_type == "gemini"
        assert config.buffer_capacity == 1000
        assert config.batch_size == 50
        assert config.flush_interval == 0.5
        assert config.verbose is False

    def test_config_file(self, clean_env, temp_dir):
        (temp_dir / "qaforge_config.json").write_text(json.dumps({
            "port": 9000,
            "agent_type": "claude",
            "unknown_key": "ignored",
        }))

        config = ServerConfig.load()

        assert config.port == 9000
        assert config.agent_type == "claude"

    def test_env_overrides_file(self, clean_env, temp_dir):
        (temp_dir / "qaforge_config.json").write_text(json.dumps({"port": 9000}))
        clean_env.setenv("QAFORGE_PORT", "9100")
        clean_env.setenv("QAFORGE_DB_PATH", str(temp_dir / "other.db"))
        clean_env.setenv("QAFORGE_VERBOSE", "yes")

        config = ServerConfig.load()

        assert config.port == 9100
        assert config.database_path == temp_dir / "other.db"
        assert config.verbose is True

    def test_invalid_env_value_ignored(self, clean_env):
        clean_env.setenv("QAFORGE_PORT", "not-a-port")

        assert ServerConfig.load().port == 8080

    def test_broken_config_file(self, clean_env, temp_dir):
        (temp_dir / "qaforge_config.json").write_text("{not json")

        assert ServerConfig.load().port == 8080

    def test_explicit_config_path(self, clean_env, temp_dir):
        path = temp_dir / "custom.json"
        path.write_text(json.dumps({"buffer_capacity": 10}))

        assert ServerConfig.load(path).buffer_capacity == 10


class TestOutputFormat:
    """OutputFormat.parse."""

    def test_known_values(self):
        assert OutputFormat.parse("text") == OutputFormat.TEXT
        assert OutputFormat.parse("JSON") == OutputFormat.JSON
        assert OutputFormat.parse("stream_json") == OutputFormat.STREAM_JSON
        assert OutputFormat.parse("stream-json-partial") == OutputFormat.STREAM_PARTIAL

    def test_unknown_defaults_to_stream_json(self):
        assert OutputFormat.parse("yaml") == OutputFormat.STREAM_JSON
        assert OutputFormat.parse(None) == OutputFormat.STREAM_JSON

    def test_streaming(self):
        assert OutputFormat.STREAM_PARTIAL.is_streaming
        assert not OutputFormat.TEXT.is_streaming


class TestAgentRunConfig:
    """Per-provider environment settings."""

    def test_defaults(self, clean_env):
        config = AgentRunConfig.from_env(GEMINI)

        assert config.executable_path == "gemini"
        assert config.timeout_seconds == DEFAULT_AGENT_TIMEOUT
        assert config.max_retries == DEFAULT_AGENT_MAX_RETRIES
        assert config.working_dir is None
        assert config.output_format == OutputFormat.STREAM_JSON
        assert config.api_key is None

    def test_from_env(self, clean_env, temp_dir):
        clean_env.setenv("CLAUDE_AGENT_PATH", "/opt/bin/claude")
        clean_env.setenv("CLAUDE_AGENT_TIMEOUT", "45")
        clean_env.setenv("CLAUDE_AGENT_MAX_RETRIES", "0")
        clean_env.setenv("CLAUDE_AGENT_WORKING_DIR", str(temp_dir))
        clean_env.setenv("CLAUDE_AGENT_OUTPUT_FORMAT", "bogus")
        clean_env.setenv("CLAUDE_API_KEY", "sk-test")

        config = AgentRunConfig.from_env(CLAUDE)

        assert config.executable_path == "/opt/bin/claude"
        assert config.timeout_seconds == 45
        assert config.max_retries == 1
        assert config.working_dir == temp_dir
        assert config.output_format == OutputFormat.STREAM_JSON
        assert config.api_key == "sk-test"

    def test_agent_type_selects_provider(self, clean_env):
        clean_env.setenv("AGENT_TYPE", "cursor")
        assert create_agent_from_env().provider.name == "cursor"

    def test_unknown_agent_type_falls_back(self, clean_env):
        clean_env.setenv("AGENT_TYPE", "copilot")
        assert create_agent_from_env().provider.name == "gemini"

    def test_explicit_agent_type_wins(self, clean_env):
        clean_env.setenv("AGENT_TYPE", "cursor")
        assert create_agent_from_env("claude").provider.name == "claude"
