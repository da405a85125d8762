"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.
"""

import os
import json
from enum import Enum
from pathlib import Path
from typing import Optional, TYPE_CHECKING
from dataclasses import dataclass

from dotenv import load_dotenv

from qaforge.output import print_warning

if TYPE_CHECKING:
    from qaforge.agents.providers import AgentProvider

# Default configuration values
CONFIG_FILENAME = "qaforge_config.json"
DEFAULT_DB_PATH = "data/qaforge.db"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_AGENT_TYPE = "gemini"
DEFAULT_BUFFER_CAPACITY = 1000
DEFAULT_BATCH_SIZE = 50
DEFAULT_FLUSH_INTERVAL = 0.5

DEFAULT_AGENT_TIMEOUT = 300
DEFAULT_AGENT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY = 2.0


class OutputFormat(Enum):
    """How the agent CLI is asked to format its output."""
    TEXT = "text"
    JSON = "json"
    STREAM_JSON = "stream-json"
    STREAM_PARTIAL = "stream-partial"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OutputFormat":
        """Parse a format name; unknown or missing values mean stream-json."""
        if value:
            normalized = value.strip().lower().replace("_", "-")
            if normalized == "stream-json-partial":
                return cls.STREAM_PARTIAL
            for member in cls:
                if member.value == normalized:
                    return member
        return cls.STREAM_JSON

    @property
    def is_streaming(self) -> bool:
        """Streaming formats carry delta fragments and engage the merger."""
        return self in (OutputFormat.STREAM_JSON, OutputFormat.STREAM_PARTIAL)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AgentRunConfig:
    """Settings for one agent CLI invocation."""
    executable_path: str
    timeout_seconds: float = DEFAULT_AGENT_TIMEOUT
    max_retries: int = DEFAULT_AGENT_MAX_RETRIES
    working_dir: Optional[Path] = None
    output_format: OutputFormat = OutputFormat.STREAM_JSON
    api_key: Optional[str] = None
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY

    def __post_init__(self):
        # At least one attempt is always made
        self.max_retries = max(1, int(self.max_retries))
        if self.working_dir is not None:
            self.working_dir = Path(self.working_dir)

    @classmethod
    def from_env(cls, provider: "AgentProvider") -> "AgentRunConfig":
        """Load agent settings from ``<PREFIX>_AGENT_*`` environment variables."""
        prefix = provider.env_prefix
        working_dir = os.environ.get(f"{prefix}_AGENT_WORKING_DIR")
        return cls(
            executable_path=os.environ.get(f"{prefix}_AGENT_PATH", provider.default_executable),
            timeout_seconds=float(os.environ.get(f"{prefix}_AGENT_TIMEOUT", DEFAULT_AGENT_TIMEOUT)),
            max_retries=int(os.environ.get(f"{prefix}_AGENT_MAX_RETRIES", DEFAULT_AGENT_MAX_RETRIES)),
            working_dir=Path(working_dir) if working_dir else None,
            output_format=OutputFormat.parse(os.environ.get(f"{prefix}_AGENT_OUTPUT_FORMAT")),
            api_key=os.environ.get(provider.api_key_env) or None,
        )


@dataclass
class ServerConfig:
    """QA Forge server configuration."""
    database_path: Path
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    agent_type: str = DEFAULT_AGENT_TYPE
    buffer_capacity: int = DEFAULT_BUFFER_CAPACITY
    batch_size: int = DEFAULT_BATCH_SIZE
    flush_interval: float = DEFAULT_FLUSH_INTERVAL
    verbose: bool = False

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "ServerConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables (a local .env file is loaded first)
        2. Local config file (qaforge_config.json)
        3. Default values
        """
        load_dotenv()

        # Start with defaults
        config = {
            "database_path": DEFAULT_DB_PATH,
            "host": DEFAULT_HOST,
            "port": DEFAULT_PORT,
            "agent_type": DEFAULT_AGENT_TYPE,
            "buffer_capacity": DEFAULT_BUFFER_CAPACITY,
            "batch_size": DEFAULT_BATCH_SIZE,
            "flush_interval": DEFAULT_FLUSH_INTERVAL,
            "verbose": False,
        }

        # Load from config file if exists
        config_path = Path(config_path or CONFIG_FILENAME)
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    file_config = json.load(f)
                config.update({k: v for k, v in file_config.items() if k in config})
            except (OSError, json.JSONDecodeError) as e:
                print_warning(f"Failed to load config file: {e}")

        # Override with environment variables
        env_map = {
            "QAFORGE_DB_PATH": ("database_path", str),
            "QAFORGE_HOST": ("host", str),
            "QAFORGE_PORT": ("port", int),
            "AGENT_TYPE": ("agent_type", str),
            "QAFORGE_BUFFER_CAPACITY": ("buffer_capacity", int),
            "QAFORGE_BATCH_SIZE": ("batch_size", int),
            "QAFORGE_FLUSH_INTERVAL": ("flush_interval", float),
            "QAFORGE_VERBOSE": ("verbose", _env_bool),
        }
        for env_name, (key, convert) in env_map.items():
            value = os.environ.get(env_name)
            if value:
                try:
                    config[key] = convert(value)
                except ValueError:
                    print_warning(f"Ignoring invalid {env_name}={value!r}")

        return cls(
            database_path=Path(config["database_path"]),
            host=config["host"],
            port=int(config["port"]),
            agent_type=config["agent_type"],
            buffer_capacity=int(config["buffer_capacity"]),
            batch_size=int(config["batch_size"]),
            flush_interval=float(config["flush_interval"]),
            verbose=bool(config["verbose"]),
        )
