"""
Agent Providers
===============

Per-CLI differences between Claude Code, Gemini CLI and Cursor Agent. The
run skeleton is shared (see runner.py); a provider only decides the
executable, the environment prefix and the output-format flags.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from qaforge.config import AgentRunConfig, OutputFormat
from qaforge.output import print_info, print_muted


@dataclass(frozen=True)
class AgentProvider:
    """Static description of one agent CLI."""
    name: str
    display_name: str
    env_prefix: str
    default_executable: str
    api_key_env: str
    install_hint: str
    supports_format_flags: bool = True
    # Claude Code refuses stream-json without --verbose
    verbose_for_streams: bool = False

    def build_args(self, config: AgentRunConfig, prompt: str) -> List[str]:
        """Build ``<exe> -p [format flags] <prompt>``."""
        args = [config.executable_path, "-p"]
        if self.supports_format_flags:
            fmt = config.output_format
            if fmt == OutputFormat.JSON:
                args += ["--output-format", "json"]
            elif fmt == OutputFormat.STREAM_JSON:
                args += ["--output-format", "stream-json"]
            elif fmt == OutputFormat.STREAM_PARTIAL:
                args += ["--output-format", "stream-json", "--stream-partial-output"]
            if self.verbose_for_streams and fmt.is_streaming:
                args.append("--verbose")
        args.append(prompt)
        return args


CLAUDE = AgentProvider(
    name="claude",
    display_name="Claude Code",
    env_prefix="CLAUDE",
    default_executable="claude",
    api_key_env="CLAUDE_API_KEY",
    install_hint="Install it with: npm install -g @anthropic-ai/claude-code, "
                 "or set CLAUDE_AGENT_PATH to the executable",
    verbose_for_streams=True,
)

GEMINI = AgentProvider(
    name="gemini",
    display_name="Gemini CLI",
    env_prefix="GEMINI",
    default_executable="gemini",
    api_key_env="GEMINI_API_KEY",
    install_hint="Install it with: npm install -g @google/gemini-cli, "
                 "or set GEMINI_AGENT_PATH to the executable",
    supports_format_flags=False,
)

CURSOR = AgentProvider(
    name="cursor",
    display_name="Cursor Agent",
    env_prefix="CURSOR",
    default_executable="cursor-agent",
    api_key_env="CURSOR_API_KEY",
    install_hint="Install it with: curl https://cursor.com/install -fsS | bash, "
                 "or set CURSOR_AGENT_PATH to the executable",
)


class AgentType(Enum):
    """Selectable agent CLIs."""
    CLAUDE = "claude"
    GEMINI = "gemini"
    CURSOR = "cursor"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["AgentType"]:
        """Parse a name case-insensitively; unknown names give None."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @property
    def provider(self) -> AgentProvider:
        return PROVIDERS[self]


PROVIDERS = {
    AgentType.CLAUDE: CLAUDE,
    AgentType.GEMINI: GEMINI,
    AgentType.CURSOR: CURSOR,
}

DEFAULT_AGENT_TYPE = AgentType.GEMINI


def create_agent(agent_type: AgentType, config: Optional[AgentRunConfig] = None):
    """
    Create a runner for the given agent CLI.

    Settings come from ``<PREFIX>_AGENT_*`` environment variables unless an
    explicit config is passed.
    """
    from qaforge.agents.runner import ProcessRunner

    provider = agent_type.provider
    config = config or AgentRunConfig.from_env(provider)

    print_info(f"Creating {provider.display_name} agent")
    print_muted(f"  - Executable: {config.executable_path}")
    print_muted(f"  - Timeout: {config.timeout_seconds}s")
    print_muted(f"  - Retries: {config.max_retries}")
    print_muted(f"  - Output format: {config.output_format.value}")
    if config.api_key:
        print_muted("  - API key: [SET]")

    return ProcessRunner(provider, config)


def create_agent_from_env(agent_type: Optional[str] = None):
    """Create the runner selected by ``AGENT_TYPE`` (default: gemini)."""
    selected = AgentType.parse(agent_type or os.environ.get("AGENT_TYPE")) or DEFAULT_AGENT_TYPE
    print_info(f"Selected code analysis agent: {selected.provider.display_name}")
    return create_agent(selected)
