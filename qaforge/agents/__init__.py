"""
Agent CLI Execution
===================

Provider definitions, the shared process runner and its error taxonomy.
"""

from qaforge.agents.errors import (
    AgentError,
    AgentTimeout,
    AuthenticationRequired,
    DirectoryNotAccessible,
    ExecutableNotFound,
    ProcessFailed,
    SpawnFailed,
)
from qaforge.agents.providers import (
    AgentProvider,
    AgentType,
    CLAUDE,
    CURSOR,
    GEMINI,
    create_agent,
    create_agent_from_env,
)
from qaforge.agents.runner import ProcessRunner, RunArgs

__all__ = [
    "AgentError",
    "AgentTimeout",
    "AuthenticationRequired",
    "DirectoryNotAccessible",
    "ExecutableNotFound",
    "ProcessFailed",
    "SpawnFailed",
    "AgentProvider",
    "AgentType",
    "CLAUDE",
    "CURSOR",
    "GEMINI",
    "create_agent",
    "create_agent_from_env",
    "ProcessRunner",
    "RunArgs",
]
