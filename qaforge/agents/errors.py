"""
Agent Errors
============

Failure kinds of an agent CLI run. Each kind calls for a different remedy,
so callers branch on the class rather than on message text.
"""

from pathlib import Path
from typing import Union


class AgentError(Exception):
    """Base class for agent run failures."""

    # Whether another attempt can plausibly succeed
    retryable: bool = True


class AgentTimeout(AgentError):
    """The process did not exit within the configured wall-clock timeout."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        shown = int(seconds) if float(seconds).is_integer() else seconds
        super().__init__(f"Agent timed out after {shown} seconds")


class ProcessFailed(AgentError):
    """The process exited with a non-zero status."""

    def __init__(self, exit_code: int):
        self.exit_code = exit_code
        super().__init__(f"Agent process failed with exit code {exit_code}")


class ExecutableNotFound(AgentError):
    retryable = False

    def __init__(self, target: str, hint: str = ""):
        self.target = target
        self.hint = hint
        message = f"Agent executable not found: {target}"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class SpawnFailed(AgentError):
    """The OS refused to start the process, or waiting on it failed."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Failed to spawn agent process: {detail}")


class DirectoryNotAccessible(AgentError):
    retryable = False

    def __init__(self, path: Union[Path, str]):
        self.path = str(path)
        super().__init__(f"Working directory does not exist or is not accessible: {path}")


class AuthenticationRequired(AgentError):
    """The CLI reported it is not logged in."""

    retryable = False

    def __init__(self, detail: str = ""):
        self.detail = detail
        message = "Agent CLI requires authentication"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
