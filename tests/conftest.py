"""
Shared fixtures: a throwaway SQLite database and fake agent CLIs written as
POSIX shell scripts.
"""

import stat
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from qaforge.agents.providers import GEMINI
from qaforge.agents.runner import ProcessRunner
from qaforge.config import AgentRunConfig, OutputFormat
from qaforge.db.connection import init_db, close_db
from qaforge.db.repository import Database


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest_asyncio.fixture
async def database(temp_dir):
    """A Database backed by a fresh SQLite file."""
    session_maker = await init_db(temp_dir / "qaforge.db")
    yield Database(session_maker)
    await close_db()


@pytest.fixture
def agent_script(temp_dir):
    """Factory writing an executable shell script that stands in for an agent CLI."""
    counter = {"n": 0}

    def write(body: str) -> Path:
        counter["n"] += 1
        path = temp_dir / f"fake-agent-{counter['n']}.sh"
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return write


@pytest.fixture
def make_runner():
    """Factory building a runner around a script; Gemini passes no format flags."""

    def build(script, provider=GEMINI, runner_class=ProcessRunner, **overrides) -> ProcessRunner:
        settings = dict(
            executable_path=str(script),
            timeout_seconds=10,
            max_retries=1,
            output_format=OutputFormat.TEXT,
            retry_delay_seconds=0,
        )
        settings.update(overrides)
        return runner_class(provider, AgentRunConfig(**settings))

    return build
