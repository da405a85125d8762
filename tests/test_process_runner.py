"""
Tests for the agent process runner, using shell scripts as fake agent CLIs.
"""

import asyncio
import os
import time
from pathlib import Path

import pytest

from qaforge.agents.errors import (
    AgentTimeout,
    AuthenticationRequired,
    DirectoryNotAccessible,
    ExecutableNotFound,
    ProcessFailed,
)
from qaforge.agents.providers import CLAUDE, CURSOR, GEMINI, AgentType
from qaforge.agents.runner import EMPTY_OUTPUT_TEXT, ProcessRunner, RunArgs
from qaforge.config import AgentRunConfig, OutputFormat
from qaforge.events import EventKind


class EventCollector:
    """Async sink recording every event it receives."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)


class CountingRunner(ProcessRunner):
    """Runner that counts spawn attempts."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.spawns = 0

    async def _spawn(self, argv, cwd, env):
        self.spawns += 1
        return await super()._spawn(argv, cwd, env)


def pid_alive(pid: int) -> bool:
    """True while the process exists and has not exited; zombies count as dead."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat_line = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    # The state letter follows the parenthesized command name
    return stat_line.rsplit(")", 1)[1].split()[0] != "Z"


async def wait_for_death(pid: int, timeout=3.0) -> bool:
    deadline = time.monotonic() + timeout
    while pid_alive(pid):
        if time.monotonic() > deadline:
            return False
        await asyncio.sleep(0.02)
    return True


async def wait_for_file(path, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not path.exists() or not path.read_text().strip():
        if time.monotonic() > deadline:
            raise AssertionError(f"{path} was never written")
        await asyncio.sleep(0.02)


class TestSuccessfulRuns:
    """Runs that exit with status 0."""

    @pytest.mark.asyncio
    async def test_returns_stdout_lines(self, agent_script, make_runner):
        script = agent_script('echo "line one"\necho "Reading file: src/app.js"')
        sink = EventCollector()

        result = await make_runner(script).run(RunArgs("question", "t-1", sink=sink))

        assert result == "line one\nReading file: src/app.js"
        assert [e.kind for e in sink.events] == [EventKind.SYSTEM, EventKind.TOOL_USE]
        assert all(e.subject_id == "t-1" for e in sink.events)

    @pytest.mark.asyncio
    async def test_prompt_is_last_argument(self, agent_script, make_runner):
        script = agent_script('echo "$1|$2"')

        result = await make_runner(script).run(RunArgs("what does login do?", "t-1"))

        assert result == "-p|what does login do?"

    @pytest.mark.asyncio
    async def test_empty_output_sentinel(self, agent_script, make_runner):
        script = agent_script("exit 0")

        result = await make_runner(script).run(RunArgs("q", "t-1"))

        assert result == EMPTY_OUTPUT_TEXT

    @pytest.mark.asyncio
    async def test_stderr_lines_become_errors(self, agent_script, make_runner):
        script = agent_script('echo "something odd" >&2\necho ok')
        sink = EventCollector()

        result = await make_runner(script).run(RunArgs("q", "t-1", sink=sink))

        assert result == "ok"
        errors = [e for e in sink.events if e.kind == EventKind.ERROR]
        assert len(errors) == 1
        assert errors[0].content == "something odd"
        assert errors[0].raw == "ERROR: something odd"

    @pytest.mark.asyncio
    async def test_working_directory(self, agent_script, make_runner, temp_dir):
        workdir = temp_dir / "project"
        workdir.mkdir()
        script = agent_script("pwd")

        result = await make_runner(script).run(RunArgs("q", "t-1", working_dir=workdir))

        assert os.path.realpath(result) == os.path.realpath(workdir)

    @pytest.mark.asyncio
    async def test_api_key_injected(self, agent_script, make_runner):
        script = agent_script('echo "$GEMINI_API_KEY"')

        result = await make_runner(script, api_key="secret-key").run(RunArgs("q", "t-1"))

        assert result == "secret-key"

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self, agent_script, make_runner):
        script = agent_script("printf 'caf\\377\\n'")

        result = await make_runner(script).run(RunArgs("q", "t-1"))

        assert result == "caf�"

    @pytest.mark.asyncio
    async def test_streaming_mode_merges_deltas(self, agent_script, make_runner):
        script = agent_script(
            "cat <<'EOF'\n"
            '{"type":"message","role":"assistant","content":"Hel","delta":true}\n'
            '{"type":"message","role":"assistant","content":"lo","delta":true}\n'
            '{"type":"message","role":"assistant","content":" world","delta":false}\n'
            "EOF"
        )
        sink = EventCollector()

        await make_runner(script, output_format=OutputFormat.STREAM_JSON).run(RunArgs("q", "t-1", sink=sink))

        assistant = [e for e in sink.events if e.kind == EventKind.ASSISTANT]
        assert [e.content for e in assistant] == ["Hello world"]

    @pytest.mark.asyncio
    async def test_streaming_mode_flushes_unterminated_message(self, agent_script, make_runner):
        script = agent_script(
            "cat <<'EOF'\n"
            '{"type":"message","role":"assistant","content":"cut ","delta":true}\n'
            '{"type":"message","role":"assistant","content":"short","delta":true}\n'
            "EOF"
        )
        sink = EventCollector()

        await make_runner(script, output_format=OutputFormat.STREAM_PARTIAL).run(RunArgs("q", "t-1", sink=sink))

        assert [e.content for e in sink.events] == ["cut short"]

    @pytest.mark.asyncio
    async def test_text_mode_does_not_merge(self, agent_script, make_runner):
        script = agent_script(
            "cat <<'EOF'\n"
            '{"type":"message","role":"assistant","content":"a","delta":true}\n'
            '{"type":"message","role":"assistant","content":"b","delta":false}\n'
            "EOF"
        )
        sink = EventCollector()

        await make_runner(script).run(RunArgs("q", "t-1", sink=sink))

        assert len(sink.events) == 2


class TestFailures:
    """Error kinds surfaced by the runner."""

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, agent_script, make_runner):
        script = agent_script("exit 3")

        with pytest.raises(ProcessFailed) as exc_info:
            await make_runner(script).run(RunArgs("q", "t-1"))

        assert exc_info.value.exit_code == 3

    @pytest.mark.asyncio
    async def test_authentication_failure(self, agent_script, make_runner):
        script = agent_script('echo "You are not logged in. Run gemini login." >&2\nexit 1')
        runner = make_runner(script, runner_class=CountingRunner, max_retries=3)

        with pytest.raises(AuthenticationRequired):
            await runner.run(RunArgs("q", "t-1"))

        assert runner.spawns == 1

    @pytest.mark.asyncio
    async def test_auth_phrase_with_success_exit_is_not_an_error(self, agent_script, make_runner):
        script = agent_script('echo "authentication refreshed" >&2\necho done')

        assert await make_runner(script).run(RunArgs("q", "t-1")) == "done"

    @pytest.mark.asyncio
    async def test_timeout_kills_child(self, agent_script, make_runner, temp_dir):
        pid_file = temp_dir / "agent.pid"
        script = agent_script(f'echo $$ > "{pid_file}"\nexec sleep 5')

        started = time.monotonic()
        with pytest.raises(AgentTimeout) as exc_info:
            await make_runner(script, timeout_seconds=1).run(RunArgs("q", "t-1"))

        assert exc_info.value.seconds == 1
        assert time.monotonic() - started < 4
        assert await wait_for_death(int(pid_file.read_text().strip()))

    @pytest.mark.asyncio
    async def test_timeout_kills_background_helpers(self, agent_script, make_runner, temp_dir):
        pid_file = temp_dir / "helper.pid"
        script = agent_script(f'sleep 30 &\necho $! > "{pid_file}"\nwait')

        started = time.monotonic()
        with pytest.raises(AgentTimeout):
            await make_runner(script, timeout_seconds=1).run(RunArgs("q", "t-1"))

        assert time.monotonic() - started < 4
        assert await wait_for_death(int(pid_file.read_text().strip()))

    @pytest.mark.asyncio
    async def test_exit_with_background_helper_still_open(self, agent_script, make_runner, temp_dir):
        pid_file = temp_dir / "helper.pid"
        script = agent_script(f'echo hi\nsleep 30 &\necho $! > "{pid_file}"\nexit 0')

        started = time.monotonic()
        result = await make_runner(script, timeout_seconds=10).run(RunArgs("q", "t-1"))

        assert result == "hi"
        assert time.monotonic() - started < 4
        assert await wait_for_death(int(pid_file.read_text().strip()))

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, agent_script, make_runner):
        script = agent_script("exit 1")
        runner = make_runner(script, runner_class=CountingRunner, max_retries=3)

        with pytest.raises(ProcessFailed):
            await runner.run(RunArgs("q", "t-1"))

        assert runner.spawns == 3

    @pytest.mark.asyncio
    async def test_retry_then_success(self, agent_script, make_runner, temp_dir):
        marker = temp_dir / "attempted"
        script = agent_script(f'if [ -f "{marker}" ]; then echo recovered; else touch "{marker}"; exit 1; fi')
        runner = make_runner(script, runner_class=CountingRunner, max_retries=2)

        assert await runner.run(RunArgs("q", "t-1")) == "recovered"
        assert runner.spawns == 2

    @pytest.mark.asyncio
    async def test_missing_working_directory_fails_fast(self, agent_script, make_runner, temp_dir):
        script = agent_script("echo never")
        runner = make_runner(script, runner_class=CountingRunner, max_retries=3)

        with pytest.raises(DirectoryNotAccessible):
            await runner.run(RunArgs("q", "t-1", working_dir=temp_dir / "missing"))

        assert runner.spawns == 0

    @pytest.mark.asyncio
    async def test_missing_executable_path(self, make_runner, temp_dir):
        with pytest.raises(ExecutableNotFound):
            await make_runner(temp_dir / "no-such-agent").run(RunArgs("q", "t-1"))

    @pytest.mark.asyncio
    async def test_missing_command_on_path(self, make_runner):
        with pytest.raises(ExecutableNotFound) as exc_info:
            await make_runner("qaforge-no-such-agent-cli").run(RunArgs("q", "t-1"))

        assert "gemini-cli" in str(exc_info.value)


class TestCancellation:
    """Cancelling the calling task."""

    @pytest.mark.asyncio
    async def test_cancel_kills_child(self, agent_script, make_runner, temp_dir):
        pid_file = temp_dir / "agent.pid"
        script = agent_script(f'echo $$ > "{pid_file}"\nexec sleep 30')
        runner = make_runner(script, timeout_seconds=60)

        task = asyncio.create_task(runner.run(RunArgs("q", "t-1")))
        await wait_for_file(pid_file)
        pid = int(pid_file.read_text().strip())
        assert pid_alive(pid)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await wait_for_death(pid)

    @pytest.mark.asyncio
    async def test_cancel_kills_background_helpers(self, agent_script, make_runner, temp_dir):
        pid_file = temp_dir / "helper.pid"
        script = agent_script(f'sleep 30 &\necho $! > "{pid_file}"\nwait')
        runner = make_runner(script, timeout_seconds=60)

        task = asyncio.create_task(runner.run(RunArgs("q", "t-1")))
        await wait_for_file(pid_file)
        pid = int(pid_file.read_text().strip())

        started = time.monotonic()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert time.monotonic() - started < 4
        assert await wait_for_death(pid)


class TestProviders:
    """Per-provider command lines."""

    def _config(self, executable, fmt):
        return AgentRunConfig(executable_path=executable, output_format=fmt)

    def test_claude_stream_json_adds_verbose(self):
        args = CLAUDE.build_args(self._config("claude", OutputFormat.STREAM_JSON), "q")
        assert args == ["claude", "-p", "--output-format", "stream-json", "--verbose", "q"]

    def test_claude_json(self):
        args = CLAUDE.build_args(self._config("claude", OutputFormat.JSON), "q")
        assert args == ["claude", "-p", "--output-format", "json", "q"]

    def test_cursor_partial(self):
        args = CURSOR.build_args(self._config("cursor-agent", OutputFormat.STREAM_PARTIAL), "q")
        assert args == ["cursor-agent", "-p", "--output-format", "stream-json", "--stream-partial-output", "q"]

    def test_cursor_text_has_no_flags(self):
        args = CURSOR.build_args(self._config("cursor-agent", OutputFormat.TEXT), "q")
        assert args == ["cursor-agent", "-p", "q"]

    def test_gemini_never_gets_format_flags(self):
        args = GEMINI.build_args(self._config("gemini", OutputFormat.STREAM_JSON), "q")
        assert args == ["gemini", "-p", "q"]

    def test_agent_type_parse(self):
        assert AgentType.parse("CLAUDE") == AgentType.CLAUDE
        assert AgentType.parse(" cursor ") == AgentType.CURSOR
        assert AgentType.parse("copilot") is None
        assert AgentType.parse(None) is None
