"""
Process Runner
==============

Runs an agent CLI as a child process and streams its output as structured
events.

One attempt:
1. Validate the working directory and the executable
2. Spawn ``<exe> -p [flags] <prompt>`` with stdin closed
3. Drain stdout and stderr concurrently, normalizing each line and pushing
   the event to the sink as it arrives
4. Wait for exit under one wall-clock timeout. The child leads its own
   process group, so a timeout or a cancellation kills every process the
   agent started, not just the agent itself

Attempts are repeated up to ``max_retries`` times with a fixed delay.
"""

import asyncio
import contextlib
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from qaforge.agents.errors import (
    AgentError,
    AgentTimeout,
    AuthenticationRequired,
    DirectoryNotAccessible,
    ExecutableNotFound,
    ProcessFailed,
    SpawnFailed,
)
from qaforge.agents.providers import AgentProvider
from qaforge.config import AgentRunConfig
from qaforge.delta_merger import DeltaMerger
from qaforge.events import EventSink, StructuredEvent
from qaforge.normalizer import LogNormalizer
from qaforge.output import print_debug, print_error, print_info, print_warning

EMPTY_OUTPUT_TEXT = "Analysis completed but no output generated"
STDERR_PREFIX = "ERROR: "
AUTH_FAILURE_PHRASES = ("not logged in", "authentication", "login required")

# Agents can print very long JSON lines
STREAM_LIMIT = 16 * 1024 * 1024

EXIT_POLL_INTERVAL = 0.05
# Time allowed to read what is left in the pipes once the agent has exited
DRAIN_GRACE_SECONDS = 2.0
# Upper bound on reaping the child after its process group was killed
REAP_TIMEOUT_SECONDS = 5.0


async def _discard(event: StructuredEvent) -> None:
    return None


@dataclass
class RunArgs:
    """Inputs of a single run."""
    prompt: str
    subject_id: str
    working_dir: Optional[Path] = None
    sink: EventSink = _discard


class _RunState:
    """Per-attempt state shared by the two reader tasks."""

    def __init__(self):
        self.stdout_lines: List[str] = []
        self.auth_failure = False
        self.auth_detail = ""


class ProcessRunner:
    """Validate, spawn, stream and retry one agent CLI."""

    def __init__(self, provider: AgentProvider, config: AgentRunConfig):
        self.provider = provider
        self.config = config
        self.normalizer = LogNormalizer()

    @property
    def display_name(self) -> str:
        return self.provider.display_name

    async def run(self, args: RunArgs) -> str:
        """
        Run the agent, retrying failed attempts.

        Returns:
            The stdout lines joined by newlines

        Raises:
            AgentError: the error of the last attempt
        """
        attempts = max(1, self.config.max_retries)
        attempt = 1
        while True:
            print_info(f"Attempt {attempt}/{attempts} for {args.subject_id}")
            try:
                result = await self._attempt(args)
            except AgentError as e:
                print_warning(f"Attempt {attempt} failed: {e}")
                if not e.retryable or attempt >= attempts:
                    raise
                attempt += 1
                await asyncio.sleep(self.config.retry_delay_seconds)
                continue
            print_info(f"{self.display_name} finished on attempt {attempt}")
            return result

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def resolve_working_dir(self, override: Optional[Path]) -> Optional[Path]:
        """Pick the working directory and check it is usable."""
        working_dir = override or self.config.working_dir
        if working_dir is None:
            return None
        working_dir = Path(working_dir)
        if not working_dir.is_dir() or not os.access(working_dir, os.R_OK | os.X_OK):
            raise DirectoryNotAccessible(working_dir)
        return working_dir

    def resolve_executable(self) -> str:
        """Find the executable, either as a path or on PATH."""
        target = self.config.executable_path
        if os.sep in target or (os.altsep and os.altsep in target):
            if not Path(target).is_file():
                raise ExecutableNotFound(target, self.provider.install_hint)
            return target
        found = shutil.which(target)
        if found is None:
            raise ExecutableNotFound(f"'{target}' not found in PATH", self.provider.install_hint)
        return target

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.config.api_key:
            env[self.provider.api_key_env] = self.config.api_key
        return env

    async def _spawn(
        self,
        argv: Sequence[str],
        cwd: Optional[Path],
        env: Dict[str, str],
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                # New session: the agent and its helpers share one process group
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnFailed(str(e)) from e

    async def _attempt(self, args: RunArgs) -> str:
        working_dir = self.resolve_working_dir(args.working_dir)
        self.resolve_executable()

        argv = self.provider.build_args(self.config, args.prompt)
        if working_dir:
            print_debug(f"Analysis scope: {working_dir}")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.timeout_seconds
        process = await self._spawn(argv, working_dir, self.build_env())

        # Non-interactive agents treat EOF as "no more input"
        if process.stdin is not None:
            process.stdin.close()

        state = _RunState()
        merger = None
        if self.config.output_format.is_streaming:
            merger = DeltaMerger(self.normalizer, args.subject_id)

        stdout_task = asyncio.create_task(self._read_stdout(process, args, state, merger))
        stderr_task = asyncio.create_task(self._read_stderr(process, args, state))
        readers = [stdout_task, stderr_task]

        try:
            exit_code = await self._wait_for_exit(process, deadline)
            if exit_code is None:
                print_error(f"Process timeout after {self.config.timeout_seconds} seconds")
                raise AgentTimeout(self.config.timeout_seconds)

            # Helpers left behind by the agent would keep the pipes open
            self._kill_group(process)
            drain_budget = max(deadline - loop.time(), DRAIN_GRACE_SECONDS)
            done, _ = await asyncio.wait(readers, timeout=drain_budget)
            for task in done:
                task.result()

            if exit_code != 0:
                if state.auth_failure:
                    raise AuthenticationRequired(state.auth_detail)
                raise ProcessFailed(exit_code)

            if not state.stdout_lines:
                print_warning(f"{self.display_name} produced no output")
                return EMPTY_OUTPUT_TEXT
            return "\n".join(state.stdout_lines)
        finally:
            await self._cleanup(process, readers)

    @staticmethod
    async def _wait_for_exit(process: asyncio.subprocess.Process, deadline: float) -> Optional[int]:
        """
        Exit code of the child, or None when the deadline passes first.

        process.wait() only resolves after every holder of the pipes has gone,
        which a background helper can postpone indefinitely. The return code
        is set as soon as the child itself is reaped, so it is polled instead.
        """
        loop = asyncio.get_running_loop()
        while process.returncode is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(EXIT_POLL_INTERVAL, remaining))
        return process.returncode

    @staticmethod
    def _kill_group(process: asyncio.subprocess.Process) -> None:
        """SIGKILL the child's whole process group."""
        if hasattr(os, "killpg"):
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(process.pid, signal.SIGKILL)
        elif process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()

    async def _cleanup(self, process: asyncio.subprocess.Process, readers: List[asyncio.Task]) -> None:
        """Kill whatever the run left alive, reap the child and stop both readers."""
        self._kill_group(process)
        with contextlib.suppress(asyncio.TimeoutError, OSError):
            await asyncio.wait_for(process.wait(), REAP_TIMEOUT_SECONDS)
        for task in readers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)

    async def _read_stdout(
        self,
        process: asyncio.subprocess.Process,
        args: RunArgs,
        state: _RunState,
        merger: Optional[DeltaMerger],
    ) -> None:
        async for line in self._lines(process.stdout):
            print_debug(f"STDOUT: {line}")
            state.stdout_lines.append(line)
            if merger is not None:
                events = merger.feed(line)
            else:
                events = [self.normalizer.normalize(line, args.subject_id)]
            for event in events:
                await args.sink(event)

        if merger is not None:
            leftover = merger.flush()
            if leftover is not None:
                await args.sink(leftover)

    async def _read_stderr(
        self,
        process: asyncio.subprocess.Process,
        args: RunArgs,
        state: _RunState,
    ) -> None:
        async for line in self._lines(process.stderr):
            print_debug(f"STDERR: {line}")
            lowered = line.lower()
            if any(phrase in lowered for phrase in AUTH_FAILURE_PHRASES):
                state.auth_failure = True
                state.auth_detail = line.strip()
            await args.sink(self.normalizer.normalize(f"{STDERR_PREFIX}{line}", args.subject_id))

    @staticmethod
    async def _lines(stream: Optional[asyncio.StreamReader]):
        """Yield decoded lines until EOF, tolerating invalid UTF-8."""
        if stream is None:
            return
        while True:
            chunk = await stream.readline()
            if not chunk:
                break
            yield chunk.decode("utf-8", errors="replace").rstrip("\r\n")
