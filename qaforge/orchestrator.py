"""
Analysis Orchestrator
=====================

Drives one analysis per ticket through its lifecycle:

    Idle -> Starting -> Running -> Completed | Failed | Cancelled

Starting makes sure the ticket exists (a placeholder is created when the
request races ahead of ticket creation). Running opens a session, raises the
ticket's analyzing flag and registers the task so it can be stopped. Every
exit path finalizes the session and clears the flag.

A failed analysis is not an exception for the caller: analyze() returns a
response with ``success=False`` and the failure is also published as an
Error event.
"""

import asyncio
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from qaforge.agents.runner import ProcessRunner, RunArgs
from qaforge.db.models import Ticket
from qaforge.db.repository import Database
from qaforge.events import EventKind
from qaforge.message_store import MessageStore
from qaforge.normalizer import LogNormalizer
from qaforge.output import print_error, print_info, print_success, print_warning

DEFAULT_CANCEL_REASON = "Cancelled by user"
PLACEHOLDER_TITLE = "Auto-created"
NOT_ANALYZING_MESSAGE = "Ticket is not being analyzed"
STOPPED_MESSAGE = "Analysis stopped successfully"
COMPLETED_MESSAGE = "Analysis completed successfully"
ALREADY_RUNNING_MESSAGE = "Analysis is already running for this ticket"
STOPPING_MESSAGE = "Previous analysis is still stopping"

MODES = ("plan", "ask", "edit")
DEFAULT_MODE = "ask"

_MODE_INSTRUCTIONS = {
    "plan": (
        "IMPORTANT: You are in PLAN mode. Your task is to produce a DETAILED PLAN "
        "for implementing this request. Do NOT implement any code yet. The plan "
        "should cover:\n"
        "1. Requirements analysis\n"
        "2. Implementation steps\n"
        "3. Files/modules to modify\n"
        "4. Risks and considerations\n"
        "5. Testing strategy\n"
        "\n"
        "Write the plan in markdown, detailed and easy to follow."
    ),
    "edit": (
        "IMPORTANT: You are in EDIT mode. Your task is to IMPLEMENT/MODIFY CODE "
        "to fulfil this request. Create or modify the files that are needed."
    ),
    "ask": (
        "IMPORTANT: You are in ASK mode. Your task is to ANSWER questions about "
        "the source code. Do NOT modify or implement code. Only explain and analyze."
    ),
}


def shape_prompt(question: str, mode: Optional[str]) -> str:
    """Append the instructions of a mode; unknown modes behave as ask."""
    instructions = _MODE_INSTRUCTIONS.get((mode or DEFAULT_MODE).lower(), _MODE_INSTRUCTIONS[DEFAULT_MODE])
    return f"{question}\n\n{instructions}"


def build_analysis_prompt(code_context: Optional[str], question: str) -> str:
    """Wrap the question in the instruction sent to the agent CLI."""
    if code_context:
        return (
            f"Analyze the code in {code_context} to help QA understand the business flow. "
            f"Question: {question}"
        )
    return f"Analyze the code to help QA understand the business flow. Question: {question}"


# =============================================================================
# Requests and responses
# =============================================================================

@dataclass
class AnalysisRequest:
    """What the transport hands to the orchestrator."""
    subject_id: str
    question: str
    mode: str = DEFAULT_MODE
    project_id: Optional[str] = None
    code_context: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisRequest":
        """Build from a WebSocket or REST payload (camelCase or snake_case)."""
        def pick(*keys, default=None):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return default

        return cls(
            subject_id=str(pick("subject_id", "ticket_id", "ticketId", default="")),
            question=str(pick("question", default="")),
            mode=str(pick("mode", default=DEFAULT_MODE)),
            project_id=pick("project_id", "projectId"),
            code_context=str(pick("code_context", "codeContext", default="")),
        )


@dataclass
class AnalysisResponse:
    subject_id: str
    result: str
    success: bool
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.subject_id,
            "result": self.result,
            "success": self.success,
            "session_id": self.session_id,
        }


@dataclass
class AnalysisAccepted:
    subject_id: str
    accepted: bool
    message: str

    def to_dict(self) -> dict:
        return {"ticket_id": self.subject_id, "accepted": self.accepted, "message": self.message}


@dataclass
class StopResult:
    stopped: bool
    message: str

    def to_dict(self) -> dict:
        return {"success": self.stopped, "stopped": self.stopped, "message": self.message}


# =============================================================================
# Running task registry
# =============================================================================

@dataclass
class TaskHandle:
    """Cancellation handle of one in-flight analysis task."""
    task: asyncio.Task
    reason: str = DEFAULT_CANCEL_REASON
    stopping: bool = False

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        self.reason = reason
        self.stopping = True
        self.task.cancel()


class RunningTaskRegistry:
    """
    Ticket id to task handle map. At most one handle per ticket; absence
    means the ticket is not being analyzed.
    """

    def __init__(self):
        self._handles: Dict[str, TaskHandle] = {}
        self._lock = threading.Lock()

    def try_insert(self, subject_id: str, handle: TaskHandle) -> bool:
        """Insert unless another task already holds the ticket."""
        with self._lock:
            if subject_id in self._handles:
                return False
            self._handles[subject_id] = handle
            return True

    def register(self, subject_id: str, task: asyncio.Task) -> TaskHandle:
        """Return the handle of ``task``, inserting it when absent."""
        with self._lock:
            handle = self._handles.get(subject_id)
            if handle is None:
                handle = TaskHandle(task)
                self._handles[subject_id] = handle
            return handle

    def get(self, subject_id: str) -> Optional[TaskHandle]:
        with self._lock:
            return self._handles.get(subject_id)

    def discard(self, subject_id: str, task: asyncio.Task) -> None:
        """Remove the entry only while it still belongs to ``task``."""
        with self._lock:
            handle = self._handles.get(subject_id)
            if handle is not None and handle.task is task:
                del self._handles[subject_id]

    def subject_ids(self) -> List[str]:
        with self._lock:
            return list(self._handles)

    def __contains__(self, subject_id: str) -> bool:
        with self._lock:
            return subject_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


# =============================================================================
# Orchestrator
# =============================================================================

class AnalysisOrchestrator:
    """Ties the agent runner, the message store and the database together."""

    def __init__(
        self,
        database: Database,
        message_store: MessageStore,
        agent: ProcessRunner,
        registry: Optional[RunningTaskRegistry] = None,
    ):
        self.database = database
        self.message_store = message_store
        self.agent = agent
        self.registry = registry if registry is not None else RunningTaskRegistry()
        self.normalizer = LogNormalizer()

    async def start_analysis(self, request: AnalysisRequest) -> AnalysisAccepted:
        """Schedule analyze() in the background; one run per ticket."""
        subject_id = request.subject_id
        existing = self.registry.get(subject_id)
        if existing is not None:
            return AnalysisAccepted(subject_id, False, self._busy_message(existing))

        task = asyncio.create_task(self.analyze(request), name=f"analysis-{subject_id}")
        if not self.registry.try_insert(subject_id, TaskHandle(task)):
            task.cancel()
            return AnalysisAccepted(subject_id, False, ALREADY_RUNNING_MESSAGE)
        task.add_done_callback(self._on_task_done)

        print_info(f"Analysis scheduled for ticket {subject_id}")
        return AnalysisAccepted(subject_id, True, "Analysis started")

    async def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        """Run one analysis to a terminal state."""
        subject_id = request.subject_id
        current = asyncio.current_task()
        existing = self.registry.get(subject_id)
        if existing is not None and existing.task is not current:
            return AnalysisResponse(subject_id, self._busy_message(existing), False)

        session_id: Optional[str] = None
        handle: Optional[TaskHandle] = existing
        try:
            try:
                ticket = await self._get_or_create_ticket(request)
                project_id = request.project_id or ticket.project_id

                session_id = await self.database.create_session(subject_id)
                await self.database.update_subject_flag(subject_id, True)
                self._emit(subject_id, f"Starting {self.agent.display_name}...", EventKind.SYSTEM)
                handle = self.registry.register(subject_id, current)

                working_dir = await self._resolve_scope(project_id)
                prompt = build_analysis_prompt(request.code_context, shape_prompt(request.question, request.mode))

                output = await self.agent.run(RunArgs(
                    prompt=prompt,
                    subject_id=subject_id,
                    working_dir=working_dir,
                    sink=self.message_store.push,
                ))
                await self.database.update_subject_result(subject_id, output)
                await self.database.complete_session(session_id, "Success")
            except Exception as e:
                return await self._fail(subject_id, session_id, e)

            self._emit(subject_id, COMPLETED_MESSAGE, EventKind.RESULT)
            print_success(f"Analysis completed for ticket {subject_id}")
            return AnalysisResponse(subject_id, output, True, session_id)

        except asyncio.CancelledError:
            reason = handle.reason if handle is not None else DEFAULT_CANCEL_REASON
            print_warning(f"Analysis for ticket {subject_id} cancelled: {reason}")
            try:
                if session_id is not None:
                    await self.database.cancel_session(session_id, reason)
                await self.database.update_subject_flag(subject_id, False)
            except SQLAlchemyError as e:
                print_error(f"Could not record cancellation for ticket {subject_id}: {e}")
            self._emit(subject_id, f"Analysis stopped: {reason}", EventKind.SYSTEM)
            raise

        finally:
            if current is not None:
                self.registry.discard(subject_id, current)

    async def stop_analysis(self, subject_id: str, reason: str = DEFAULT_CANCEL_REASON) -> StopResult:
        """
        Cancel the running analysis of a ticket and wait for it to unwind.

        The ticket stays registered until the task has finished its own
        cleanup, so a new run cannot start while the old one is finalizing.
        """
        handle = self.registry.get(subject_id)
        if handle is None or handle.task.done():
            print_warning(f"Ticket {subject_id} is not currently being analyzed")
            return StopResult(False, NOT_ANALYZING_MESSAGE)

        if not handle.stopping:
            handle.cancel(reason)
        await asyncio.wait([handle.task])
        # A task cancelled before its first step never reaches its finally
        self.registry.discard(subject_id, handle.task)
        print_info(f"Stopped analysis for ticket {subject_id}")
        return StopResult(True, STOPPED_MESSAGE)

    def is_running(self, subject_id: str) -> bool:
        return subject_id in self.registry

    async def shutdown(self) -> None:
        """Stop every running analysis."""
        for subject_id in self.registry.subject_ids():
            await self.stop_analysis(subject_id, "Server shutting down")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _busy_message(handle: TaskHandle) -> str:
        return STOPPING_MESSAGE if handle.stopping else ALREADY_RUNNING_MESSAGE

    async def _get_or_create_ticket(self, request: AnalysisRequest) -> Ticket:
        subject_id = request.subject_id
        ticket = await self.database.get_subject(subject_id)
        if ticket is not None:
            return ticket

        print_info(f"Ticket {subject_id} does not exist yet, creating a placeholder")
        try:
            return await self.database.create_subject(
                PLACEHOLDER_TITLE,
                subject_id=subject_id,
                project_id=request.project_id,
                description=request.question,
                status="in-progress",
                code_context=request.code_context,
                mode=request.mode,
                is_analyzing=True,
            )
        except IntegrityError:
            # Created concurrently by the REST layer
            ticket = await self.database.get_subject(subject_id)
            if ticket is None:
                raise
            return ticket

    async def _fail(self, subject_id: str, session_id: Optional[str], error: Exception) -> AnalysisResponse:
        """Report a failed run; storage errors while doing so are only logged."""
        print_error(f"Analysis failed for ticket {subject_id}: {error}")
        self._emit(subject_id, f"Error: {error}", EventKind.ERROR)
        if session_id is not None:
            try:
                await self.database.fail_session(session_id, str(error))
            except SQLAlchemyError as e:
                print_error(f"Could not mark session {session_id} as failed: {e}")
        try:
            await self.database.update_subject_flag(subject_id, False)
        except SQLAlchemyError as e:
            print_error(f"Could not clear the analyzing flag of ticket {subject_id}: {e}")
        return AnalysisResponse(subject_id, f"Analysis failed: {error}", False, session_id)

    async def _resolve_scope(self, project_id: Optional[str]) -> Optional[Path]:
        if not project_id:
            return None
        project = await self.database.get_project(project_id)
        if project is None:
            print_warning(f"Project {project_id} not found, using the default working directory")
            return None
        print_info(f"Working directory: {project.directory_path}")
        return Path(project.directory_path)

    def _emit(self, subject_id: str, text: str, kind: EventKind) -> None:
        self.message_store.publish(self.normalizer.normalize(text, subject_id, kind=kind))

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            print_error(f"Analysis task {task.get_name()} crashed: {exc}")
