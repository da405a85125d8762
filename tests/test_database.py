"""
Tests for the database repository.
"""

import pytest

from qaforge.db.repository import (
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_RUNNING,
    clamp_limit,
)
from qaforge.events import EventKind, StructuredEvent


class TestTickets:
    """Ticket (subject) persistence."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, database):
        ticket = await database.create_subject("Login flow", subject_id="t-1", description="How does login work?")

        loaded = await database.get_subject("t-1")

        assert ticket.id == "t-1"
        assert loaded.title == "Login flow"
        assert loaded.status == "todo"
        assert loaded.mode == "ask"
        assert loaded.is_analyzing is False

    @pytest.mark.asyncio
    async def test_generated_id(self, database):
        ticket = await database.create_subject("No id")
        assert ticket.id
        assert (await database.get_subject(ticket.id)) is not None

    @pytest.mark.asyncio
    async def test_missing_subject(self, database):
        assert await database.get_subject("nope") is None

    @pytest.mark.asyncio
    async def test_result_clears_flag(self, database):
        await database.create_subject("Q", subject_id="t-1", is_analyzing=True)

        assert await database.update_subject_result("t-1", "the answer")

        ticket = await database.get_subject("t-1")
        assert ticket.analysis_result == "the answer"
        assert ticket.is_analyzing is False

    @pytest.mark.asyncio
    async def test_update_missing_ticket(self, database):
        assert await database.update_subject_flag("nope", True) is False

    @pytest.mark.asyncio
    async def test_status_update(self, database):
        await database.create_subject("Q", subject_id="t-1")

        assert await database.update_ticket_status("t-1", "done")
        assert (await database.get_subject("t-1")).status == "done"

    @pytest.mark.asyncio
    async def test_invalid_status(self, database):
        await database.create_subject("Q", subject_id="t-1")

        with pytest.raises(ValueError):
            await database.update_ticket_status("t-1", "archived")


class TestProjects:
    """Project CRUD."""

    @pytest.mark.asyncio
    async def test_crud(self, database, temp_dir):
        project = await database.create_project("Shop", str(temp_dir), "Checkout service")
        assert (await database.get_project(project.id)).name == "Shop"
        assert [p.id for p in await database.list_projects()] == [project.id]

        updated = await database.update_project(project.id, name="Shop v2", description=None)
        assert updated.name == "Shop v2"
        assert updated.description == "Checkout service"

        assert await database.delete_project(project.id)
        assert await database.get_project(project.id) is None
        assert await database.delete_project(project.id) is False

    @pytest.mark.asyncio
    async def test_update_missing_project(self, database):
        assert await database.update_project("nope", name="x") is None

    @pytest.mark.asyncio
    async def test_tickets_by_project(self, database, temp_dir):
        project = await database.create_project("Shop", str(temp_dir))
        await database.create_subject("A", subject_id="a", project_id=project.id)
        await database.create_subject("B", subject_id="b")

        tickets = await database.list_tickets_by_project(project.id)

        assert [t.id for t in tickets] == ["a"]


class TestSessions:
    """Analysis session lifecycle."""

    @pytest.mark.asyncio
    async def test_complete(self, database):
        await database.create_subject("Q", subject_id="t-1")
        session_id = await database.create_session("t-1")

        running = await database.get_session(session_id)
        assert running.status == SESSION_RUNNING
        assert running.completed_at is None

        assert await database.complete_session(session_id)
        done = await database.get_session(session_id)
        assert done.status == SESSION_COMPLETED
        assert done.completed_at is not None
        assert done.error_message is None

    @pytest.mark.asyncio
    async def test_fail_records_error(self, database):
        await database.create_subject("Q", subject_id="t-1")
        session_id = await database.create_session("t-1")

        assert await database.fail_session(session_id, "Agent timed out after 300 seconds")

        failed = await database.get_session(session_id)
        assert failed.status == SESSION_FAILED
        assert failed.error_message == "Agent timed out after 300 seconds"

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, database):
        await database.create_subject("Q", subject_id="t-1")
        session_id = await database.create_session("t-1")

        assert await database.cancel_session(session_id, "Cancelled by user")
        assert await database.complete_session(session_id) is False
        assert await database.fail_session(session_id, "late failure") is False

        session = await database.get_session(session_id)
        assert session.status == SESSION_CANCELLED
        assert session.error_message == "Cancelled by user"

    @pytest.mark.asyncio
    async def test_active_session(self, database):
        await database.create_subject("Q", subject_id="t-1")
        assert await database.get_active_session("t-1") is None

        session_id = await database.create_session("t-1")
        assert (await database.get_active_session("t-1")).id == session_id

        await database.complete_session(session_id)
        assert await database.get_active_session("t-1") is None
        assert len(await database.list_sessions("t-1")) == 1


class TestEvents:
    """Structured log persistence."""

    @pytest.mark.asyncio
    async def test_batch_order_and_fields(self, database):
        await database.create_subject("Q", subject_id="t-1")
        events = [
            StructuredEvent(subject_id="t-1", kind=EventKind.TOOL_USE, content="read", raw="Reading file: a.py",
                            metadata={"file_path": "a.py"}),
            StructuredEvent(subject_id="t-1", kind=EventKind.ERROR, content="boom"),
            StructuredEvent(subject_id="t-1", kind=EventKind.RESULT, content="done"),
        ]
        await database.save_events_batch(events)

        loaded = await database.query_events("t-1")

        assert [e.id for e in loaded] == [e.id for e in events]
        assert loaded[0].kind == EventKind.TOOL_USE
        assert loaded[0].raw == "Reading file: a.py"
        assert loaded[0].metadata == {"file_path": "a.py"}
        assert loaded[1].metadata == {}
        assert loaded[0].occurred_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_limit_offset_count_clear(self, database):
        await database.create_subject("Q", subject_id="t-1")
        for n in range(10):
            await database.save_event(StructuredEvent(subject_id="t-1", kind=EventKind.SYSTEM, content=str(n)))

        page = await database.query_events("t-1", limit=3, offset=4)
        assert [e.content for e in page] == ["4", "5", "6"]
        assert await database.count_events("t-1") == 10

        assert await database.clear_events("t-1") == 10
        assert await database.count_events("t-1") == 0

    def test_clamp_limit(self):
        assert clamp_limit(None) == 100
        assert clamp_limit(0) == 1
        assert clamp_limit(-5) == 1
        assert clamp_limit(50) == 50
        assert clamp_limit(5000) == 1000
