"""
Database Repository
===================

Async data access for projects, tickets, analysis sessions and structured
logs. Everything the pipeline and the REST layer persist goes through the
Database class below.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qaforge.db.connection import get_session_maker
from qaforge.db.models import AnalysisSession, Project, StructuredLog, Ticket
from qaforge.events import StructuredEvent

DEFAULT_LOG_LIMIT = 100
MAX_LOG_LIMIT = 1000

SESSION_RUNNING = "running"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"
SESSION_CANCELLED = "cancelled"

TICKET_STATUSES = ("todo", "in-progress", "done")


def clamp_limit(limit: Optional[int]) -> int:
    """Clamp a page size to [1, 1000], defaulting to 100."""
    if limit is None:
        return DEFAULT_LOG_LIMIT
    return max(1, min(MAX_LOG_LIMIT, int(limit)))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """Durable storage used by the message store, orchestrator and API."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_session_maker()

    # =========================================================================
    # Projects
    # =========================================================================

    async def create_project(self, name: str, directory_path: str, description: Optional[str] = None) -> Project:
        async with self.session_maker() as session:
            project = Project(name=name, directory_path=directory_path, description=description)
            session.add(project)
            await session.commit()
            await session.refresh(project)
            return project

    async def get_project(self, project_id: str) -> Optional[Project]:
        async with self.session_maker() as session:
            return await session.get(Project, project_id)

    async def list_projects(self) -> List[Project]:
        async with self.session_maker() as session:
            result = await session.execute(select(Project).order_by(Project.created_at.desc()))
            return list(result.scalars().all())

    async def update_project(self, project_id: str, **fields) -> Optional[Project]:
        """Update the given project columns; returns None when missing."""
        async with self.session_maker() as session:
            project = await session.get(Project, project_id)
            if project is None:
                return None
            for key in ("name", "description", "directory_path"):
                if key in fields and fields[key] is not None:
                    setattr(project, key, fields[key])
            project.updated_at = _now()
            await session.commit()
            await session.refresh(project)
            return project

    async def delete_project(self, project_id: str) -> bool:
        async with self.session_maker() as session:
            project = await session.get(Project, project_id)
            if project is None:
                return False
            await session.delete(project)
            await session.commit()
            return True

    # =========================================================================
    # Tickets (analysis subjects)
    # =========================================================================

    async def get_subject(self, subject_id: str) -> Optional[Ticket]:
        async with self.session_maker() as session:
            return await session.get(Ticket, subject_id)

    async def create_subject(
        self,
        title: str,
        *,
        subject_id: Optional[str] = None,
        project_id: Optional[str] = None,
        description: str = "",
        status: str = "todo",
        code_context: Optional[str] = None,
        mode: str = "ask",
        is_analyzing: bool = False,
    ) -> Ticket:
        async with self.session_maker() as session:
            ticket = Ticket(
                title=title,
                project_id=project_id or None,
                description=description,
                status=status,
                code_context=code_context,
                mode=mode,
                is_analyzing=is_analyzing,
            )
            if subject_id:
                ticket.id = subject_id
            session.add(ticket)
            await session.commit()
            await session.refresh(ticket)
            return ticket

    async def list_tickets_by_project(self, project_id: str) -> List[Ticket]:
        async with self.session_maker() as session:
            stmt = select(Ticket).where(Ticket.project_id == project_id).order_by(Ticket.created_at.asc())
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_ticket_status(self, subject_id: str, status: str) -> bool:
        """Move a ticket between board columns."""
        if status not in TICKET_STATUSES:
            raise ValueError(f"Invalid ticket status: {status}")
        return await self._update_ticket(subject_id, status=status)

    async def update_subject_result(self, subject_id: str, text: str) -> bool:
        """Store the analysis result and clear the analyzing flag."""
        return await self._update_ticket(subject_id, analysis_result=text, is_analyzing=False)

    async def update_subject_flag(self, subject_id: str, is_analyzing: bool) -> bool:
        return await self._update_ticket(subject_id, is_analyzing=is_analyzing)

    async def _update_ticket(self, subject_id: str, **values) -> bool:
        async with self.session_maker() as session:
            stmt = update(Ticket).where(Ticket.id == subject_id).values(updated_at=_now(), **values)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    # =========================================================================
    # Analysis sessions
    # =========================================================================

    async def create_session(self, subject_id: str) -> str:
        async with self.session_maker() as session:
            record = AnalysisSession(ticket_id=subject_id, status=SESSION_RUNNING, started_at=_now())
            session.add(record)
            await session.commit()
            return record.id

    async def get_session(self, session_id: str) -> Optional[AnalysisSession]:
        async with self.session_maker() as session:
            return await session.get(AnalysisSession, session_id)

    async def get_active_session(self, subject_id: str) -> Optional[AnalysisSession]:
        """Most recent running session for a subject, if any."""
        async with self.session_maker() as session:
            stmt = (
                select(AnalysisSession)
                .where(AnalysisSession.ticket_id == subject_id)
                .where(AnalysisSession.status == SESSION_RUNNING)
                .order_by(AnalysisSession.started_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_sessions(self, subject_id: str) -> List[AnalysisSession]:
        async with self.session_maker() as session:
            stmt = (
                select(AnalysisSession)
                .where(AnalysisSession.ticket_id == subject_id)
                .order_by(AnalysisSession.started_at.asc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def complete_session(self, session_id: str, note: str = "") -> bool:
        return await self._finish_session(session_id, SESSION_COMPLETED, None)

    async def fail_session(self, session_id: str, error_text: str) -> bool:
        return await self._finish_session(session_id, SESSION_FAILED, error_text)

    async def cancel_session(self, session_id: str, reason: str) -> bool:
        return await self._finish_session(session_id, SESSION_CANCELLED, reason)

    async def _finish_session(self, session_id: str, status: str, message: Optional[str]) -> bool:
        """Move a running session to a terminal state; terminal rows stay untouched."""
        async with self.session_maker() as session:
            stmt = (
                update(AnalysisSession)
                .where(AnalysisSession.id == session_id)
                .where(AnalysisSession.status == SESSION_RUNNING)
                .values(status=status, completed_at=_now(), error_message=message)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    # =========================================================================
    # Structured logs
    # =========================================================================

    async def save_event(self, event: StructuredEvent) -> None:
        await self.save_events_batch([event])

    async def save_events_batch(self, events: Iterable[StructuredEvent]) -> None:
        """Insert events in one transaction, preserving the given order."""
        records = [event.to_record() for event in events]
        if not records:
            return
        async with self.session_maker() as session:
            session.add_all(records)
            await session.commit()

    async def query_events(
        self,
        subject_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[StructuredEvent]:
        """Events of a subject in publish order. No limit returns them all."""
        async with self.session_maker() as session:
            stmt = (
                select(StructuredLog)
                .where(StructuredLog.ticket_id == subject_id)
                .order_by(StructuredLog.seq.asc())
            )
            if limit is not None:
                stmt = stmt.limit(clamp_limit(limit))
            if offset:
                stmt = stmt.offset(max(0, int(offset)))
            result = await session.execute(stmt)
            return [StructuredEvent.from_record(row) for row in result.scalars().all()]

    async def count_events(self, subject_id: str) -> int:
        async with self.session_maker() as session:
            stmt = select(func.count()).select_from(StructuredLog).where(StructuredLog.ticket_id == subject_id)
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def clear_events(self, subject_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(delete(StructuredLog).where(StructuredLog.ticket_id == subject_id))
            await session.commit()
            return result.rowcount
