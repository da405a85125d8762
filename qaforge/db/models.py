"""
Database Models for QA Forge
============================

SQLAlchemy models for projects, tickets, analysis sessions and the
structured log rows produced by agent runs.
"""

import uuid
from datetime import datetime
from typing import Optional, List, Dict

from sqlalchemy import String, Integer, DateTime, ForeignKey, JSON, Text, Boolean, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class Project(Base):
    """A codebase the QA team asks questions about."""
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Working directory handed to the agent CLI
    directory_path: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    tickets: Mapped[List["Ticket"]] = relationship(back_populates="project", cascade="all, delete-orphan")


class Ticket(Base):
    """The subject of an analysis: one question thread about a project."""
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True
    )
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="todo")  # todo, in-progress, done
    code_context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analysis_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_analyzing: Mapped[bool] = mapped_column(Boolean, default=False)
    mode: Mapped[str] = mapped_column(String(10), default="ask")  # plan, ask, edit
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    project: Mapped[Optional["Project"]] = relationship(back_populates="tickets")


class AnalysisSession(Base):
    """One execution attempt of an analysis for a ticket."""
    __tablename__ = "analysis_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    ticket_id: Mapped[str] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="running")  # running, completed, failed, cancelled
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class StructuredLog(Base):
    """A persisted structured event."""
    __tablename__ = "structured_logs"
    __table_args__ = (
        Index("idx_logs_ticket_seq", "ticket_id", "seq"),
    )

    # Insertion sequence; durable order is publish order
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True)
    ticket_id: Mapped[str] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"))
    message_type: Mapped[str] = mapped_column(String(20))  # tool_use, assistant, error, system, result
    content: Mapped[str] = mapped_column(Text)
    raw_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Renamed to avoid SQLAlchemy reserved name
    log_metadata: Mapped[Optional[Dict[str, str]]] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
