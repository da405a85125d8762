"""
Structured Events
=================

The unit that flows through the execution pipeline: one normalized line of
agent output (or one synthesized message) attributed to a subject.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from qaforge.db.models import StructuredLog


class EventKind(Enum):
    """Mutually exclusive classification of a structured event."""
    TOOL_USE = "tool_use"
    ASSISTANT = "assistant"
    ERROR = "error"
    SYSTEM = "system"
    RESULT = "result"

    @classmethod
    def parse(cls, value: str) -> "EventKind":
        """Parse a stored kind, treating unknown values as system."""
        try:
            return cls(value)
        except ValueError:
            return cls.SYSTEM


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StructuredEvent:
    """A single normalized event."""
    subject_id: str
    kind: EventKind
    content: str
    raw: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "kind": self.kind.value,
            "content": self.content,
            "raw": self.raw,
            "metadata": dict(self.metadata),
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StructuredEvent":
        """Create a StructuredEvent from a dictionary."""
        occurred_at = data.get("occurred_at")
        if isinstance(occurred_at, str):
            occurred_at = datetime.fromisoformat(occurred_at)
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            subject_id=data["subject_id"],
            kind=EventKind.parse(data.get("kind", "system")),
            content=data.get("content", ""),
            raw=data.get("raw"),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            occurred_at=_as_utc(occurred_at) if occurred_at else _utc_now(),
        )

    def to_record(self) -> StructuredLog:
        """Build the ORM row persisted for this event."""
        return StructuredLog(
            id=self.id,
            ticket_id=self.subject_id,
            message_type=self.kind.value,
            content=self.content,
            raw_log=self.raw,
            log_metadata=dict(self.metadata) or None,
            timestamp=self.occurred_at,
        )

    @classmethod
    def from_record(cls, record: StructuredLog) -> "StructuredEvent":
        """Rebuild an event from a persisted row."""
        return cls(
            id=record.id,
            subject_id=record.ticket_id,
            kind=EventKind.parse(record.message_type),
            content=record.content,
            raw=record.raw_log,
            metadata=dict(record.log_metadata or {}),
            occurred_at=_as_utc(record.timestamp),
        )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


EventSink = Callable[[StructuredEvent], Awaitable[None]]
