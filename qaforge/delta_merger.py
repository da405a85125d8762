"""
Delta Merger
============

Streaming providers emit an assistant reply as a run of ``delta: true``
fragments closed by a final fragment. The merger holds the fragments back and
emits a single Assistant event carrying the whole reply.

One merger lives for exactly one process run.
"""

import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, List, Optional

from qaforge.events import EventKind, StructuredEvent
from qaforge.normalizer import LogNormalizer, parse_json_object


def _fragment_text(content: Any) -> str:
    """Text of a fragment; content is a string or a list of text parts."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return str(content)


class DeltaMerger:
    """Coalesces assistant delta fragments into one event per message."""

    def __init__(self, normalizer: LogNormalizer, subject_id: str):
        self.normalizer = normalizer
        self.subject_id = subject_id
        self._buffer: List[str] = []
        self._last_timestamp: Optional[str] = None
        self._pending = False

    @property
    def has_pending(self) -> bool:
        """Whether delta content is buffered and not yet emitted."""
        return self._pending

    def feed(self, line: str) -> List[StructuredEvent]:
        """
        Feed one stdout line.

        Returns the events ready for emission: none while a delta fragment is
        being buffered, one otherwise.
        """
        data = parse_json_object(line)
        if data is None or not self._is_assistant_message(data):
            return [self.normalizer.normalize(line, self.subject_id)]

        if data.get("delta") is True:
            timestamp = data.get("timestamp")
            if isinstance(timestamp, str):
                self._last_timestamp = timestamp
            self._buffer.append(_fragment_text(data.get("content")))
            self._pending = True
            return []

        if not self._pending:
            return [self.normalizer.normalize(line, self.subject_id)]

        self._buffer.append(_fragment_text(data.get("content")))
        return [self._emit()]

    def flush(self) -> Optional[StructuredEvent]:
        """Emit whatever is still buffered when the stream ends."""
        if not self._pending:
            return None
        return self._emit()

    @staticmethod
    def _is_assistant_message(data: dict) -> bool:
        return data.get("type") == "message" and data.get("role") == "assistant"

    def _emit(self) -> StructuredEvent:
        text = "".join(self._buffer)
        timestamp = self._last_timestamp or datetime.now(timezone.utc).isoformat()
        merged = json.dumps({
            "type": "message",
            "role": "assistant",
            "content": text,
            "timestamp": timestamp,
        })

        self._buffer = []
        self._last_timestamp = None
        self._pending = False

        event = self.normalizer.normalize(merged, self.subject_id, kind=EventKind.ASSISTANT)
        return replace(event, content=text)
