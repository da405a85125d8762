"""
Log Normalizer
==============

Turns one raw line of agent output into a StructuredEvent.

Two kinds of lines come out of the agent CLIs:

- JSON records (``--output-format json|stream-json``). These are decoded
  against the known provider record shapes and classified by their ``type``
  tag. The content is kept as the raw JSON text so clients can render
  the structure themselves.
- Plain text. These are classified by keyword priority: error indicators
  first, then tool activity, then assistant-style prose, then system noise.

Every line produces exactly one event, including empty lines.
"""

import json
import re
from pathlib import PurePosixPath
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from qaforge.events import EventKind, StructuredEvent


# =============================================================================
# Provider JSON record shapes
# =============================================================================

class _ProviderRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: Optional[Any] = None
    status: Optional[Any] = None
    is_error: Optional[Any] = None

    @property
    def reports_error(self) -> bool:
        return self.error is not None or self.status == "error" or self.is_error is True


class MessageRecord(_ProviderRecord):
    """A chat message, optionally a streaming delta fragment."""
    type: Literal["message"]
    role: Optional[str] = None
    content: Any = None
    delta: bool = False
    timestamp: Optional[str] = None


class ToolUseRecord(_ProviderRecord):
    type: Literal["tool_use"]
    tool_name: Optional[str] = None
    tool_id: Optional[str] = None


class ToolResultRecord(_ProviderRecord):
    type: Literal["tool_result"]
    tool_id: Optional[str] = None


class InitRecord(_ProviderRecord):
    type: Literal["init"]
    session_id: Optional[str] = None
    model: Optional[str] = None


class ErrorRecord(_ProviderRecord):
    type: Literal["error"]


# Claude Code stream-json envelopes
class AssistantRecord(_ProviderRecord):
    type: Literal["assistant"]
    message: Optional[Dict[str, Any]] = None


class UserRecord(_ProviderRecord):
    type: Literal["user"]


class SystemRecord(_ProviderRecord):
    type: Literal["system"]
    subtype: Optional[str] = None


class ResultRecord(_ProviderRecord):
    type: Literal["result"]
    result: Optional[Any] = None


ProviderRecord = Annotated[
    Union[
        MessageRecord,
        ToolUseRecord,
        ToolResultRecord,
        InitRecord,
        ErrorRecord,
        AssistantRecord,
        UserRecord,
        SystemRecord,
        ResultRecord,
    ],
    Field(discriminator="type"),
]

_record_adapter = TypeAdapter(ProviderRecord)

# Copied into metadata verbatim when present on a JSON record
JSON_METADATA_KEYS = ("tool_name", "tool_id", "timestamp", "session_id", "model")


def decode_record(data: Dict[str, Any]) -> Optional[_ProviderRecord]:
    """Decode a JSON object into a known record, or None for unknown shapes."""
    try:
        return _record_adapter.validate_python(data)
    except ValidationError:
        return None


def parse_json_object(line: str) -> Optional[Dict[str, Any]]:
    """Parse a line as a JSON object; scalars, arrays and garbage give None."""
    text = line.strip()
    if not text.startswith("{"):
        return None
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


# =============================================================================
# Plain text patterns
# =============================================================================

_ANSI_RE = re.compile(r"\x1B(?:\[[0-9;?]*[A-Za-z]|\][^\x07\x1B]*(?:\x07|\x1B\\))")
_WHITESPACE_RE = re.compile(r"\s+")

_ERROR_TOKEN_RE = re.compile(r"\b(ERROR|WARNING|WARN|CRITICAL|FATAL)\b:?\s*(.*)")
_ERROR_WORDS_RE = re.compile(r"error|failed|exception", re.IGNORECASE)
_ERROR_PREFIX_RE = re.compile(r"^(?:(?:ERROR|WARNING|WARN):\s*)+")
_ERROR_CODE_RE = re.compile(r"\b(?:ERR|E)[-_]?\d{3,4}\b")

_TOOL_PATTERN_RE = re.compile(r"(?:Using tool|Tool|Executing):\s*(\w+)")
_TOOL_WORDS_RE = re.compile(r"reading file|analyzing|processing|searching|executing", re.IGNORECASE)
_TOOL_PREFIX_RE = re.compile(r"^(?:Using tool:|Tool:|Executing:)\s*")
_FILE_PATH_RE = re.compile(
    r"(?:Reading|Analyzing|Processing|File:)(?:\s+file:?)?\s+([^\s,;'\"()]+\.[A-Za-z0-9]{1,5})"
)
_LINE_NUMBER_RE = re.compile(r"\blines?[\s:]*(\d+)", re.IGNORECASE)

_ASSISTANT_PREFIX_RE = re.compile(r"^(?:analysis|found|result|summary):", re.IGNORECASE)
_ASSISTANT_WORDS_RE = re.compile(r"explanation:|business flow|test case", re.IGNORECASE)
ANALYSIS_TYPES = ("business flow", "test case", "code review", "security", "performance")

_PROGRESS_RE = re.compile(r"(\d+)%")
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|seconds?|minutes?|s|m)\b")
_COMPLETION_RE = re.compile(r"completed|finished|done|success", re.IGNORECASE)
_TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}")


def strip_ansi(text: str) -> str:
    """Remove ANSI color and cursor escape sequences."""
    return _ANSI_RE.sub("", text)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


class LogNormalizer:
    """Classifies raw agent output lines into structured events."""

    def normalize(
        self,
        raw_line: str,
        subject_id: str,
        kind: Optional[EventKind] = None,
    ) -> StructuredEvent:
        """
        Normalize one line.

        Args:
            raw_line: The line as read from the process, without its newline
            subject_id: Subject (ticket) the line belongs to
            kind: Force this classification instead of inferring one

        Returns:
            Exactly one StructuredEvent
        """
        data = parse_json_object(raw_line)
        if data is not None:
            return self._normalize_json(data, raw_line, subject_id, kind)
        return self._normalize_text(raw_line, subject_id, kind)

    # -------------------------------------------------------------------------
    # JSON records
    # -------------------------------------------------------------------------

    def classify_record(self, data: Dict[str, Any]) -> EventKind:
        """Classify a decoded JSON object by its record type."""
        record = decode_record(data)
        if record is None:
            return self._classify_unknown(data)

        if isinstance(record, ToolUseRecord):
            kind = EventKind.TOOL_USE
        elif isinstance(record, ErrorRecord):
            kind = EventKind.ERROR
        elif isinstance(record, AssistantRecord):
            kind = EventKind.ASSISTANT
        elif isinstance(record, MessageRecord) and record.role == "assistant":
            kind = EventKind.ASSISTANT
        else:
            kind = EventKind.SYSTEM

        if kind == EventKind.SYSTEM and record.reports_error:
            return EventKind.ERROR
        return kind

    @staticmethod
    def _classify_unknown(data: Dict[str, Any]) -> EventKind:
        if "error" in data or data.get("status") == "error" or data.get("is_error") is True:
            return EventKind.ERROR
        return EventKind.SYSTEM

    def _normalize_json(
        self,
        data: Dict[str, Any],
        raw_line: str,
        subject_id: str,
        kind: Optional[EventKind],
    ) -> StructuredEvent:
        metadata: Dict[str, str] = {}
        for key in JSON_METADATA_KEYS:
            value = data.get(key)
            if isinstance(value, str):
                metadata[key] = value
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                metadata[key] = str(value)

        text = raw_line.strip()
        return StructuredEvent(
            subject_id=subject_id,
            kind=kind or self.classify_record(data),
            content=text,
            raw=raw_line,
            metadata=metadata,
        )

    # -------------------------------------------------------------------------
    # Plain text
    # -------------------------------------------------------------------------

    def classify_text(self, text: str) -> EventKind:
        """Classify a plain text line; the first matching rule wins."""
        if _ERROR_TOKEN_RE.search(text) or _ERROR_WORDS_RE.search(text):
            return EventKind.ERROR
        if _TOOL_PATTERN_RE.search(text) or _TOOL_WORDS_RE.search(text):
            return EventKind.TOOL_USE
        if _ASSISTANT_PREFIX_RE.match(text) or _ASSISTANT_WORDS_RE.search(text):
            return EventKind.ASSISTANT
        return EventKind.SYSTEM

    def clean_content(self, text: str, kind: EventKind) -> str:
        """Strip escapes, collapse whitespace and drop kind-specific prefixes."""
        content = collapse_whitespace(strip_ansi(text))
        if kind == EventKind.ERROR:
            content = _ERROR_PREFIX_RE.sub("", content).strip()
        elif kind == EventKind.TOOL_USE:
            content = _TOOL_PREFIX_RE.sub("", content).strip()
        return content

    def extract_metadata(self, text: str, kind: EventKind) -> Dict[str, str]:
        """Pull kind-specific fields out of a cleaned line."""
        metadata: Dict[str, str] = {}

        if kind == EventKind.TOOL_USE:
            match = _FILE_PATH_RE.search(text)
            if match:
                file_path = match.group(1)
                metadata["file_path"] = file_path
                suffix = PurePosixPath(file_path).suffix
                if suffix:
                    metadata["file_extension"] = suffix[1:]
            match = _LINE_NUMBER_RE.search(text)
            if match:
                metadata["line_number"] = match.group(1)
            match = _TOOL_PATTERN_RE.search(text)
            if match:
                metadata["tool_name"] = match.group(1)

        elif kind == EventKind.ERROR:
            match = _ERROR_TOKEN_RE.search(text)
            if match:
                metadata["severity"] = match.group(1).lower()
                message = _ERROR_PREFIX_RE.sub("", match.group(2)).strip()
                if message:
                    metadata["error_message"] = message
            match = _ERROR_CODE_RE.search(text)
            if match:
                metadata["error_code"] = match.group(0)

        elif kind == EventKind.ASSISTANT:
            lowered = text.lower()
            for analysis_type in ANALYSIS_TYPES:
                if analysis_type in lowered:
                    metadata["analysis_type"] = analysis_type
                    break

        elif kind == EventKind.SYSTEM:
            match = _PROGRESS_RE.search(text)
            if match:
                metadata["progress"] = match.group(1)
            match = _DURATION_RE.search(text)
            if match:
                metadata["duration"] = match.group(0)

        elif kind == EventKind.RESULT:
            if _COMPLETION_RE.search(text):
                metadata["status"] = "completed"
            match = _DURATION_RE.search(text)
            if match:
                metadata["duration"] = match.group(0)

        match = _TIMESTAMP_RE.search(text)
        if match:
            metadata["log_timestamp"] = match.group(0)

        return metadata

    def _normalize_text(
        self,
        raw_line: str,
        subject_id: str,
        kind: Optional[EventKind],
    ) -> StructuredEvent:
        text = collapse_whitespace(strip_ansi(raw_line))
        if not text:
            return StructuredEvent(
                subject_id=subject_id,
                kind=kind or EventKind.SYSTEM,
                content="",
                raw=raw_line,
            )

        kind = kind or self.classify_text(text)
        return StructuredEvent(
            subject_id=subject_id,
            kind=kind,
            content=self.clean_content(text, kind),
            raw=raw_line,
            metadata=self.extract_metadata(text, kind),
        )
