"""Data models for the ledger store.

Rows are plain dataclasses built from ``sqlite3.Row``. Queue payloads are a
pydantic tagged union keyed by ``message_type`` so the worker decodes each
message into exactly one typed shape.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from session_ledger.constants import SESSION_STATUS_ACTIVE
from session_ledger.exceptions import PayloadError


def _json_list(value: str | None) -> list[str]:
    if not value:
        return []
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        return []
    return [str(item) for item in decoded] if isinstance(decoded, list) else []


@dataclass
class Session:
    """A recorded assistant session.

    ``completed_at`` is set exactly when the status is terminal.
    """

    session_id: str
    project: str
    started_at: str
    started_at_epoch: int
    status: str = SESSION_STATUS_ACTIVE
    completed_at: str | None = None
    completed_at_epoch: int | None = None
    processing_started_at: int | None = None
    id: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SESSION_STATUS_ACTIVE

    @property
    def is_processing(self) -> bool:
        return self.processing_started_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Session":
        """Create from database row."""
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            project=row["project"],
            started_at=row["started_at"],
            started_at_epoch=row["started_at_epoch"],
            status=row["status"],
            completed_at=row["completed_at"],
            completed_at_epoch=row["completed_at_epoch"],
            processing_started_at=row["processing_started_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project": self.project,
            "started_at": self.started_at,
            "started_at_epoch": self.started_at_epoch,
            "status": self.status,
            "completed_at": self.completed_at,
            "completed_at_epoch": self.completed_at_epoch,
            "processing_started_at": self.processing_started_at,
        }


@dataclass
class UserPrompt:
    """A user prompt within a session."""

    session_id: str
    prompt_number: int
    prompt_text: str
    created_at: str
    created_at_epoch: int
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UserPrompt":
        """Create from database row."""
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            prompt_number=row["prompt_number"],
            prompt_text=row["prompt_text"],
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
        )


@dataclass
class ToolUse:
    """A single tool invocation.

    When the output was truncated, ``tool_output_hash`` is the SHA-256 of the
    full (redacted) output.
    """

    session_id: str
    prompt_number: int
    tool_name: str
    tool_input: str
    tool_output: str
    created_at: str
    created_at_epoch: int
    tool_output_truncated: bool = False
    tool_output_hash: str | None = None
    duration_ms: int | None = None
    cwd: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ToolUse":
        """Create from database row."""
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            prompt_number=row["prompt_number"],
            tool_name=row["tool_name"],
            tool_input=row["tool_input"],
            tool_output=row["tool_output"],
            tool_output_truncated=bool(row["tool_output_truncated"]),
            tool_output_hash=row["tool_output_hash"],
            duration_ms=row["duration_ms"],
            cwd=row["cwd"],
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
        )


@dataclass
class FileRead:
    """A file read, identified by its content hash."""

    session_id: str
    file_path: str
    content_hash: str
    created_at: str
    created_at_epoch: int
    content_snippet: str | None = None
    line_count: int | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FileRead":
        """Create from database row."""
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            file_path=row["file_path"],
            content_hash=row["content_hash"],
            content_snippet=row["content_snippet"],
            line_count=row["line_count"],
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
        )


@dataclass
class SessionSummary:
    """End-of-session summary produced by the background worker."""

    session_id: str
    project: str
    request: str | None = None
    investigated: str | None = None
    learned: str | None = None
    completed: str | None = None
    next_steps: str | None = None
    written_to_vault: bool = False
    written_notes: list[str] = field(default_factory=list)
    error_message: str | None = None
    created_at: str | None = None
    created_at_epoch: int | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SessionSummary":
        """Create from database row."""
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            project=row["project"],
            request=row["request"],
            investigated=row["investigated"],
            learned=row["learned"],
            completed=row["completed"],
            next_steps=row["next_steps"],
            written_to_vault=bool(row["written_to_vault"]),
            written_notes=_json_list(row["written_notes"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
        )


@dataclass
class Observation:
    """A structured observation extracted from session activity.

    List fields are stored as JSON arrays.
    """

    session_id: str
    project: str
    type: str
    title: str
    subtitle: str | None = None
    facts: list[str] = field(default_factory=list)
    concepts: list[str] = field(default_factory=list)
    narrative: str | None = None
    files_read: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    discovery_tokens: int | None = None
    created_at: str | None = None
    created_at_epoch: int | None = None
    id: int | None = None

    def to_row(self) -> dict[str, Any]:
        """Convert to database row parameters."""
        return {
            "session_id": self.session_id,
            "project": self.project,
            "type": self.type,
            "title": self.title,
            "subtitle": self.subtitle,
            "facts": json.dumps(self.facts),
            "concepts": json.dumps(self.concepts),
            "narrative": self.narrative,
            "files_read": json.dumps(self.files_read),
            "files_modified": json.dumps(self.files_modified),
            "discovery_tokens": self.discovery_tokens,
            "created_at": self.created_at,
            "created_at_epoch": self.created_at_epoch,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Observation":
        """Create from database row."""
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            project=row["project"],
            type=row["type"],
            title=row["title"],
            subtitle=row["subtitle"],
            facts=_json_list(row["facts"]),
            concepts=_json_list(row["concepts"]),
            narrative=row["narrative"],
            files_read=_json_list(row["files_read"]),
            files_modified=_json_list(row["files_modified"]),
            discovery_tokens=row["discovery_tokens"],
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
        )


# =============================================================================
# Queue payloads
# =============================================================================


class ToolUsePayload(BaseModel):
    """A tool invocation waiting to be analyzed."""

    message_type: Literal["tool_use"] = "tool_use"
    tool_name: str
    tool_input: str
    tool_output: str
    duration_ms: int | None = None
    cwd: str | None = None
    created_at_epoch: int


class PromptPayload(BaseModel):
    """A user prompt that sets context for subsequent tool uses."""

    message_type: Literal["prompt"] = "prompt"
    prompt_text: str
    prompt_number: int = Field(ge=1)


class SummaryRequestPayload(BaseModel):
    """Request to summarize the session once its activity is processed."""

    message_type: Literal["summary_request"] = "summary_request"
    last_assistant_message: str | None = None


MessagePayload = Annotated[
    ToolUsePayload | PromptPayload | SummaryRequestPayload,
    Field(discriminator="message_type"),
]

_payload_adapter: TypeAdapter[MessagePayload] = TypeAdapter(MessagePayload)


def encode_payload(payload: ToolUsePayload | PromptPayload | SummaryRequestPayload) -> str:
    """Serialize a payload body; the type lives in its own column."""
    return payload.model_dump_json(exclude={"message_type"})


@dataclass
class PendingMessage:
    """A queued unit of work for the background worker.

    ``claimed_at_epoch`` is set while a worker holds the message.
    """

    session_id: str
    message_type: str
    payload: str
    created_at: str
    created_at_epoch: int
    claimed_at: str | None = None
    claimed_at_epoch: int | None = None
    id: int | None = None

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at_epoch is not None

    def parse_payload(self) -> ToolUsePayload | PromptPayload | SummaryRequestPayload:
        """Decode the payload into its typed shape.

        Raises:
            PayloadError: If the payload is not valid JSON or does not match
                the shape for its message type.
        """
        try:
            body = json.loads(self.payload)
        except json.JSONDecodeError as e:
            raise PayloadError(
                f"Payload is not valid JSON: {e}",
                message_type=self.message_type,
                message_id=self.id,
            ) from e
        if not isinstance(body, dict):
            raise PayloadError(
                "Payload must be a JSON object",
                message_type=self.message_type,
                message_id=self.id,
            )
        try:
            return _payload_adapter.validate_python({**body, "message_type": self.message_type})
        except PydanticValidationError as e:
            raise PayloadError(
                f"Payload does not match {self.message_type}: {e.error_count()} error(s)",
                message_type=self.message_type,
                message_id=self.id,
            ) from e

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PendingMessage":
        """Create from database row."""
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            message_type=row["message_type"],
            payload=row["payload"],
            created_at=row["created_at"],
            created_at_epoch=row["created_at_epoch"],
            claimed_at=row["claimed_at"],
            claimed_at_epoch=row["claimed_at_epoch"],
        )
