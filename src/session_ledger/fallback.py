"""JSON fallback storage for when SQLite is unavailable.

One file per session under ``{fallback_dir}/{session_id}.json``. Every
mutation rewrites the whole file; a mutation whose read fails does nothing
rather than overwrite data it could not see. This keeps hooks recording when
the database is corrupt or the disk is full, at the cost of atomicity and
querying.
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from session_ledger.constants import (
    FALLBACK_FILE_SUFFIX,
    FILE_READ_SNIPPET_LENGTH,
    PRIVATE_DIR_MODE,
    PRIVATE_FILE_MODE,
    SESSION_STATUS_ACTIVE,
    SESSION_STATUSES,
)
from session_ledger.store.models import (
    PromptPayload,
    SummaryRequestPayload,
    ToolUsePayload,
)
from session_ledger.utils.redact import redact_sensitive_data, sanitize_session_id
from session_ledger.utils.timestamps import epoch_ms_to_iso, now_epoch_ms

module_logger = logging.getLogger(__name__)


class FallbackSession(BaseModel):
    session_id: str
    project: str
    started_at: str
    started_at_epoch: int
    status: str = SESSION_STATUS_ACTIVE


class FallbackData(BaseModel):
    """Everything recorded for one session while in degraded mode."""

    session: FallbackSession
    prompts: list[dict[str, Any]] = Field(default_factory=list)
    tool_uses: list[dict[str, Any]] = Field(default_factory=list)
    file_reads: list[dict[str, Any]] = Field(default_factory=list)
    pending: list[dict[str, Any]] = Field(default_factory=list)


def _stamp() -> dict[str, Any]:
    epoch = now_epoch_ms()
    return {"created_at": epoch_ms_to_iso(epoch), "created_at_epoch": epoch}


class FallbackStore:
    """Degraded-mode session storage in plain JSON files."""

    def __init__(self, fallback_dir: Path, logger: logging.Logger | None = None):
        """Initialize the fallback store.

        Args:
            fallback_dir: Directory holding one JSON file per session.
            logger: Logger for diagnostics. Defaults to the module logger.
        """
        self.fallback_dir = fallback_dir
        self.logger = logger or module_logger

    def session_path(self, session_id: str) -> Path:
        """Path of the JSON file for a session."""
        return self.fallback_dir / f"{sanitize_session_id(session_id)}{FALLBACK_FILE_SUFFIX}"

    def session_exists(self, session_id: str) -> bool:
        return self.session_path(session_id).exists()

    def _write(self, session_id: str, data: FallbackData) -> bool:
        path = self.session_path(session_id)
        try:
            self.fallback_dir.mkdir(parents=True, mode=PRIVATE_DIR_MODE, exist_ok=True)
            fd = os.open(path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, PRIVATE_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data.model_dump_json(indent=2))
            return True
        except OSError as e:
            self.logger.error(f"Failed to write fallback session {path}: {e}")
            return False

    def init_session(self, session_id: str, project: str) -> bool:
        """Create the session file. An existing file is left untouched.

        Returns:
            True if the session file exists afterwards.
        """
        if self.session_exists(session_id):
            return True
        epoch = now_epoch_ms()
        data = FallbackData(
            session=FallbackSession(
                session_id=session_id,
                project=project,
                started_at=epoch_ms_to_iso(epoch),
                started_at_epoch=epoch,
            )
        )
        if not self._write(session_id, data):
            return False
        self.logger.warning(f"Recording session {session_id} in fallback storage")
        return True

    def read_session(self, session_id: str) -> FallbackData | None:
        """Read a session's fallback data.

        Returns:
            The data, or None if the file is missing or unreadable.
        """
        path = self.session_path(session_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.error(f"Failed to read fallback session {path}: {e}")
            return None
        try:
            return FallbackData.model_validate(json.loads(content))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            self.logger.error(f"Corrupt fallback session {path}: {e}")
            return None

    def _append(self, session_id: str, collection: str, entry: dict[str, Any]) -> bool:
        data = self.read_session(session_id)
        if data is None:
            return False
        getattr(data, collection).append(entry)
        return self._write(session_id, data)

    def add_prompt(self, session_id: str, prompt_number: int, prompt_text: str) -> bool:
        """Append a user prompt (redacted)."""
        return self._append(
            session_id,
            "prompts",
            {
                "session_id": session_id,
                "prompt_number": prompt_number,
                "prompt_text": redact_sensitive_data(prompt_text),
                **_stamp(),
            },
        )

    def add_tool_use(
        self,
        session_id: str,
        prompt_number: int,
        tool_name: str,
        tool_input: str,
        tool_output: str,
        duration_ms: int | None = None,
        cwd: str | None = None,
    ) -> bool:
        """Append a tool use (redacted, not truncated)."""
        return self._append(
            session_id,
            "tool_uses",
            {
                "session_id": session_id,
                "prompt_number": prompt_number,
                "tool_name": tool_name,
                "tool_input": redact_sensitive_data(tool_input),
                "tool_output": redact_sensitive_data(tool_output),
                "tool_output_truncated": False,
                "tool_output_hash": None,
                "duration_ms": duration_ms,
                "cwd": cwd,
                **_stamp(),
            },
        )

    def add_file_read(self, session_id: str, file_path: str, content: str) -> bool:
        """Append a file read with its content hash and snippet."""
        return self._append(
            session_id,
            "file_reads",
            {
                "session_id": session_id,
                "file_path": file_path,
                "content_hash": hashlib.sha256(content.encode("utf-8")).hexdigest(),
                "content_snippet": redact_sensitive_data(content[:FILE_READ_SNIPPET_LENGTH]),
                "line_count": content.count("\n") + 1,
                **_stamp(),
            },
        )

    def enqueue_message(
        self,
        session_id: str,
        payload: ToolUsePayload | PromptPayload | SummaryRequestPayload,
    ) -> bool:
        """Append a queue message so it can be replayed once storage recovers."""
        return self._append(
            session_id,
            "pending",
            {
                "session_id": session_id,
                "message_type": payload.message_type,
                "payload": payload.model_dump(exclude={"message_type"}),
                **_stamp(),
            },
        )

    def update_session_status(self, session_id: str, status: str) -> bool:
        """Set the session status.

        Raises:
            ValueError: If ``status`` is not a known session status.
        """
        if status not in SESSION_STATUSES:
            raise ValueError(f"Invalid session status: {status}")
        data = self.read_session(session_id)
        if data is None:
            return False
        data.session.status = status
        return self._write(session_id, data)
