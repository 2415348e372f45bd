"""Completion markers.

When a background worker finishes a session it leaves
``{config_dir}/completed/{session_id}.marker`` so that other tools can tell a
session was fully processed without opening the database.
"""

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from session_ledger.constants import MARKER_FILE_SUFFIX, PRIVATE_DIR_MODE, PRIVATE_FILE_MODE
from session_ledger.utils.redact import sanitize_session_id
from session_ledger.utils.timestamps import now_iso

logger = logging.getLogger(__name__)


class CompletionMarker(BaseModel):
    """Contents of a completion marker file."""

    completed_at: str
    written_notes: list[str] = Field(default_factory=list)
    success: bool
    error_message: str | None = None


def marker_path(completed_dir: Path, session_id: str) -> Path:
    """Path of the completion marker for a session."""
    return completed_dir / f"{sanitize_session_id(session_id)}{MARKER_FILE_SUFFIX}"


def write_completion_marker(
    completed_dir: Path,
    session_id: str,
    success: bool,
    written_notes: list[str] | None = None,
    error_message: str | None = None,
) -> Path:
    """Write (or replace) the completion marker for a session.

    Args:
        completed_dir: Directory holding completion markers.
        session_id: Session that finished.
        success: Whether processing succeeded.
        written_notes: Identifiers of notes produced for the session.
        error_message: Failure description when ``success`` is False.

    Returns:
        Path of the marker file.
    """
    completed_dir.mkdir(parents=True, mode=PRIVATE_DIR_MODE, exist_ok=True)
    marker = CompletionMarker(
        completed_at=now_iso(),
        written_notes=written_notes or [],
        success=success,
        error_message=error_message,
    )
    path = marker_path(completed_dir, session_id)
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    fd = os.open(tmp_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, PRIVATE_FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(marker.model_dump_json(indent=2, exclude_none=True))
    os.replace(tmp_path, path)
    logger.debug(f"Wrote completion marker for {session_id} (success={success})")
    return path


def read_completion_marker(completed_dir: Path, session_id: str) -> CompletionMarker | None:
    """Read a session's completion marker.

    Returns:
        The marker, or None if it is missing or unreadable.
    """
    path = marker_path(completed_dir, session_id)
    try:
        return CompletionMarker.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, PydanticValidationError) as e:
        logger.warning(f"Unreadable completion marker {path}: {e}")
        return None
