"""Activity operations for the ledger store.

Functions for recording what happened inside a session (user prompts, tool
invocations, file reads) and for full-text search over them.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING

from session_ledger.constants import FILE_READ_SNIPPET_LENGTH
from session_ledger.store.models import FileRead, ToolUse, UserPrompt
from session_ledger.store.retry import with_retry
from session_ledger.utils.redact import redact_sensitive_data, truncate_content
from session_ledger.utils.timestamps import epoch_ms_to_iso, now_epoch_ms

if TYPE_CHECKING:
    from session_ledger.store.core import LedgerStore

logger = logging.getLogger(__name__)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# =============================================================================
# Prompts
# =============================================================================


@with_retry
def add_user_prompt(
    store: LedgerStore,
    session_id: str,
    prompt_number: int,
    prompt_text: str,
) -> int:
    """Record a user prompt.

    Args:
        store: The LedgerStore instance.
        session_id: Owning session.
        prompt_number: 1-based position of the prompt in the session.
        prompt_text: Prompt text (redacted before storage).

    Returns:
        Row id of the new prompt.

    Raises:
        sqlite3.IntegrityError: If the session does not exist.
    """
    created_at_epoch = now_epoch_ms()
    with store._transaction() as conn:
        cursor = conn.execute(
            """
            INSERT INTO user_prompts (session_id, prompt_number, prompt_text,
                                      created_at, created_at_epoch)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                session_id,
                prompt_number,
                redact_sensitive_data(prompt_text),
                epoch_ms_to_iso(created_at_epoch),
                created_at_epoch,
            ),
        )
        return int(cursor.lastrowid or 0)


@with_retry
def get_session_prompts(store: LedgerStore, session_id: str) -> list[UserPrompt]:
    """Get all prompts for a session in prompt order."""
    conn = store._get_connection()
    rows = conn.execute(
        "SELECT * FROM user_prompts WHERE session_id = ? ORDER BY prompt_number, id",
        (session_id,),
    ).fetchall()
    return [UserPrompt.from_row(row) for row in rows]


@with_retry
def get_next_prompt_number(store: LedgerStore, session_id: str) -> int:
    """Get the number to give the next prompt of a session (1 for the first)."""
    conn = store._get_connection()
    row = conn.execute(
        "SELECT MAX(prompt_number) FROM user_prompts WHERE session_id = ?",
        (session_id,),
    ).fetchone()
    return (row[0] or 0) + 1


@with_retry
def get_current_prompt_number(store: LedgerStore, session_id: str) -> int:
    """Get the number of the latest prompt of a session.

    Tool uses recorded before any prompt are attributed to prompt 1.
    """
    conn = store._get_connection()
    row = conn.execute(
        "SELECT MAX(prompt_number) FROM user_prompts WHERE session_id = ?",
        (session_id,),
    ).fetchone()
    return row[0] or 1


# =============================================================================
# Tool uses
# =============================================================================


@with_retry
def add_tool_use(
    store: LedgerStore,
    session_id: str,
    prompt_number: int,
    tool_name: str,
    tool_input: str,
    tool_output: str,
    duration_ms: int | None = None,
    cwd: str | None = None,
) -> int:
    """Record a tool invocation.

    Input and output are redacted; output longer than the store's
    ``max_tool_output_size`` keeps its head and tail, and the SHA-256 of the
    full redacted output is stored alongside.

    Args:
        store: The LedgerStore instance.
        session_id: Owning session.
        prompt_number: Prompt the invocation belongs to.
        tool_name: Name of the tool.
        tool_input: Serialized tool input.
        tool_output: Serialized tool output.
        duration_ms: Execution time, if known.
        cwd: Working directory of the invocation.

    Returns:
        Row id of the new tool use.
    """
    redacted_input = redact_sensitive_data(tool_input)
    redacted_output = redact_sensitive_data(tool_output)
    final_output, truncated = truncate_content(redacted_output, store.max_tool_output_size)
    output_hash = _sha256(redacted_output) if truncated else None
    created_at_epoch = now_epoch_ms()

    with store._transaction() as conn:
        cursor = conn.execute(
            """
            INSERT INTO tool_uses (session_id, prompt_number, tool_name, tool_input, tool_output,
                                   tool_output_truncated, tool_output_hash, duration_ms, cwd,
                                   created_at, created_at_epoch)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                prompt_number,
                tool_name,
                redacted_input,
                final_output,
                1 if truncated else 0,
                output_hash,
                duration_ms,
                cwd,
                epoch_ms_to_iso(created_at_epoch),
                created_at_epoch,
            ),
        )
        row_id = int(cursor.lastrowid or 0)

    if truncated:
        store.logger.debug(
            f"Truncated {tool_name} output for {session_id} "
            f"({len(redacted_output)} -> {len(final_output)} chars)"
        )
    return row_id


@with_retry
def get_session_tool_uses(store: LedgerStore, session_id: str) -> list[ToolUse]:
    """Get all tool uses for a session in recording order."""
    conn = store._get_connection()
    rows = conn.execute(
        "SELECT * FROM tool_uses WHERE session_id = ? ORDER BY created_at_epoch, id",
        (session_id,),
    ).fetchall()
    return [ToolUse.from_row(row) for row in rows]


@with_retry
def get_prompt_tool_uses(store: LedgerStore, session_id: str, prompt_number: int) -> list[ToolUse]:
    """Get the tool uses recorded under one prompt."""
    conn = store._get_connection()
    rows = conn.execute(
        """
        SELECT * FROM tool_uses
        WHERE session_id = ? AND prompt_number = ?
        ORDER BY created_at_epoch, id
        """,
        (session_id, prompt_number),
    ).fetchall()
    return [ToolUse.from_row(row) for row in rows]


# =============================================================================
# File reads
# =============================================================================


@with_retry
def add_file_read(store: LedgerStore, session_id: str, file_path: str, content: str) -> int | None:
    """Record a file read.

    Reads are deduplicated per (session, path, content hash). Only a snippet
    of the content is kept, and each (session, path) keeps at most
    ``max_reads_per_file`` distinct reads, newest first.

    Args:
        store: The LedgerStore instance.
        session_id: Owning session.
        file_path: Path of the file that was read.
        content: Full content that was read.

    Returns:
        Row id of the new read, or None if this exact content was already recorded.
    """
    content_hash = _sha256(content)
    snippet = content[:FILE_READ_SNIPPET_LENGTH]
    line_count = content.count("\n") + 1
    created_at_epoch = now_epoch_ms()

    with store._transaction() as conn:
        existing = conn.execute(
            """
            SELECT id FROM file_reads
            WHERE session_id = ? AND file_path = ? AND content_hash = ?
            """,
            (session_id, file_path, content_hash),
        ).fetchone()
        if existing:
            return None

        cursor = conn.execute(
            """
            INSERT INTO file_reads (session_id, file_path, content_hash, content_snippet,
                                    line_count, created_at, created_at_epoch)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                file_path,
                content_hash,
                redact_sensitive_data(snippet),
                line_count,
                epoch_ms_to_iso(created_at_epoch),
                created_at_epoch,
            ),
        )
        row_id = int(cursor.lastrowid or 0)

        pruned = conn.execute(
            """
            DELETE FROM file_reads WHERE id IN (
                SELECT id FROM file_reads
                WHERE session_id = ? AND file_path = ?
                ORDER BY created_at_epoch DESC, id DESC
                LIMIT -1 OFFSET ?
            )
            """,
            (session_id, file_path, store.max_reads_per_file),
        ).rowcount

    if pruned:
        store.logger.debug(f"Pruned {pruned} old read(s) of {file_path}")
    return row_id


@with_retry
def get_session_file_reads(store: LedgerStore, session_id: str) -> list[FileRead]:
    """Get all file reads for a session in recording order."""
    conn = store._get_connection()
    rows = conn.execute(
        "SELECT * FROM file_reads WHERE session_id = ? ORDER BY created_at_epoch, id",
        (session_id,),
    ).fetchall()
    return [FileRead.from_row(row) for row in rows]


# =============================================================================
# Search
# =============================================================================


@with_retry
def search_prompts(
    store: LedgerStore,
    query: str,
    limit: int,
    session_id: str | None = None,
) -> list[UserPrompt]:
    """Full-text search across prompts.

    Args:
        store: The LedgerStore instance.
        query: Search query (FTS5 syntax).
        limit: Maximum results.
        session_id: Optional session filter.

    Returns:
        Matching prompts, best match first.
    """
    conn = store._get_connection()
    if session_id:
        cursor = conn.execute(
            """
            SELECT p.* FROM user_prompts p
            JOIN user_prompts_fts fts ON p.id = fts.rowid
            WHERE user_prompts_fts MATCH ? AND p.session_id = ?
            ORDER BY rank
            LIMIT ?
            """,
            (query, session_id, limit),
        )
    else:
        cursor = conn.execute(
            """
            SELECT p.* FROM user_prompts p
            JOIN user_prompts_fts fts ON p.id = fts.rowid
            WHERE user_prompts_fts MATCH ?
            ORDER BY rank
            LIMIT ?
            """,
            (query, limit),
        )
    return [UserPrompt.from_row(row) for row in cursor.fetchall()]


@with_retry
def search_tool_uses(
    store: LedgerStore,
    query: str,
    limit: int,
    session_id: str | None = None,
) -> list[ToolUse]:
    """Full-text search across tool uses.

    Args:
        store: The LedgerStore instance.
        query: Search query (FTS5 syntax).
        limit: Maximum results.
        session_id: Optional session filter.

    Returns:
        Matching tool uses, best match first.
    """
    conn = store._get_connection()
    if session_id:
        cursor = conn.execute(
            """
            SELECT t.* FROM tool_uses t
            JOIN tool_uses_fts fts ON t.id = fts.rowid
            WHERE tool_uses_fts MATCH ? AND t.session_id = ?
            ORDER BY rank
            LIMIT ?
            """,
            (query, session_id, limit),
        )
    else:
        cursor = conn.execute(
            """
            SELECT t.* FROM tool_uses t
            JOIN tool_uses_fts fts ON t.id = fts.rowid
            WHERE tool_uses_fts MATCH ?
            ORDER BY rank
            LIMIT ?
            """,
            (query, limit),
        )
    return [ToolUse.from_row(row) for row in cursor.fetchall()]
