"""Session operations for the ledger store.

Functions for creating sessions, moving them through their lifecycle, and
the sweeps that recover from crashed or abandoned processes: orphan
detection, stale-processing reset, and retention cleanup.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from session_ledger.constants import (
    SESSION_STATUS_ACTIVE,
    SESSION_STATUSES,
    SESSION_TERMINAL_STATUSES,
)
from session_ledger.store.models import Session
from session_ledger.store.retry import with_retry
from session_ledger.utils.timestamps import epoch_ms_to_iso, now_epoch_ms

if TYPE_CHECKING:
    from session_ledger.store.core import LedgerStore

logger = logging.getLogger(__name__)


@with_retry
def create_session(store: LedgerStore, session_id: str, project: str) -> Session:
    """Create a new active session record.

    Args:
        store: The LedgerStore instance.
        session_id: Unique session identifier.
        project: Project the session belongs to.

    Returns:
        Created Session object.

    Raises:
        sqlite3.IntegrityError: If a session with this id already exists.
    """
    started_at_epoch = now_epoch_ms()
    session = Session(
        session_id=session_id,
        project=project,
        started_at=epoch_ms_to_iso(started_at_epoch),
        started_at_epoch=started_at_epoch,
    )
    with store._transaction() as conn:
        cursor = conn.execute(
            """
            INSERT INTO sessions (session_id, project, started_at, started_at_epoch, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                session.session_id,
                session.project,
                session.started_at,
                session.started_at_epoch,
                session.status,
            ),
        )
        session.id = cursor.lastrowid
    store.logger.debug(f"Created session {session_id} for project {project}")
    return session


@with_retry
def get_session(store: LedgerStore, session_id: str) -> Session | None:
    """Get session by id.

    Args:
        store: The LedgerStore instance.
        session_id: Session to look up.

    Returns:
        Session if found, None otherwise.
    """
    conn = store._get_connection()
    row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
    return Session.from_row(row) if row else None


@with_retry
def update_session_status(store: LedgerStore, session_id: str, status: str) -> None:
    """Change a session's status.

    Terminal statuses stamp ``completed_at``; returning to ``active`` clears
    it, so ``completed_at`` is null exactly when the session is active.

    Args:
        store: The LedgerStore instance.
        session_id: Session to update.
        status: One of active, completed, failed.

    Raises:
        ValueError: If the status is not a known session status.
    """
    if status not in SESSION_STATUSES:
        raise ValueError(f"Unknown session status: {status}")

    if status in SESSION_TERMINAL_STATUSES:
        completed_at_epoch: int | None = now_epoch_ms()
        completed_at: str | None = epoch_ms_to_iso(completed_at_epoch)
    else:
        completed_at_epoch = None
        completed_at = None

    with store._transaction() as conn:
        cursor = conn.execute(
            """
            UPDATE sessions
            SET status = ?, completed_at = ?, completed_at_epoch = ?
            WHERE session_id = ?
            """,
            (status, completed_at, completed_at_epoch, session_id),
        )
    if cursor.rowcount == 0:
        store.logger.debug(f"Status update for unknown session {session_id}")
    else:
        store.logger.debug(f"Session {session_id} -> {status}")


@with_retry
def mark_session_processing(store: LedgerStore, session_id: str) -> None:
    """Stamp the time background processing started for a session."""
    with store._transaction() as conn:
        conn.execute(
            "UPDATE sessions SET processing_started_at = ? WHERE session_id = ?",
            (now_epoch_ms(), session_id),
        )


@with_retry
def clear_session_processing(store: LedgerStore, session_id: str) -> None:
    """Clear the processing stamp once the background worker finishes."""
    with store._transaction() as conn:
        conn.execute(
            "UPDATE sessions SET processing_started_at = NULL WHERE session_id = ?",
            (session_id,),
        )


@with_retry
def get_active_sessions(store: LedgerStore) -> list[Session]:
    """Get all active sessions, newest first."""
    conn = store._get_connection()
    rows = conn.execute(
        "SELECT * FROM sessions WHERE status = ? ORDER BY started_at_epoch DESC",
        (SESSION_STATUS_ACTIVE,),
    ).fetchall()
    return [Session.from_row(row) for row in rows]


@with_retry
def get_recent_sessions(store: LedgerStore, limit: int) -> list[Session]:
    """Get the most recently started sessions."""
    conn = store._get_connection()
    rows = conn.execute(
        "SELECT * FROM sessions ORDER BY started_at_epoch DESC, id DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [Session.from_row(row) for row in rows]


@with_retry
def count_sessions(store: LedgerStore, status: str | None = None) -> int:
    """Count sessions, optionally restricted to one status."""
    conn = store._get_connection()
    if status is None:
        row = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) FROM sessions WHERE status = ?", (status,)).fetchone()
    return int(row[0])


@with_retry
def get_orphan_sessions(store: LedgerStore, timeout_hours: int) -> list[Session]:
    """Find active sessions that were never completed.

    A session is an orphan when it is still active and started strictly
    before ``now - timeout_hours``. Typically caused by the assistant
    crashing before its stop hook ran.

    Args:
        store: The LedgerStore instance.
        timeout_hours: Age after which an active session is considered abandoned.

    Returns:
        Orphaned sessions, oldest first.
    """
    cutoff_epoch = now_epoch_ms() - timeout_hours * 60 * 60 * 1000
    conn = store._get_connection()
    rows = conn.execute(
        """
        SELECT * FROM sessions
        WHERE status = ? AND started_at_epoch < ?
        ORDER BY started_at_epoch ASC
        """,
        (SESSION_STATUS_ACTIVE, cutoff_epoch),
    ).fetchall()
    return [Session.from_row(row) for row in rows]


@with_retry
def cleanup_stale_processing_sessions(store: LedgerStore, timeout_minutes: int) -> list[Session]:
    """Reset sessions stuck in background processing.

    A worker that crashed leaves ``processing_started_at`` set forever.
    Sessions whose processing started before ``now - timeout_minutes`` have
    the stamp cleared in one transaction and are returned so the caller can
    release their locks or re-run them.

    Args:
        store: The LedgerStore instance.
        timeout_minutes: Processing age after which a worker is presumed dead.

    Returns:
        Sessions that were reset (with their pre-reset processing stamp).
    """
    cutoff_epoch = now_epoch_ms() - timeout_minutes * 60 * 1000
    with store._transaction() as conn:
        rows = conn.execute(
            """
            SELECT * FROM sessions
            WHERE processing_started_at IS NOT NULL AND processing_started_at < ?
            ORDER BY processing_started_at ASC
            """,
            (cutoff_epoch,),
        ).fetchall()
        stale = [Session.from_row(row) for row in rows]
        if stale:
            placeholders = ",".join("?" * len(stale))
            conn.execute(
                f"UPDATE sessions SET processing_started_at = NULL "
                f"WHERE session_id IN ({placeholders})",
                [s.session_id for s in stale],
            )

    if stale:
        store.logger.info(
            f"Reset {len(stale)} stale processing session(s): "
            f"{', '.join(s.session_id for s in stale)}"
        )
    return stale


@with_retry
def cleanup_old_sessions(store: LedgerStore, retention_count: int) -> list[str]:
    """Delete finished sessions beyond the retention count.

    Keeps the ``retention_count`` most recently completed sessions among
    those with a terminal status; active sessions are never touched. Child
    rows go with them through the cascade. Runs in a single transaction.

    Args:
        store: The LedgerStore instance.
        retention_count: Number of finished sessions to keep.

    Returns:
        Ids of the deleted sessions.
    """
    if retention_count < 0:
        raise ValueError("retention_count must be non-negative")

    with store._transaction() as conn:
        rows = conn.execute(
            """
            SELECT session_id FROM sessions
            WHERE status IN (?, ?)
            ORDER BY completed_at_epoch DESC, id DESC
            LIMIT -1 OFFSET ?
            """,
            (*SESSION_TERMINAL_STATUSES, retention_count),
        ).fetchall()
        deleted = [row["session_id"] for row in rows]
        for session_id in deleted:
            conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))

    if deleted:
        store.logger.info(f"Retention cleanup deleted {len(deleted)} old session(s)")
    return deleted


@with_retry
def delete_session(store: LedgerStore, session_id: str) -> bool:
    """Delete a session and, by cascade, everything recorded for it.

    Returns:
        True if a session was deleted.
    """
    with store._transaction() as conn:
        cursor = conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
    return cursor.rowcount > 0
