"""Summary and observation operations for the ledger store.

The background worker turns queued activity into structured observations
and a per-session summary; both are stored here.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import TYPE_CHECKING

from session_ledger.constants import OBSERVATION_TYPES
from session_ledger.store.models import Observation, SessionSummary
from session_ledger.store.retry import with_retry
from session_ledger.utils.timestamps import epoch_ms_to_iso, now_epoch_ms

if TYPE_CHECKING:
    from session_ledger.store.core import LedgerStore

logger = logging.getLogger(__name__)


# =============================================================================
# Session summaries
# =============================================================================


@with_retry
def upsert_session_summary(store: LedgerStore, summary: SessionSummary) -> None:
    """Create or replace the summary for a session.

    The original creation time is kept when a summary is replaced.

    Args:
        store: The LedgerStore instance.
        summary: Summary to store; ``session_id`` identifies the row.
    """
    created_at_epoch = now_epoch_ms()
    with store._transaction() as conn:
        conn.execute(
            """
            INSERT INTO session_summaries (session_id, project, request, investigated, learned,
                                           completed, next_steps, written_to_vault,
                                           written_notes, error_message,
                                           created_at, created_at_epoch)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                request = excluded.request,
                investigated = excluded.investigated,
                learned = excluded.learned,
                completed = excluded.completed,
                next_steps = excluded.next_steps,
                written_to_vault = excluded.written_to_vault,
                written_notes = excluded.written_notes,
                error_message = excluded.error_message
            """,
            (
                summary.session_id,
                summary.project,
                summary.request,
                summary.investigated,
                summary.learned,
                summary.completed,
                summary.next_steps,
                1 if summary.written_to_vault else 0,
                json.dumps(summary.written_notes),
                summary.error_message,
                epoch_ms_to_iso(created_at_epoch),
                created_at_epoch,
            ),
        )


@with_retry
def get_session_summary(store: LedgerStore, session_id: str) -> SessionSummary | None:
    """Get the summary for a session, or None if none was written."""
    conn = store._get_connection()
    row = conn.execute(
        "SELECT * FROM session_summaries WHERE session_id = ?", (session_id,)
    ).fetchone()
    return SessionSummary.from_row(row) if row else None


# =============================================================================
# Observations
# =============================================================================


def _validate_type(observation: Observation) -> None:
    if observation.type not in OBSERVATION_TYPES:
        raise ValueError(
            f"Unknown observation type '{observation.type}' "
            f"(expected one of {', '.join(OBSERVATION_TYPES)})"
        )


def _insert_observation(conn: sqlite3.Connection, observation: Observation) -> int:
    _validate_type(observation)
    if observation.created_at_epoch is None:
        observation.created_at_epoch = now_epoch_ms()
        observation.created_at = epoch_ms_to_iso(observation.created_at_epoch)
    elif observation.created_at is None:
        observation.created_at = epoch_ms_to_iso(observation.created_at_epoch)
    cursor = conn.execute(
        """
        INSERT INTO observations (session_id, project, type, title, subtitle, facts, concepts,
                                  narrative, files_read, files_modified, discovery_tokens,
                                  created_at, created_at_epoch)
        VALUES (:session_id, :project, :type, :title, :subtitle, :facts, :concepts,
                :narrative, :files_read, :files_modified, :discovery_tokens,
                :created_at, :created_at_epoch)
        """,
        observation.to_row(),
    )
    observation.id = int(cursor.lastrowid or 0)
    return observation.id


@with_retry
def create_observation(store: LedgerStore, observation: Observation) -> int:
    """Store a single observation.

    Args:
        store: The LedgerStore instance.
        observation: Observation to store; its ``id`` is set on success.

    Returns:
        Row id of the new observation.

    Raises:
        ValueError: If the observation type is unknown.
    """
    with store._transaction() as conn:
        return _insert_observation(conn, observation)


@with_retry
def create_observations(store: LedgerStore, items: list[Observation]) -> list[int]:
    """Store several observations atomically.

    Returns:
        Row ids in input order; empty when ``items`` is empty.
    """
    if not items:
        return []
    with store._transaction() as conn:
        ids = [_insert_observation(conn, item) for item in items]
    store.logger.debug(f"Stored {len(ids)} observation(s)")
    return ids


@with_retry
def get_session_observations(store: LedgerStore, session_id: str) -> list[Observation]:
    """Get all observations for a session in creation order."""
    conn = store._get_connection()
    rows = conn.execute(
        "SELECT * FROM observations WHERE session_id = ? ORDER BY created_at_epoch, id",
        (session_id,),
    ).fetchall()
    return [Observation.from_row(row) for row in rows]


@with_retry
def get_recent_observations(
    store: LedgerStore,
    project: str | None,
    limit: int,
) -> list[Observation]:
    """Get the newest observations, optionally restricted to one project."""
    conn = store._get_connection()
    if project:
        rows = conn.execute(
            """
            SELECT * FROM observations WHERE project = ?
            ORDER BY created_at_epoch DESC, id DESC LIMIT ?
            """,
            (project, limit),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM observations ORDER BY created_at_epoch DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
    return [Observation.from_row(row) for row in rows]


@with_retry
def search_observations(store: LedgerStore, query: str, limit: int) -> list[Observation]:
    """Full-text search across observations (FTS5 syntax), best match first."""
    conn = store._get_connection()
    rows = conn.execute(
        """
        SELECT o.* FROM observations o
        JOIN observations_fts fts ON o.id = fts.rowid
        WHERE observations_fts MATCH ?
        ORDER BY rank
        LIMIT ?
        """,
        (query, limit),
    ).fetchall()
    return [Observation.from_row(row) for row in rows]
