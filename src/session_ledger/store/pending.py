"""Pending message queue for the ledger store.

A durable FIFO with claim-and-delete semantics. A worker claims messages
(stamping ``claimed_at``), processes them, then deletes them on success or
releases them on failure. Claims that are never resolved are handed back
by :func:`cleanup_stale_claims`, so every message is processed at least once.

Claims run inside ``BEGIN IMMEDIATE``: the select and the claim update
happen under the database write lock, so two processes can never claim the
same message.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from session_ledger.store.models import (
    PendingMessage,
    PromptPayload,
    SummaryRequestPayload,
    ToolUsePayload,
    encode_payload,
)
from session_ledger.store.retry import with_retry
from session_ledger.utils.timestamps import epoch_ms_to_iso, now_epoch_ms

if TYPE_CHECKING:
    from session_ledger.store.core import LedgerStore

logger = logging.getLogger(__name__)


@with_retry
def enqueue_message(
    store: LedgerStore,
    session_id: str,
    payload: ToolUsePayload | PromptPayload | SummaryRequestPayload,
) -> int:
    """Append a message to the queue.

    Args:
        store: The LedgerStore instance.
        session_id: Session the message belongs to.
        payload: Typed payload; its ``message_type`` selects the column value.

    Returns:
        Row id of the queued message.

    Raises:
        sqlite3.IntegrityError: If the session does not exist.
    """
    created_at_epoch = now_epoch_ms()
    with store._transaction() as conn:
        cursor = conn.execute(
            """
            INSERT INTO pending_messages (session_id, message_type, payload,
                                          created_at, created_at_epoch)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                session_id,
                payload.message_type,
                encode_payload(payload),
                epoch_ms_to_iso(created_at_epoch),
                created_at_epoch,
            ),
        )
        return int(cursor.lastrowid or 0)


def _claim(store: LedgerStore, session_id: str, limit: int | None) -> list[PendingMessage]:
    """Claim unclaimed messages oldest first, within one immediate transaction."""
    claimed_at_epoch = now_epoch_ms()
    claimed_at = epoch_ms_to_iso(claimed_at_epoch)

    with store._transaction() as conn:
        # LIMIT -1 means no limit in SQLite
        rows = conn.execute(
            """
            SELECT * FROM pending_messages
            WHERE session_id = ? AND claimed_at_epoch IS NULL
            ORDER BY created_at_epoch ASC, id ASC
            LIMIT ?
            """,
            (session_id, -1 if limit is None else limit),
        ).fetchall()
        messages = [PendingMessage.from_row(row) for row in rows]
        if not messages:
            return []

        ids = [m.id for m in messages]
        placeholders = ",".join("?" * len(ids))
        conn.execute(
            f"""
            UPDATE pending_messages
            SET claimed_at = ?, claimed_at_epoch = ?
            WHERE id IN ({placeholders})
            """,
            (claimed_at, claimed_at_epoch, *ids),
        )

    for message in messages:
        message.claimed_at = claimed_at
        message.claimed_at_epoch = claimed_at_epoch
    store.logger.debug(f"Claimed {len(messages)} message(s) for {session_id}")
    return messages


@with_retry
def claim_messages(store: LedgerStore, session_id: str, limit: int) -> list[PendingMessage]:
    """Claim up to ``limit`` unclaimed messages for a session, oldest first.

    Returns:
        The claimed messages with their claim stamp set; empty if none.
    """
    if limit <= 0:
        return []
    return _claim(store, session_id, limit)


@with_retry
def claim_all_messages(store: LedgerStore, session_id: str) -> list[PendingMessage]:
    """Claim every unclaimed message for a session, oldest first."""
    return _claim(store, session_id, None)


@with_retry
def delete_message(store: LedgerStore, message_id: int) -> None:
    """Delete a message after successful processing."""
    with store._transaction() as conn:
        conn.execute("DELETE FROM pending_messages WHERE id = ?", (message_id,))


@with_retry
def delete_messages(store: LedgerStore, message_ids: list[int]) -> None:
    """Delete several messages after successful processing."""
    if not message_ids:
        return
    placeholders = ",".join("?" * len(message_ids))
    with store._transaction() as conn:
        conn.execute(f"DELETE FROM pending_messages WHERE id IN ({placeholders})", message_ids)


@with_retry
def release_messages(store: LedgerStore, message_ids: list[int]) -> None:
    """Return claimed messages to the queue after a processing failure."""
    if not message_ids:
        return
    placeholders = ",".join("?" * len(message_ids))
    with store._transaction() as conn:
        conn.execute(
            f"""
            UPDATE pending_messages
            SET claimed_at = NULL, claimed_at_epoch = NULL
            WHERE id IN ({placeholders})
            """,
            message_ids,
        )


@with_retry
def cleanup_stale_claims(store: LedgerStore, timeout_ms: int) -> int:
    """Release claims older than ``timeout_ms``.

    A worker that died mid-batch leaves its messages claimed; this makes
    them claimable again.

    Returns:
        Number of messages released.
    """
    cutoff_epoch = now_epoch_ms() - timeout_ms
    with store._transaction() as conn:
        released = conn.execute(
            """
            UPDATE pending_messages
            SET claimed_at = NULL, claimed_at_epoch = NULL
            WHERE claimed_at_epoch IS NOT NULL AND claimed_at_epoch < ?
            """,
            (cutoff_epoch,),
        ).rowcount
    if released:
        store.logger.info(f"Released {released} stale message claim(s)")
    return int(released)


@with_retry
def get_pending_count(store: LedgerStore, session_id: str | None = None) -> int:
    """Count unclaimed messages for a session, or across all sessions."""
    conn = store._get_connection()
    if session_id is None:
        row = conn.execute(
            "SELECT COUNT(*) FROM pending_messages WHERE claimed_at_epoch IS NULL"
        ).fetchone()
    else:
        row = conn.execute(
            """
            SELECT COUNT(*) FROM pending_messages
            WHERE session_id = ? AND claimed_at_epoch IS NULL
            """,
            (session_id,),
        ).fetchone()
    return int(row[0])


def has_pending_messages(store: LedgerStore, session_id: str) -> bool:
    """Check whether a session has unclaimed messages."""
    return get_pending_count(store, session_id) > 0


@with_retry
def get_pending_messages(store: LedgerStore, session_id: str) -> list[PendingMessage]:
    """Get all messages for a session, claimed or not, oldest first."""
    conn = store._get_connection()
    rows = conn.execute(
        """
        SELECT * FROM pending_messages
        WHERE session_id = ?
        ORDER BY created_at_epoch ASC, id ASC
        """,
        (session_id,),
    ).fetchall()
    return [PendingMessage.from_row(row) for row in rows]


@with_retry
def delete_session_messages(store: LedgerStore, session_id: str) -> int:
    """Delete all queued messages for a session.

    Returns:
        Number of messages deleted.
    """
    with store._transaction() as conn:
        deleted = conn.execute(
            "DELETE FROM pending_messages WHERE session_id = ?", (session_id,)
        ).rowcount
    return int(deleted)
