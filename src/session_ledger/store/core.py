"""Core LedgerStore class.

Owns the SQLite connection for one process: opens and configures the
database, runs migrations, provides transaction helpers, and delegates to
the operation modules. Hook processes are short-lived, so the store
checkpoints the write-ahead log on close and leaves a self-contained file.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType
from typing import Any

from session_ledger.constants import (
    DEFAULT_CLAIM_BATCH_SIZE,
    DEFAULT_MAX_READS_PER_FILE,
    DEFAULT_MAX_TOOL_OUTPUT_SIZE,
    DEFAULT_RECENT_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_STALE_CLAIM_TIMEOUT_MS,
    PRIVATE_DIR_MODE,
    PRIVATE_FILE_MODE,
    SQLITE_BUSY_TIMEOUT_MS,
    SQLITE_CACHE_SIZE_KB,
    SQLITE_CONNECT_TIMEOUT_SECONDS,
    SQLITE_MMAP_SIZE,
)
from session_ledger.exceptions import StorageError, StorageUnavailableError
from session_ledger.store import activities, observations, pending, sessions
from session_ledger.store.migrations import run_migrations
from session_ledger.store.models import (
    FileRead,
    Observation,
    PendingMessage,
    PromptPayload,
    Session,
    SessionSummary,
    SummaryRequestPayload,
    ToolUse,
    ToolUsePayload,
    UserPrompt,
)
from session_ledger.store.retry import retry_with_backoff
from session_ledger.store.schema import LEDGER_TABLES

module_logger = logging.getLogger(__name__)


class LedgerStore:
    """SQLite-backed store for sessions, their activity, and the work queue.

    One instance per process. Every operation is retried on transient lock
    errors; opening raises :class:`StorageUnavailableError` when the database
    cannot be used, which callers treat as the signal to fall back to JSON.
    """

    def __init__(
        self,
        db_path: Path,
        logger: logging.Logger | None = None,
        *,
        max_reads_per_file: int = DEFAULT_MAX_READS_PER_FILE,
        max_tool_output_size: int = DEFAULT_MAX_TOOL_OUTPUT_SIZE,
    ):
        """Open the ledger store.

        Args:
            db_path: Path to SQLite database file.
            logger: Logger for store diagnostics. Defaults to the module logger.
            max_reads_per_file: Distinct reads kept per (session, file).
            max_tool_output_size: Characters of tool output kept before truncation.

        Raises:
            StorageUnavailableError: If the database cannot be opened,
                configured or migrated.
        """
        self.db_path = db_path
        self.logger = logger or module_logger
        self.max_reads_per_file = max_reads_per_file
        self.max_tool_output_size = max_tool_output_size
        self._conn: sqlite3.Connection | None = None
        self._open()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def _open(self) -> None:
        self.logger.debug(f"Opening ledger database at {self.db_path}")
        try:
            if not self.db_path.parent.exists():
                self.db_path.parent.mkdir(parents=True, mode=PRIVATE_DIR_MODE, exist_ok=True)
            # Autocommit mode: transactions are opened explicitly in _transaction()
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=SQLITE_CONNECT_TIMEOUT_SECONDS,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailableError(
                f"Cannot open ledger database: {e}", db_path=self.db_path, operation="open"
            ) from e

        try:
            retry_with_backoff(lambda: self._configure(conn))
            self._restrict_permissions()
            retry_with_backoff(lambda: run_migrations(conn))
        except (sqlite3.Error, StorageError) as e:
            conn.close()
            self.logger.error(f"Ledger database unavailable: {e}")
            raise StorageUnavailableError(
                f"Cannot initialize ledger database: {e}",
                db_path=self.db_path,
                operation="initialize",
            ) from e

        self._conn = conn
        self.logger.debug("Ledger database ready")

    def _configure(self, conn: sqlite3.Connection) -> None:
        """Apply durability and performance PRAGMAs."""
        # WAL lets readers proceed while another process writes
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        conn.execute(f"PRAGMA mmap_size = {SQLITE_MMAP_SIZE}")
        conn.execute(f"PRAGMA cache_size = {SQLITE_CACHE_SIZE_KB}")
        # NORMAL is durable at checkpoint in WAL mode
        conn.execute("PRAGMA synchronous = NORMAL")

    def _restrict_permissions(self) -> None:
        try:
            os.chmod(self.db_path, PRIVATE_FILE_MODE)
        except OSError as e:
            self.logger.warning(f"Failed to restrict database permissions: {e}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get the open connection.

        Raises:
            StorageError: If the store has been closed.
        """
        if self._conn is None:
            raise StorageError("Ledger store is closed", db_path=self.db_path)
        return self._conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for a write transaction.

        Uses ``BEGIN IMMEDIATE`` so the write lock is taken up front; the busy
        timeout covers waiting for it and no reader can upgrade into a
        deadlock. Rolls back and re-raises on any error.
        """
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception as e:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as rollback_error:
                self.logger.debug(f"Rollback failed: {rollback_error}")
            if isinstance(e, sqlite3.Error):
                self.logger.debug(f"Database transaction error: {e}")
            raise

    def close(self) -> None:
        """Checkpoint the write-ahead log and close the connection.

        Errors are logged and never raised; closing twice is a no-op.
        """
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as e:
            self.logger.warning(f"WAL checkpoint failed on close: {e}")
        try:
            conn.close()
            self.logger.debug("Ledger database closed")
        except sqlite3.Error as e:
            self.logger.warning(f"Error closing ledger database: {e}")

    def __enter__(self) -> LedgerStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def inspect(self) -> dict[str, Any]:
        """Summarize database contents for diagnostics.

        Returns:
            Dictionary with the database path, journal mode and row counts
            per table.
        """
        conn = self._get_connection()
        counts = {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in LEDGER_TABLES
        }
        journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        return {
            "db_path": str(self.db_path),
            "journal_mode": journal_mode,
            "tables": counts,
            "pending_unclaimed": pending.get_pending_count(self),
        }

    # =========================================================================
    # Session operations (delegate to sessions module)
    # =========================================================================

    def create_session(self, session_id: str, project: str) -> Session:
        """Create a new active session."""
        return sessions.create_session(self, session_id, project)

    def get_session(self, session_id: str) -> Session | None:
        """Get a session by id."""
        return sessions.get_session(self, session_id)

    def update_session_status(self, session_id: str, status: str) -> None:
        """Change a session's status, maintaining ``completed_at``."""
        sessions.update_session_status(self, session_id, status)

    def mark_session_processing(self, session_id: str) -> None:
        """Record that a background worker started on this session."""
        sessions.mark_session_processing(self, session_id)

    def clear_session_processing(self, session_id: str) -> None:
        """Record that background processing finished."""
        sessions.clear_session_processing(self, session_id)

    def get_active_sessions(self) -> list[Session]:
        """Get all active sessions, newest first."""
        return sessions.get_active_sessions(self)

    def get_recent_sessions(self, limit: int = DEFAULT_RECENT_LIMIT) -> list[Session]:
        """Get the most recently started sessions."""
        return sessions.get_recent_sessions(self, limit)

    def count_sessions(self, status: str | None = None) -> int:
        """Count sessions, optionally by status."""
        return sessions.count_sessions(self, status)

    def get_orphan_sessions(self, timeout_hours: int) -> list[Session]:
        """Get active sessions started before the timeout."""
        return sessions.get_orphan_sessions(self, timeout_hours)

    def cleanup_stale_processing_sessions(self, timeout_minutes: int) -> list[Session]:
        """Reset sessions whose background processing exceeded the timeout."""
        return sessions.cleanup_stale_processing_sessions(self, timeout_minutes)

    def cleanup_old_sessions(self, retention_count: int) -> list[str]:
        """Delete the oldest finished sessions beyond the retention count."""
        return sessions.cleanup_old_sessions(self, retention_count)

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and everything recorded for it."""
        return sessions.delete_session(self, session_id)

    # =========================================================================
    # Activity operations (delegate to activities module)
    # =========================================================================

    def add_user_prompt(self, session_id: str, prompt_number: int, prompt_text: str) -> int:
        """Record a user prompt."""
        return activities.add_user_prompt(self, session_id, prompt_number, prompt_text)

    def get_session_prompts(self, session_id: str) -> list[UserPrompt]:
        """Get a session's prompts in order."""
        return activities.get_session_prompts(self, session_id)

    def get_next_prompt_number(self, session_id: str) -> int:
        """Number the next prompt of a session."""
        return activities.get_next_prompt_number(self, session_id)

    def get_current_prompt_number(self, session_id: str) -> int:
        """Number of the latest prompt of a session (1 if none)."""
        return activities.get_current_prompt_number(self, session_id)

    def add_tool_use(
        self,
        session_id: str,
        prompt_number: int,
        tool_name: str,
        tool_input: str,
        tool_output: str,
        duration_ms: int | None = None,
        cwd: str | None = None,
    ) -> int:
        """Record a tool invocation (redacted and truncated)."""
        return activities.add_tool_use(
            self,
            session_id,
            prompt_number,
            tool_name,
            tool_input,
            tool_output,
            duration_ms=duration_ms,
            cwd=cwd,
        )

    def get_session_tool_uses(self, session_id: str) -> list[ToolUse]:
        """Get a session's tool uses in order."""
        return activities.get_session_tool_uses(self, session_id)

    def get_prompt_tool_uses(self, session_id: str, prompt_number: int) -> list[ToolUse]:
        """Get the tool uses for one prompt."""
        return activities.get_prompt_tool_uses(self, session_id, prompt_number)

    def add_file_read(self, session_id: str, file_path: str, content: str) -> int | None:
        """Record a file read unless the same content was already recorded."""
        return activities.add_file_read(self, session_id, file_path, content)

    def get_session_file_reads(self, session_id: str) -> list[FileRead]:
        """Get a session's file reads in order."""
        return activities.get_session_file_reads(self, session_id)

    def search_prompts(
        self, query: str, limit: int = DEFAULT_SEARCH_LIMIT, session_id: str | None = None
    ) -> list[UserPrompt]:
        """Full-text search over prompts."""
        return activities.search_prompts(self, query, limit, session_id)

    def search_tool_uses(
        self, query: str, limit: int = DEFAULT_SEARCH_LIMIT, session_id: str | None = None
    ) -> list[ToolUse]:
        """Full-text search over tool uses."""
        return activities.search_tool_uses(self, query, limit, session_id)

    # =========================================================================
    # Summary and observation operations (delegate to observations module)
    # =========================================================================

    def upsert_session_summary(self, summary: SessionSummary) -> None:
        """Create or replace a session's summary."""
        observations.upsert_session_summary(self, summary)

    def get_session_summary(self, session_id: str) -> SessionSummary | None:
        """Get a session's summary."""
        return observations.get_session_summary(self, session_id)

    def create_observation(self, observation: Observation) -> int:
        """Store one observation."""
        return observations.create_observation(self, observation)

    def create_observations(self, items: list[Observation]) -> list[int]:
        """Store several observations in one transaction."""
        return observations.create_observations(self, items)

    def get_session_observations(self, session_id: str) -> list[Observation]:
        """Get a session's observations in order."""
        return observations.get_session_observations(self, session_id)

    def get_recent_observations(
        self, project: str | None = None, limit: int = DEFAULT_RECENT_LIMIT
    ) -> list[Observation]:
        """Get the newest observations, optionally for one project."""
        return observations.get_recent_observations(self, project, limit)

    def search_observations(
        self, query: str, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> list[Observation]:
        """Full-text search over observations."""
        return observations.search_observations(self, query, limit)

    # =========================================================================
    # Queue operations (delegate to pending module)
    # =========================================================================

    def enqueue_message(
        self,
        session_id: str,
        payload: ToolUsePayload | PromptPayload | SummaryRequestPayload,
    ) -> int:
        """Append a message to the work queue."""
        return pending.enqueue_message(self, session_id, payload)

    def claim_messages(
        self, session_id: str, limit: int = DEFAULT_CLAIM_BATCH_SIZE
    ) -> list[PendingMessage]:
        """Claim up to ``limit`` unclaimed messages, oldest first."""
        return pending.claim_messages(self, session_id, limit)

    def claim_all_messages(self, session_id: str) -> list[PendingMessage]:
        """Claim every unclaimed message for a session."""
        return pending.claim_all_messages(self, session_id)

    def delete_message(self, message_id: int) -> None:
        """Delete a processed message."""
        pending.delete_message(self, message_id)

    def delete_messages(self, message_ids: list[int]) -> None:
        """Delete processed messages."""
        pending.delete_messages(self, message_ids)

    def release_messages(self, message_ids: list[int]) -> None:
        """Return claimed messages to the queue."""
        pending.release_messages(self, message_ids)

    def cleanup_stale_claims(self, timeout_ms: int = DEFAULT_STALE_CLAIM_TIMEOUT_MS) -> int:
        """Release claims older than the timeout."""
        return pending.cleanup_stale_claims(self, timeout_ms)

    def get_pending_count(self, session_id: str | None = None) -> int:
        """Count unclaimed messages."""
        return pending.get_pending_count(self, session_id)

    def has_pending_messages(self, session_id: str) -> bool:
        """Check for unclaimed messages."""
        return pending.has_pending_messages(self, session_id)

    def get_pending_messages(self, session_id: str) -> list[PendingMessage]:
        """Get all messages for a session, claimed or not."""
        return pending.get_pending_messages(self, session_id)

    def delete_session_messages(self, session_id: str) -> int:
        """Drop all queued messages for a session."""
        return pending.delete_session_messages(self, session_id)
