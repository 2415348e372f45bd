"""Session lifecycle orchestration.

Each hook firing is a short-lived process that calls one ``handle_*``
function; the stop hook spawns a detached ``ledger worker`` process that runs
:func:`run_worker`. These functions are the error boundary: they log, degrade
to JSON fallback storage when the database is unavailable, and report what
happened in a result object instead of raising.
"""

import json
import logging
import os
import sqlite3
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

from session_ledger.config import LedgerConfig
from session_ledger.constants import (
    CONFIG_DIR_ENV_VAR,
    SESSION_STATUS_COMPLETED,
    SESSION_STATUS_FAILED,
)
from session_ledger.exceptions import PayloadError, StorageUnavailableError
from session_ledger.fallback import FallbackStore
from session_ledger.processing import DigestProcessor, MessageProcessor
from session_ledger.store.core import LedgerStore
from session_ledger.store.models import (
    PendingMessage,
    PromptPayload,
    Session,
    SummaryRequestPayload,
    ToolUsePayload,
)
from session_ledger.utils.platform import get_process_detach_kwargs
from session_ledger.utils.redact import redact_sensitive_data, truncate_content
from session_ledger.utils.timestamps import now_epoch_ms
from session_ledger.worker.lock import LockStore
from session_ledger.worker.markers import write_completion_marker

module_logger = logging.getLogger(__name__)

FILE_READ_TOOLS = frozenset({"Read"})


# =============================================================================
# Results
# =============================================================================


@dataclass
class SweepResult:
    """What one maintenance sweep cleaned up."""

    stale_processing: list[str] = field(default_factory=list)
    stale_locks: list[str] = field(default_factory=list)
    released_claims: int = 0
    orphans_failed: list[str] = field(default_factory=list)
    evicted_sessions: list[str] = field(default_factory=list)


@dataclass
class SessionStartResult:
    """Outcome of the session-start hook."""

    session_id: str
    project: str
    created: bool = False
    fallback: bool = False
    sweep: SweepResult | None = None
    error: str | None = None


@dataclass
class RecordResult:
    """Outcome of recording a prompt or tool use."""

    session_id: str
    recorded: bool = False
    fallback: bool = False
    prompt_number: int | None = None
    message_id: int | None = None
    error: str | None = None


@dataclass
class StopResult:
    """Outcome of the stop hook's attempt to start a worker."""

    session_id: str
    spawned: bool = False
    reason: str = ""
    worker_pid: int | None = None
    error: str | None = None


@dataclass
class WorkerResult:
    """Outcome of one background worker pass."""

    session_id: str
    success: bool = False
    messages_processed: int = 0
    messages_failed: int = 0
    messages_dropped: int = 0
    written_notes: list[str] = field(default_factory=list)
    evicted_sessions: list[str] = field(default_factory=list)
    error: str | None = None


# =============================================================================
# Helpers
# =============================================================================


def open_store(config: LedgerConfig, logger: logging.Logger | None = None) -> LedgerStore:
    """Open the ledger database described by ``config``.

    Raises:
        StorageUnavailableError: If the database cannot be used.
    """
    return LedgerStore(
        config.db_path,
        logger,
        max_reads_per_file=config.retention.max_reads_per_file,
        max_tool_output_size=config.retention.max_tool_output_size,
    )


def project_from_cwd(cwd: str | None) -> str:
    """Derive a project name from a working directory."""
    if not cwd:
        return "default"
    return Path(cwd).resolve().name or "default"


def run_sweeps(
    store: LedgerStore,
    locks: LockStore,
    config: LedgerConfig,
    logger: logging.Logger,
) -> SweepResult:
    """Recover from crashed hooks and workers, then apply retention.

    Order matters: stale processing stamps are cleared before lock cleanup so
    that the locks of those sessions are released too, and orphans are
    failed before retention so they count as evictable.
    """
    result = SweepResult()
    processing = config.processing

    stale = store.cleanup_stale_processing_sessions(processing.staleness_timeout_minutes)
    for session in stale:
        locks.release_lock(session.session_id)
        result.stale_processing.append(session.session_id)
    if stale:
        logger.info(f"Reset {len(stale)} stale processing session(s)")

    result.stale_locks = locks.cleanup_stale_locks(
        processing.lock_max_age_ms,
        processing.pid_validation_timeout_ms,
        running_max_age_ms=processing.running_lock_max_age_ms,
    )
    result.released_claims = store.cleanup_stale_claims(processing.stale_claim_timeout_ms)

    for orphan in store.get_orphan_sessions(config.retention.orphan_timeout_hours):
        store.update_session_status(orphan.session_id, SESSION_STATUS_FAILED)
        result.orphans_failed.append(orphan.session_id)
        logger.info(f"Marked orphan session {orphan.session_id} as failed")

    result.evicted_sessions = store.cleanup_old_sessions(config.retention.sessions)
    return result


def _fallback(config: LedgerConfig, logger: logging.Logger) -> FallbackStore:
    return FallbackStore(config.fallback_dir, logger)


# =============================================================================
# Hook handlers
# =============================================================================


def handle_session_start(
    config: LedgerConfig,
    session_id: str,
    project: str,
    logger: logging.Logger | None = None,
) -> SessionStartResult:
    """Run maintenance sweeps and record a new session.

    Falls back to JSON storage if the database is unavailable. A session id
    that already exists (a resumed session) is left as is.
    """
    logger = logger or module_logger
    result = SessionStartResult(session_id=session_id, project=project)
    locks = LockStore(config.locks_dir, logger)

    try:
        locks.ensure_locks_dir()
    except OSError as e:
        logger.warning(f"Cannot create locks directory {config.locks_dir}: {e}")

    try:
        with open_store(config, logger) as store:
            result.sweep = run_sweeps(store, locks, config, logger)
            try:
                store.create_session(session_id, project)
                result.created = True
                logger.info(f"Session {session_id} started for project {project}")
            except sqlite3.IntegrityError:
                logger.info(f"Session {session_id} already recorded, resuming")
    except StorageUnavailableError as e:
        logger.warning(f"Database unavailable, using fallback storage: {e}")
        result.fallback = True
        result.created = _fallback(config, logger).init_session(session_id, project)
    except Exception as e:
        logger.error(f"Session start failed for {session_id}: {e}", exc_info=True)
        result.error = str(e)
    return result


def handle_user_prompt(
    config: LedgerConfig,
    session_id: str,
    prompt_text: str,
    logger: logging.Logger | None = None,
) -> RecordResult:
    """Record a user prompt and queue it for the worker."""
    logger = logger or module_logger
    result = RecordResult(session_id=session_id)

    try:
        with open_store(config, logger) as store:
            if store.get_session(session_id) is None:
                logger.warning(f"Session {session_id} not found, skipping prompt")
                return result
            prompt_number = store.get_next_prompt_number(session_id)
            store.add_user_prompt(session_id, prompt_number, prompt_text)
            result.message_id = store.enqueue_message(
                session_id,
                PromptPayload(
                    prompt_text=redact_sensitive_data(prompt_text), prompt_number=prompt_number
                ),
            )
            result.prompt_number = prompt_number
            result.recorded = True
            logger.info(f"Recorded prompt {prompt_number} ({len(prompt_text)} chars)")
    except StorageUnavailableError as e:
        logger.warning(f"Database unavailable, using fallback storage: {e}")
        result.fallback = True
        fallback = _fallback(config, logger)
        data = fallback.read_session(session_id)
        if data is None:
            logger.warning(f"Fallback session {session_id} not found, cannot record prompt")
            return result
        prompt_number = len(data.prompts) + 1
        result.recorded = fallback.add_prompt(session_id, prompt_number, prompt_text)
        fallback.enqueue_message(
            session_id,
            PromptPayload(
                prompt_text=redact_sensitive_data(prompt_text), prompt_number=prompt_number
            ),
        )
        result.prompt_number = prompt_number
    except Exception as e:
        logger.error(f"Recording prompt failed for {session_id}: {e}", exc_info=True)
        result.error = str(e)
    return result


def _tool_payload(
    tool_name: str,
    tool_input: str,
    tool_output: str,
    duration_ms: int | None,
    cwd: str | None,
    max_output_size: int,
) -> ToolUsePayload:
    output, _ = truncate_content(redact_sensitive_data(tool_output), max_output_size)
    return ToolUsePayload(
        tool_name=tool_name,
        tool_input=redact_sensitive_data(tool_input),
        tool_output=output,
        duration_ms=duration_ms,
        cwd=cwd,
        created_at_epoch=now_epoch_ms(),
    )


def _read_file_path(tool_input: str) -> str | None:
    try:
        data = json.loads(tool_input)
    except json.JSONDecodeError:
        return None
    path = data.get("file_path") if isinstance(data, dict) else None
    return path if isinstance(path, str) and path else None


def handle_tool_use(
    config: LedgerConfig,
    session_id: str,
    tool_name: str,
    tool_input: str,
    tool_output: str,
    duration_ms: int | None = None,
    cwd: str | None = None,
    logger: logging.Logger | None = None,
) -> RecordResult:
    """Record a tool invocation and queue it for the worker.

    File reads additionally go to the read log, deduplicated by content.
    """
    logger = logger or module_logger
    result = RecordResult(session_id=session_id)
    payload = _tool_payload(
        tool_name,
        tool_input,
        tool_output,
        duration_ms,
        cwd,
        config.retention.max_tool_output_size,
    )
    read_path = _read_file_path(tool_input) if tool_name in FILE_READ_TOOLS else None

    try:
        with open_store(config, logger) as store:
            if store.get_session(session_id) is None:
                logger.warning(f"Session {session_id} not found, skipping {tool_name}")
                return result
            prompt_number = store.get_current_prompt_number(session_id)
            store.add_tool_use(
                session_id,
                prompt_number,
                tool_name,
                tool_input,
                tool_output,
                duration_ms=duration_ms,
                cwd=cwd,
            )
            if read_path and tool_output:
                store.add_file_read(session_id, read_path, tool_output)
            result.message_id = store.enqueue_message(session_id, payload)
            result.prompt_number = prompt_number
            result.recorded = True
            logger.debug(f"Recorded {tool_name} for prompt {prompt_number}")
    except StorageUnavailableError as e:
        logger.warning(f"Database unavailable, using fallback storage: {e}")
        result.fallback = True
        fallback = _fallback(config, logger)
        data = fallback.read_session(session_id)
        if data is None:
            logger.warning(f"Fallback session {session_id} not found, cannot record {tool_name}")
            return result
        prompt_number = max(len(data.prompts), 1)
        result.recorded = fallback.add_tool_use(
            session_id,
            prompt_number,
            tool_name,
            tool_input,
            tool_output,
            duration_ms=duration_ms,
            cwd=cwd,
        )
        if read_path and tool_output:
            fallback.add_file_read(session_id, read_path, tool_output)
        fallback.enqueue_message(session_id, payload)
        result.prompt_number = prompt_number
    except Exception as e:
        logger.error(f"Recording {tool_name} failed for {session_id}: {e}", exc_info=True)
        result.error = str(e)
    return result


def worker_command(session_id: str) -> list[str]:
    """Command line that runs the background worker for a session."""
    return [sys.executable, "-m", "session_ledger.cli", "worker", session_id]


def handle_stop(
    config: LedgerConfig,
    session_id: str,
    logger: logging.Logger | None = None,
) -> StopResult:
    """Reserve the session and spawn a detached background worker.

    Skips spawning when a live worker already holds the session. If the
    worker cannot be started or exits with an error before the verification
    delay elapses, the reservation is released, but only while the lock on
    disk is still the one this process reserved.
    """
    logger = logger or module_logger
    locks = LockStore(config.locks_dir, logger)
    processing = config.processing

    reservation = locks.try_reserve(session_id, processing.pid_validation_timeout_ms)
    result = StopResult(session_id=session_id, reason=reservation.reason)
    if not reservation.acquired:
        result.worker_pid = reservation.holder_pid
        return result

    env = {**os.environ, CONFIG_DIR_ENV_VAR: str(config.config_dir)}
    try:
        child = subprocess.Popen(
            worker_command(session_id),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=env,
            **get_process_detach_kwargs(),
        )
    except OSError as e:
        logger.error(f"Failed to spawn worker for {session_id}: {e}")
        locks.release_reservation(session_id)
        result.reason = "spawn_failed"
        result.error = str(e)
        return result

    # Wait briefly to catch a worker that dies on startup
    time.sleep(processing.spawn_verify_delay_ms / 1000)
    returncode = child.poll()
    if returncode is not None and returncode != 0:
        logger.error(f"Worker for {session_id} exited early with code {returncode}")
        locks.release_reservation(session_id)
        result.reason = "spawn_failed"
        result.error = f"worker exited with code {returncode}"
        return result

    logger.info(f"Started background worker PID {child.pid} for {session_id}")
    result.spawned = True
    result.worker_pid = child.pid
    return result


# =============================================================================
# Background worker
# =============================================================================


def _drain(
    store: LedgerStore,
    session: Session,
    processor: MessageProcessor,
    result: WorkerResult,
    failed: list[int],
    logger: logging.Logger,
) -> None:
    """Claim every queued message and run it through the processor.

    Processed messages and messages with undecodable payloads are deleted.
    Ids of messages whose processing raised are appended to ``failed`` and
    stay claimed until the caller releases them, so one pass never sees the
    same message twice.
    """
    messages: list[PendingMessage] = store.claim_all_messages(session.session_id)
    if not messages:
        return
    logger.info(f"Processing {len(messages)} message(s) for {session.session_id}")

    done: list[int] = []
    for message in messages:
        if message.id is None:
            logger.warning(f"Skipping queued {message.message_type} message without an id")
            continue
        try:
            payload = message.parse_payload()
        except PayloadError as e:
            logger.warning(f"Dropping undecodable message: {e}")
            done.append(message.id)
            result.messages_dropped += 1
            continue
        try:
            result.written_notes.extend(processor(store, session, payload))
        except Exception as e:
            logger.warning(f"Processing message {message.id} ({message.message_type}) failed: {e}")
            failed.append(message.id)
            continue
        done.append(message.id)
        result.messages_processed += 1

    store.delete_messages(done)


def run_worker(
    config: LedgerConfig,
    session_id: str,
    processor: MessageProcessor | None = None,
    last_assistant_message: str | None = None,
    logger: logging.Logger | None = None,
) -> WorkerResult:
    """Process a stopped session in the background.

    Claims the session's reservation, drains its queue, requests a summary,
    marks the session completed, writes the completion marker and applies
    retention. The lock is always released and the database always closed.
    A crash after processing started marks the session failed.
    """
    logger = logger or module_logger
    processor = processor or DigestProcessor()
    result = WorkerResult(session_id=session_id)
    locks = LockStore(config.locks_dir, logger)

    if not locks.claim_lock(session_id):
        result.error = "reservation not held"
        return result

    store: LedgerStore | None = None
    try:
        store = open_store(config, logger)
        session = store.get_session(session_id)
        if session is None:
            logger.warning(f"Session {session_id} not found, nothing to process")
            result.error = "session not found"
            return result
        store.mark_session_processing(session_id)

        failed: list[int] = []
        _drain(store, session, processor, result, failed, logger)
        store.enqueue_message(
            session_id, SummaryRequestPayload(last_assistant_message=last_assistant_message)
        )
        _drain(store, session, processor, result, failed, logger)
        store.release_messages(failed)
        result.messages_failed = len(failed)

        store.update_session_status(session_id, SESSION_STATUS_COMPLETED)
        store.clear_session_processing(session_id)

        error_message = None
        if result.messages_failed:
            error_message = f"{result.messages_failed} message(s) failed and were requeued"
        write_completion_marker(
            config.completed_dir,
            session_id,
            success=error_message is None,
            written_notes=result.written_notes,
            error_message=error_message,
        )

        result.evicted_sessions = store.cleanup_old_sessions(config.retention.sessions)
        result.success = error_message is None
        result.error = error_message
        logger.info(
            f"Worker finished {session_id}: {result.messages_processed} processed, "
            f"{result.messages_failed} failed, {result.messages_dropped} dropped"
        )
    except Exception as e:
        logger.error(f"Worker failed for {session_id}: {e}", exc_info=True)
        result.error = str(e)
        if store is not None and store.is_open:
            _mark_failed(store, session_id, logger)
        try:
            write_completion_marker(
                config.completed_dir, session_id, success=False, error_message=str(e)
            )
        except OSError as marker_error:
            logger.warning(f"Failed to write completion marker: {marker_error}")
    finally:
        locks.release_lock(session_id)
        if store is not None:
            store.close()
    return result


def _mark_failed(store: LedgerStore, session_id: str, logger: logging.Logger) -> None:
    try:
        store.update_session_status(session_id, SESSION_STATUS_FAILED)
        store.clear_session_processing(session_id)
    except sqlite3.Error as e:
        logger.warning(f"Could not mark session {session_id} failed: {e}")


# =============================================================================
# Maintenance
# =============================================================================


def sweep(config: LedgerConfig, logger: logging.Logger | None = None) -> SweepResult | None:
    """Run the maintenance sweeps outside of a session start.

    Returns:
        What was cleaned, or None if the database is unavailable.
    """
    logger = logger or module_logger
    locks = LockStore(config.locks_dir, logger)
    try:
        with open_store(config, logger) as store:
            return run_sweeps(store, locks, config, logger)
    except StorageUnavailableError as e:
        logger.warning(f"Sweep skipped, database unavailable: {e}")
        return None
    except Exception as e:
        logger.error(f"Sweep failed: {e}", exc_info=True)
        return None
