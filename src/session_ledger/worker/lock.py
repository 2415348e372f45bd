"""Per-session reservation locks for background workers.

Two-phase locking keeps at most one worker per session:

1. Reservation: the stop hook atomically creates ``{locks_dir}/{session}.lock``
   with status ``reserved`` (``O_CREAT | O_EXCL``) before spawning a worker.
2. Claim: the spawned worker rewrites the lock as ``running`` with its own
   PID and process start time (temp file + ``os.replace``).

A lock left behind by a crashed process is recognized as stale (expired
reservation, a running holder whose PID is gone or was recycled, or a running
lock past its max age) and removed. Removal renames the file to a name
private to this process before deleting it, so when several processes judge
the same lock stale only one of them takes its place. Lock contents are
validated on every read and invalid files are deleted.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from session_ledger.constants import (
    DEFAULT_PID_VALIDATION_TIMEOUT_MS,
    LOCK_FILE_SUFFIX,
    PRIVATE_DIR_MODE,
    PRIVATE_FILE_MODE,
    RESERVATION_MAX_AGE_MS,
    RUNNING_LOCK_MAX_AGE_MS,
)
from session_ledger.utils.platform import (
    get_process_start_time,
    is_process_alive_with_start_time,
    is_process_running,
)
from session_ledger.utils.redact import sanitize_session_id
from session_ledger.utils.timestamps import now_epoch_ms

module_logger = logging.getLogger(__name__)

# Tolerated clock skew for timestamps written by another process
_FUTURE_SKEW_MS = 60 * 1000
# An empty lock file younger than this is still being written
_EMPTY_LOCK_GRACE_MS = 5 * 1000


def _not_in_future(value: int) -> int:
    if value > now_epoch_ms() + _FUTURE_SKEW_MS:
        raise ValueError("timestamp is in the future")
    return value


class ReservedLock(BaseModel):
    """A lock taken by the stop hook while it spawns a worker."""

    session_id: str = Field(min_length=1)
    status: Literal["reserved"] = "reserved"
    reserved_at: int
    owner_pid: int | None = None

    @field_validator("reserved_at")
    @classmethod
    def check_reserved_at(cls, value: int) -> int:
        return _not_in_future(value)

    def age_ms(self) -> int:
        return now_epoch_ms() - self.reserved_at


class RunningLock(BaseModel):
    """A lock held by a running worker."""

    session_id: str = Field(min_length=1)
    status: Literal["running"] = "running"
    pid: int = Field(gt=0)
    started_at: int
    process_start_time: int | None = None

    @field_validator("started_at")
    @classmethod
    def check_started_at(cls, value: int) -> int:
        _not_in_future(value)
        if value < now_epoch_ms() - RUNNING_LOCK_MAX_AGE_MS:
            raise ValueError("running lock is older than 24h")
        return value

    def age_ms(self) -> int:
        return now_epoch_ms() - self.started_at


LockInfo = Annotated[ReservedLock | RunningLock, Field(discriminator="status")]

_lock_adapter: TypeAdapter[LockInfo] = TypeAdapter(LockInfo)


@dataclass
class ReservationResult:
    """Outcome of the stop hook's reservation attempt.

    Attributes:
        acquired: Whether this process now holds the reservation.
        reason: Short machine-readable reason (acquired, running, reserved,
            unavailable).
        holder_pid: PID of the worker holding the lock, if any.
    """

    acquired: bool
    reason: str
    holder_pid: int | None = None


class LockStore:
    """Reservation lock files under one directory.

    All operations are best effort: filesystem failures are logged and
    reported as "not acquired" rather than raised.
    """

    def __init__(self, locks_dir: Path, logger: logging.Logger | None = None):
        """Initialize the lock store.

        Args:
            locks_dir: Directory holding one lock file per session.
            logger: Logger for lock diagnostics. Defaults to the module logger.
        """
        self.locks_dir = locks_dir
        self.logger = logger or module_logger

    def ensure_locks_dir(self) -> None:
        """Create the locks directory with owner-only permissions."""
        self.locks_dir.mkdir(parents=True, mode=PRIVATE_DIR_MODE, exist_ok=True)

    def lock_path(self, session_id: str) -> Path:
        """Path of the lock file for a session."""
        return self.locks_dir / f"{sanitize_session_id(session_id)}{LOCK_FILE_SUFFIX}"

    # =========================================================================
    # Reading
    # =========================================================================

    def _read_path(self, path: Path) -> ReservedLock | RunningLock | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.warning(f"Cannot read lock file {path}: {e}")
            return None
        if not content.strip() and self._is_fresh(path):
            # Created with O_EXCL but not yet written by its owner
            return None
        try:
            return _lock_adapter.validate_python(json.loads(content))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            self.logger.info(f"Removing invalid lock file {path.name}: {e}")
            self._unlink(path)
            return None

    def read_lock(self, session_id: str) -> ReservedLock | RunningLock | None:
        """Read and validate a session's lock.

        Returns:
            The lock, or None if it does not exist or was invalid (invalid
            files are deleted).
        """
        return self._read_path(self.lock_path(session_id))

    @staticmethod
    def _is_fresh(path: Path) -> bool:
        try:
            return now_epoch_ms() - int(path.stat().st_mtime * 1000) < _EMPTY_LOCK_GRACE_MS
        except OSError:
            return False

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            self.logger.warning(f"Failed to remove lock file {path}: {e}")
            return False

    def _discard(self, path: Path, judged: ReservedLock | RunningLock) -> bool:
        """Remove a lock file only if it still holds the lock that was judged.

        The file is renamed to a name unique to this process first. If what
        was moved is no longer the judged lock (another process replaced it in
        the meantime) it is linked back into place and kept.

        Returns:
            True if the judged lock is gone.
        """
        moved = path.with_name(f"{path.name}.{os.getpid()}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(path, moved)
        except FileNotFoundError:
            return True
        except OSError as e:
            self.logger.warning(f"Failed to remove lock file {path}: {e}")
            return False

        try:
            current = _lock_adapter.validate_json(moved.read_bytes())
        except (OSError, PydanticValidationError):
            current = None
        if current is not None and current != judged:
            self.logger.info(f"Lock {path.name} changed while being removed, restoring it")
            try:
                os.link(moved, path)
            except OSError as e:
                self.logger.warning(f"Could not restore lock {path.name}: {e}")
            self._unlink(moved)
            return False

        self._unlink(moved)
        return True

    # =========================================================================
    # Reservation (stop hook)
    # =========================================================================

    def acquire_reservation_lock(self, session_id: str) -> bool:
        """Atomically create a ``reserved`` lock for a session.

        If a lock already exists it is inspected once: an invalid lock, an
        expired reservation, or a running lock whose PID no longer exists is
        removed and creation is retried a single time.

        Returns:
            True if this process now holds the reservation.
        """
        return self._acquire(session_id, retry=True)

    def _acquire(self, session_id: str, retry: bool) -> bool:
        try:
            self.ensure_locks_dir()
        except OSError as e:
            self.logger.error(f"Cannot create locks directory {self.locks_dir}: {e}")
            return False

        path = self.lock_path(session_id)
        lock = ReservedLock(
            session_id=session_id, reserved_at=now_epoch_ms(), owner_pid=os.getpid()
        )
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, PRIVATE_FILE_MODE)
        except FileExistsError:
            if retry and self._remove_if_stale(session_id):
                return self._acquire(session_id, retry=False)
            return False
        except OSError as e:
            self.logger.error(f"Cannot create lock file {path}: {e}")
            return False

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(lock.model_dump_json(indent=2))
        except OSError as e:
            self.logger.error(f"Cannot write lock file {path}: {e}")
            self._unlink(path)
            return False

        self.logger.debug(f"Reserved lock for session {session_id}")
        return True

    def _remove_if_stale(self, session_id: str) -> bool:
        """Inspect an existing lock and delete it if it is stale.

        Returns:
            True if the lock is gone and creation may be retried.
        """
        path = self.lock_path(session_id)
        existing = self._read_path(path)
        if existing is None:
            # Invalid (already deleted) or released concurrently
            return True
        if isinstance(existing, ReservedLock):
            if existing.age_ms() > RESERVATION_MAX_AGE_MS:
                self.logger.info(f"Removing expired reservation for {session_id}")
                return self._discard(path, existing)
            return False
        if not is_process_running(existing.pid):
            self.logger.info(f"Removing lock of dead worker PID {existing.pid} for {session_id}")
            return self._discard(path, existing)
        return False

    def try_reserve(
        self,
        session_id: str,
        pid_validation_timeout_ms: int = DEFAULT_PID_VALIDATION_TIMEOUT_MS,
    ) -> ReservationResult:
        """Reserve a session for a new worker, validating any existing holder.

        On contention the current lock decides: a ``running`` holder is
        checked by PID and process start time (bounded by the timeout; an
        unresolved check counts as alive) and left alone if alive; a
        ``reserved`` lock means another stop hook is mid-spawn. A confirmed
        stale lock is removed and acquisition retried once.

        Args:
            session_id: Session to reserve.
            pid_validation_timeout_ms: Upper bound for the liveness check.

        Returns:
            ReservationResult describing the outcome.
        """
        if self.acquire_reservation_lock(session_id):
            return ReservationResult(acquired=True, reason="acquired")

        existing = self.read_lock(session_id)
        if isinstance(existing, RunningLock):
            expected_start = existing.process_start_time or existing.started_at
            alive = is_process_alive_with_start_time(
                existing.pid,
                expected_start,
                timeout=pid_validation_timeout_ms / 1000,
            )
            if alive:
                self.logger.info(
                    f"Worker PID {existing.pid} already processing {session_id}, skipping"
                )
                return ReservationResult(
                    acquired=False, reason="running", holder_pid=existing.pid
                )
            self.logger.info(f"Lock holder PID {existing.pid} for {session_id} is stale")
            if not self._discard(self.lock_path(session_id), existing):
                return ReservationResult(acquired=False, reason="unavailable")
        elif isinstance(existing, ReservedLock):
            self.logger.info(f"Session {session_id} already reserved, skipping")
            return ReservationResult(acquired=False, reason="reserved")

        if self._acquire(session_id, retry=False):
            return ReservationResult(acquired=True, reason="acquired")
        return ReservationResult(acquired=False, reason="unavailable")

    # =========================================================================
    # Claim (background worker)
    # =========================================================================

    def claim_lock(self, session_id: str, pid: int | None = None) -> bool:
        """Promote a ``reserved`` lock to ``running`` for this process.

        Args:
            session_id: Session whose reservation to claim.
            pid: PID to record; defaults to the current process.

        Returns:
            True if the lock now names this process as its holder.
        """
        path = self.lock_path(session_id)
        existing = self._read_path(path)
        if not isinstance(existing, ReservedLock):
            self.logger.warning(f"No reservation to claim for {session_id}")
            return False

        pid = pid or os.getpid()
        lock = RunningLock(
            session_id=session_id,
            pid=pid,
            started_at=now_epoch_ms(),
            process_start_time=get_process_start_time(pid),
        )
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            fd = os.open(tmp_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, PRIVATE_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(lock.model_dump_json(indent=2))
            os.replace(tmp_path, path)
        except OSError as e:
            self.logger.error(f"Failed to claim lock for {session_id}: {e}")
            self._unlink(tmp_path)
            return False

        self.logger.debug(f"Claimed lock for {session_id} as PID {pid}")
        return True

    def release_lock(self, session_id: str) -> None:
        """Delete a session's lock file. Missing files are ignored."""
        if self._unlink(self.lock_path(session_id)):
            self.logger.debug(f"Released lock for {session_id}")

    def release_reservation(self, session_id: str) -> bool:
        """Give up a reservation this process took, if it still holds it.

        A lock claimed by a worker or reserved by another process is left
        alone.

        Returns:
            True if this process's reservation was removed.
        """
        path = self.lock_path(session_id)
        lock = self._read_path(path)
        if not isinstance(lock, ReservedLock) or lock.owner_pid != os.getpid():
            self.logger.debug(f"Reservation for {session_id} is no longer ours, keeping it")
            return False
        if self._discard(path, lock):
            self.logger.debug(f"Released reservation for {session_id}")
            return True
        return False

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup_stale_locks(
        self,
        max_age_ms: int = RESERVATION_MAX_AGE_MS,
        pid_validation_timeout_ms: int = DEFAULT_PID_VALIDATION_TIMEOUT_MS,
        running_max_age_ms: int | None = None,
    ) -> list[str]:
        """Remove locks left behind by crashed or hung processes.

        Removes invalid lock files, reservations older than ``max_age_ms``,
        running locks older than ``running_max_age_ms`` whether or not the
        holder is alive, and running locks whose holder is dead or whose PID
        was recycled.

        Args:
            max_age_ms: Maximum age of a reservation.
            pid_validation_timeout_ms: Upper bound for each liveness check.
            running_max_age_ms: Maximum age of a running lock. Defaults to
                ``max_age_ms``.

        Returns:
            Sanitized session ids whose locks were removed.
        """
        if running_max_age_ms is None:
            running_max_age_ms = max_age_ms
        try:
            self.ensure_locks_dir()
            paths = sorted(self.locks_dir.glob(f"*{LOCK_FILE_SUFFIX}"))
        except OSError as e:
            self.logger.warning(f"Cannot scan locks directory {self.locks_dir}: {e}")
            return []

        cleaned: list[str] = []
        for path in paths:
            session_key = path.name[: -len(LOCK_FILE_SUFFIX)]
            lock = self._read_path(path)
            if lock is None:
                if not path.exists():
                    cleaned.append(session_key)
                continue
            if isinstance(lock, ReservedLock):
                stale = lock.age_ms() > max_age_ms
            elif lock.age_ms() > running_max_age_ms:
                self.logger.warning(
                    f"Running lock for {session_key} (PID {lock.pid}) is older than "
                    f"{running_max_age_ms}ms, removing it"
                )
                stale = True
            else:
                stale = not is_process_alive_with_start_time(
                    lock.pid,
                    lock.process_start_time or lock.started_at,
                    timeout=pid_validation_timeout_ms / 1000,
                )
            if stale and self._discard(path, lock):
                cleaned.append(session_key)

        if cleaned:
            self.logger.info(f"Cleaned {len(cleaned)} stale lock(s): {', '.join(cleaned)}")
        return cleaned
