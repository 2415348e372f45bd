"""Background worker coordination.

- lock.py: Per-session reservation locks with PID liveness checks
- markers.py: Completion markers written when a session is processed
"""

from session_ledger.worker.lock import (
    LockInfo,
    LockStore,
    ReservationResult,
    ReservedLock,
    RunningLock,
)
from session_ledger.worker.markers import (
    CompletionMarker,
    read_completion_marker,
    write_completion_marker,
)

__all__ = [
    "CompletionMarker",
    "LockInfo",
    "LockStore",
    "ReservationResult",
    "ReservedLock",
    "RunningLock",
    "read_completion_marker",
    "write_completion_marker",
]
