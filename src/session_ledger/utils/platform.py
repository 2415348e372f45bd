"""Process helpers for cross-process coordination.

Provides:
- Process detachment for the background worker
- PID existence checks
- Process start-time lookup, used to tell a live lock holder apart from an
  unrelated process that was handed a recycled PID
"""

import logging
import os
import re
import subprocess
import sys
from datetime import datetime
from typing import Any, Final

from session_ledger.constants import PROCESS_START_TOLERANCE_MS

logger = logging.getLogger(__name__)

IS_WINDOWS: Final[bool] = sys.platform == "win32"
IS_LINUX: Final[bool] = sys.platform.startswith("linux")
IS_MACOS: Final[bool] = sys.platform == "darwin"

_MAX_PID: Final[int] = 2147483647
_BTIME_PATTERN = re.compile(r"^btime (\d+)$", re.MULTILINE)


# =============================================================================
# Process Management
# =============================================================================

# Windows creation flags: CREATE_NEW_PROCESS_GROUP | DETACHED_PROCESS
_WINDOWS_DETACH_FLAGS: Final[int] = 0x00000200 | 0x00000008
_PROCESS_QUERY_LIMITED_INFORMATION: Final[int] = 0x1000


def get_process_detach_kwargs() -> dict[str, Any]:
    """Popen keyword arguments that let the worker outlive the hook process."""
    if IS_WINDOWS:
        return {"creationflags": _WINDOWS_DETACH_FLAGS}
    return {"start_new_session": True}


def is_valid_pid(pid: int) -> bool:
    """Check that a PID is a positive integer in the OS range."""
    return isinstance(pid, int) and not isinstance(pid, bool) and 0 < pid <= _MAX_PID


def _windows_pid_exists(pid: int) -> bool:
    import ctypes

    kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    handle = kernel32.OpenProcess(_PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        return False
    kernel32.CloseHandle(handle)
    return True


def is_process_running(pid: int) -> bool:
    """Report whether any process currently owns ``pid``.

    Invalid PIDs are never running. On POSIX a signal-0 probe is used; a
    permission error still means the PID is taken.
    """
    if not is_valid_pid(pid):
        return False
    if IS_WINDOWS:
        return _windows_pid_exists(pid)
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except OSError:
        return False
    return True


# =============================================================================
# Process start time
# =============================================================================


def _linux_start_time_ms(pid: int) -> int | None:
    """Read a process start time from /proc.

    Field 22 of ``/proc/<pid>/stat`` is the start time in clock ticks since
    boot; ``btime`` in ``/proc/stat`` is the boot time in epoch seconds.
    """
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as f:
            stat = f.read()
        with open("/proc/stat", encoding="utf-8") as f:
            system_stat = f.read()
    except OSError:
        return None

    # comm may contain spaces and parentheses; fields start after the last ')'
    fields = stat[stat.rfind(")") + 1 :].split()
    if len(fields) < 20:
        return None
    match = _BTIME_PATTERN.search(system_stat)
    if not match:
        return None
    try:
        start_ticks = int(fields[19])
        ticks_per_second = os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError):
        return None
    return int((int(match.group(1)) + start_ticks / ticks_per_second) * 1000)


def _macos_start_time_ms(pid: int, timeout: float) -> int | None:
    """Ask ``ps`` for a process start time."""
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "lstart="],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
            env={**os.environ, "LC_ALL": "C"},
        )
    except subprocess.TimeoutExpired:
        logger.debug(f"ps timed out reading start time of PID {pid}")
        return None
    except OSError as e:
        logger.debug(f"ps unavailable: {e}")
        return None
    output = result.stdout.strip()
    if result.returncode != 0 or not output:
        return None
    try:
        # e.g. "Mon Oct 19 09:14:03 2026", local time
        started = datetime.strptime(" ".join(output.split()), "%a %b %d %H:%M:%S %Y")
    except ValueError:
        return None
    return int(started.timestamp() * 1000)


def get_process_start_time(pid: int, timeout: float = 0.5) -> int | None:
    """Get a process start time in epoch milliseconds.

    Args:
        pid: Process ID.
        timeout: Upper bound in seconds for platforms that shell out.

    Returns:
        Start time in milliseconds, or None if it cannot be determined.
    """
    if not is_valid_pid(pid):
        logger.warning(f"Refusing start-time lookup for invalid PID {pid!r}")
        return None
    if IS_LINUX:
        return _linux_start_time_ms(pid)
    if IS_MACOS:
        return _macos_start_time_ms(pid, timeout)
    logger.debug(f"Start-time lookup unsupported on {sys.platform}")
    return None


def is_process_alive_with_start_time(
    pid: int,
    expected_start_ms: int,
    timeout: float = 0.5,
) -> bool:
    """Check that a PID is alive and is the process that recorded it.

    Args:
        pid: Process ID from a lock file.
        expected_start_ms: Start time recorded alongside the PID.
        timeout: Upper bound in seconds for the start-time lookup.

    Returns:
        False if the process is gone or its start time differs from the
        recorded one by a second or more. True otherwise, including when the
        start time cannot be determined in time.
    """
    if not is_process_running(pid):
        return False
    actual_start_ms = get_process_start_time(pid, timeout=timeout)
    if actual_start_ms is None:
        logger.debug(f"Start time unavailable for PID {pid}, assuming alive")
        return True
    matches = abs(actual_start_ms - expected_start_ms) < PROCESS_START_TOLERANCE_MS
    if not matches:
        logger.info(f"PID {pid} was recycled (start time differs from lock), treating as dead")
    return matches
