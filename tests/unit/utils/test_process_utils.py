"""Tests for process helpers used by lock liveness checks."""

import os
import sys
from unittest.mock import patch

import pytest

from session_ledger.utils import platform
from session_ledger.utils.platform import (
    get_process_detach_kwargs,
    get_process_start_time,
    is_process_alive_with_start_time,
    is_process_running,
    is_valid_pid,
)


class TestPidValidation:
    @pytest.mark.parametrize("pid", [1, 4242, 2147483647])
    def test_valid(self, pid: int) -> None:
        assert is_valid_pid(pid) is True

    @pytest.mark.parametrize("pid", [0, -1, 2147483648, True, "12"])
    def test_invalid(self, pid) -> None:
        assert is_valid_pid(pid) is False


class TestIsProcessRunning:
    def test_current_process(self) -> None:
        assert is_process_running(os.getpid()) is True

    def test_invalid_pid(self) -> None:
        assert is_process_running(0) is False

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_missing_process(self) -> None:
        with patch("session_ledger.utils.platform.os.kill", side_effect=ProcessLookupError):
            assert is_process_running(4242) is False

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_other_users_process_counts_as_running(self) -> None:
        with patch("session_ledger.utils.platform.os.kill", side_effect=PermissionError):
            assert is_process_running(4242) is True


class TestProcessStartTime:
    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="reads /proc")
    def test_current_process_start_time_is_stable(self) -> None:
        first = get_process_start_time(os.getpid())
        second = get_process_start_time(os.getpid())

        assert first is not None
        assert first == second

    def test_invalid_pid_has_no_start_time(self) -> None:
        assert get_process_start_time(-3) is None

    def test_alive_when_start_time_matches(self) -> None:
        with (
            patch.object(platform, "is_process_running", return_value=True),
            patch.object(platform, "get_process_start_time", return_value=1_000_000),
        ):
            assert is_process_alive_with_start_time(4242, 1_000_400) is True

    def test_recycled_pid_is_dead(self) -> None:
        with (
            patch.object(platform, "is_process_running", return_value=True),
            patch.object(platform, "get_process_start_time", return_value=1_000_000),
        ):
            assert is_process_alive_with_start_time(4242, 1_005_000) is False

    def test_unknown_start_time_counts_as_alive(self) -> None:
        with (
            patch.object(platform, "is_process_running", return_value=True),
            patch.object(platform, "get_process_start_time", return_value=None),
        ):
            assert is_process_alive_with_start_time(4242, 1_000_000) is True

    def test_missing_process_is_dead(self) -> None:
        with patch.object(platform, "is_process_running", return_value=False):
            assert is_process_alive_with_start_time(4242, 1_000_000) is False


class TestDetachKwargs:
    def test_posix_starts_new_session(self) -> None:
        with patch.object(platform, "IS_WINDOWS", False):
            assert get_process_detach_kwargs() == {"start_new_session": True}

    def test_windows_uses_creation_flags(self) -> None:
        with patch.object(platform, "IS_WINDOWS", True):
            assert "creationflags" in get_process_detach_kwargs()
