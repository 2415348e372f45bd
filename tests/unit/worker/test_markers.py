"""Tests for completion markers."""

import json
import os
import stat
import sys
from pathlib import Path

import pytest

from session_ledger.worker.markers import (
    marker_path,
    read_completion_marker,
    write_completion_marker,
)


class TestCompletionMarkers:
    def test_success_marker(self, tmp_path: Path) -> None:
        completed_dir = tmp_path / "completed"

        path = write_completion_marker(
            completed_dir, "s1", success=True, written_notes=["observation:1"]
        )

        assert path == completed_dir / "s1.marker"
        data = json.loads(path.read_text())
        assert data["success"] is True
        assert data["written_notes"] == ["observation:1"]
        assert "error_message" not in data
        assert data["completed_at"].endswith("+00:00")

    def test_failure_marker_round_trip(self, tmp_path: Path) -> None:
        write_completion_marker(tmp_path, "s1", success=False, error_message="boom")

        marker = read_completion_marker(tmp_path, "s1")

        assert marker is not None
        assert marker.success is False
        assert marker.error_message == "boom"
        assert marker.written_notes == []

    def test_rewrite_replaces_marker(self, tmp_path: Path) -> None:
        write_completion_marker(tmp_path, "s1", success=False, error_message="boom")
        write_completion_marker(tmp_path, "s1", success=True)

        marker = read_completion_marker(tmp_path, "s1")
        assert marker is not None and marker.success is True
        assert not list(tmp_path.glob("*.tmp"))

    def test_missing_marker(self, tmp_path: Path) -> None:
        assert read_completion_marker(tmp_path, "s1") is None

    def test_corrupt_marker(self, tmp_path: Path) -> None:
        marker_path(tmp_path, "s1").write_text("{oops")
        assert read_completion_marker(tmp_path, "s1") is None

    def test_session_id_is_sanitized(self, tmp_path: Path) -> None:
        assert marker_path(tmp_path, "a/b c").name == "a_b_c.marker"

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX file modes")
    def test_marker_is_private(self, tmp_path: Path) -> None:
        path = write_completion_marker(tmp_path / "completed", "s1", success=True)
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
