"""Tests for the JSON fallback store.

Covers:
- Session initialization without overwrite
- Appending prompts, tool uses, file reads and queue messages
- Redaction in degraded mode
- Corrupt and missing files
- Status updates
"""

import hashlib
import json
import os
import stat
import sys
from pathlib import Path

import pytest

from session_ledger.fallback import FallbackStore
from session_ledger.store.models import PromptPayload, ToolUsePayload


@pytest.fixture
def fallback(tmp_path: Path) -> FallbackStore:
    return FallbackStore(tmp_path / "fallback")


@pytest.fixture
def started(fallback: FallbackStore) -> FallbackStore:
    assert fallback.init_session("s1", "proj") is True
    return fallback


class TestInitSession:
    def test_creates_file(self, started: FallbackStore) -> None:
        data = started.read_session("s1")

        assert data is not None
        assert data.session.session_id == "s1"
        assert data.session.project == "proj"
        assert data.session.status == "active"
        assert data.prompts == []
        assert data.pending == []

    def test_does_not_overwrite(self, started: FallbackStore) -> None:
        started.add_prompt("s1", 1, "keep me")

        assert started.init_session("s1", "other") is True

        data = started.read_session("s1")
        assert data is not None
        assert data.session.project == "proj"
        assert len(data.prompts) == 1

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX file modes")
    def test_file_is_private(self, started: FallbackStore) -> None:
        mode = stat.S_IMODE(os.stat(started.session_path("s1")).st_mode)
        assert mode == 0o600

    def test_unwritable_directory(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        fallback = FallbackStore(blocker / "fallback")

        assert fallback.init_session("s1", "proj") is False


class TestAppend:
    def test_add_prompt_redacts(self, started: FallbackStore) -> None:
        assert started.add_prompt("s1", 1, "password=correcthorse") is True

        prompt = started.read_session("s1").prompts[0]
        assert prompt["prompt_number"] == 1
        assert "correcthorse" not in prompt["prompt_text"]
        assert "created_at_epoch" in prompt

    def test_add_tool_use(self, started: FallbackStore) -> None:
        output = "x" * 200_000
        started.add_tool_use("s1", 1, "Bash", "ls", output, duration_ms=3, cwd="/repo")

        tool_use = started.read_session("s1").tool_uses[0]
        assert tool_use["tool_name"] == "Bash"
        assert tool_use["tool_output"] == output
        assert tool_use["tool_output_truncated"] is False
        assert tool_use["duration_ms"] == 3

    def test_add_file_read(self, started: FallbackStore) -> None:
        content = "a\n" * 1000
        started.add_file_read("s1", "/repo/a.py", content)

        read = started.read_session("s1").file_reads[0]
        assert read["content_hash"] == hashlib.sha256(content.encode()).hexdigest()
        assert len(read["content_snippet"]) == 1024
        assert read["line_count"] == 1001

    def test_enqueue_message(self, started: FallbackStore) -> None:
        started.enqueue_message("s1", PromptPayload(prompt_text="hi", prompt_number=1))
        started.enqueue_message(
            "s1",
            ToolUsePayload(
                tool_name="Edit", tool_input="{}", tool_output="ok", created_at_epoch=5
            ),
        )

        pending = started.read_session("s1").pending
        assert [m["message_type"] for m in pending] == ["prompt", "tool_use"]
        assert pending[0]["payload"] == {"prompt_text": "hi", "prompt_number": 1}
        assert "message_type" not in pending[1]["payload"]

    def test_unknown_session_is_not_created(self, fallback: FallbackStore) -> None:
        assert fallback.add_prompt("missing", 1, "hello") is False
        assert not fallback.session_exists("missing")


class TestCorruptFiles:
    def test_corrupt_file_reads_as_none(self, started: FallbackStore) -> None:
        started.session_path("s1").write_text("{broken", encoding="utf-8")
        assert started.read_session("s1") is None

    def test_corrupt_file_is_not_overwritten(self, started: FallbackStore) -> None:
        path = started.session_path("s1")
        path.write_text("{broken", encoding="utf-8")

        assert started.add_prompt("s1", 1, "hello") is False
        assert path.read_text(encoding="utf-8") == "{broken"

    def test_wrong_shape_reads_as_none(self, started: FallbackStore) -> None:
        started.session_path("s1").write_text(json.dumps({"prompts": []}), encoding="utf-8")
        assert started.read_session("s1") is None


class TestStatus:
    def test_update_status(self, started: FallbackStore) -> None:
        assert started.update_session_status("s1", "completed") is True
        assert started.read_session("s1").session.status == "completed"

    def test_invalid_status(self, started: FallbackStore) -> None:
        with pytest.raises(ValueError, match="Invalid session status"):
            started.update_session_status("s1", "paused")

    def test_missing_session(self, fallback: FallbackStore) -> None:
        assert fallback.update_session_status("missing", "failed") is False
