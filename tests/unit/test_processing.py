"""Tests for the built-in digest processor."""

import json

import pytest

from session_ledger.processing import DigestProcessor
from session_ledger.store.core import LedgerStore
from session_ledger.store.models import (
    PromptPayload,
    Session,
    SummaryRequestPayload,
    ToolUsePayload,
)


@pytest.fixture
def session(store: LedgerStore) -> Session:
    return store.create_session("s1", "proj")


def _tool(name: str, tool_input: dict | str, created_at_epoch: int = 1767225600000):
    raw = tool_input if isinstance(tool_input, str) else json.dumps(tool_input)
    return ToolUsePayload(
        tool_name=name, tool_input=raw, tool_output="ok", created_at_epoch=created_at_epoch
    )


class TestToolUses:
    """Edits become change observations; other tools are ignored."""

    @pytest.mark.parametrize(
        ("tool_name", "tool_input", "expected_path"),
        [
            ("Edit", {"file_path": "/repo/src/app.py"}, "/repo/src/app.py"),
            ("Write", {"file_path": "/repo/README.md"}, "/repo/README.md"),
            ("NotebookEdit", {"notebook_path": "/repo/nb.ipynb"}, "/repo/nb.ipynb"),
        ],
    )
    def test_edit_creates_observation(
        self,
        store: LedgerStore,
        session: Session,
        tool_name: str,
        tool_input: dict,
        expected_path: str,
    ) -> None:
        notes = DigestProcessor()(store, session, _tool(tool_name, tool_input))

        observations = store.get_session_observations("s1")
        assert notes == [f"observation:{observations[0].id}"]
        assert observations[0].type == "change"
        assert observations[0].files_modified == [expected_path]
        assert observations[0].title == f"Modified {expected_path.rsplit('/', 1)[-1]}"
        assert observations[0].created_at_epoch == 1767225600000

    @pytest.mark.parametrize(
        ("tool_name", "tool_input"),
        [
            ("Bash", {"command": "ls"}),
            ("Read", {"file_path": "/repo/a.py"}),
            ("Edit", "not json"),
            ("Edit", {"old_string": "x"}),
            ("Edit", "[1, 2]"),
        ],
    )
    def test_no_observation(
        self, store: LedgerStore, session: Session, tool_name: str, tool_input
    ) -> None:
        assert DigestProcessor()(store, session, _tool(tool_name, tool_input)) == []
        assert store.get_session_observations("s1") == []

    def test_prompt_is_noted_only(self, store: LedgerStore, session: Session) -> None:
        payload = PromptPayload(prompt_text="hi", prompt_number=1)
        assert DigestProcessor()(store, session, payload) == []


class TestSummary:
    """A summary request writes the session summary."""

    def test_summary_from_activity(self, store: LedgerStore, session: Session) -> None:
        processor = DigestProcessor()
        store.add_user_prompt("s1", 1, "Add retry to the client")
        store.add_user_prompt("s1", 2, "Now add tests")
        store.add_tool_use("s1", 1, "Read", '{"file_path": "/repo/client.py"}', "code")
        store.add_file_read("s1", "/repo/client.py", "code")
        store.add_tool_use("s1", 1, "Edit", '{"file_path": "/repo/client.py"}', "ok")
        store.add_tool_use("s1", 2, "Edit", '{"file_path": "/repo/test_client.py"}', "ok")
        processor(store, session, _tool("Edit", {"file_path": "/repo/client.py"}))

        notes = processor(
            store, session, SummaryRequestPayload(last_assistant_message="Retry added")
        )

        assert notes == ["summary:s1"]
        summary = store.get_session_summary("s1")
        assert summary is not None
        assert summary.request == "Add retry to the client"
        assert summary.investigated == "/repo/client.py"
        assert summary.learned == "Retry added"
        assert summary.completed == "Edit x2, Read x1; modified /repo/client.py"
        observation_ids = [o.id for o in store.get_session_observations("s1")]
        assert summary.written_notes == [f"observation:{i}" for i in observation_ids]

    def test_empty_session(self, store: LedgerStore, session: Session) -> None:
        DigestProcessor()(store, session, SummaryRequestPayload())

        summary = store.get_session_summary("s1")
        assert summary is not None
        assert summary.request is None
        assert summary.completed is None
        assert summary.written_notes == []

    def test_long_fields_are_clipped(self, store: LedgerStore, session: Session) -> None:
        DigestProcessor()(store, session, SummaryRequestPayload(last_assistant_message="z" * 900))

        summary = store.get_session_summary("s1")
        assert summary is not None
        assert summary.learned == "z" * 500 + "..."
