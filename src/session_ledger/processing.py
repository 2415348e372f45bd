"""Message processors for the background worker.

The worker drains a session's queue through a :class:`MessageProcessor`.
Anything callable with ``(store, session, payload)`` that returns the
identifiers of notes it wrote can be plugged in; :class:`DigestProcessor` is
the built-in one, which derives observations and a summary from recorded
activity without calling out to a model.
"""

import json
import logging
from collections import Counter
from pathlib import PurePath
from typing import Protocol

from session_ledger.store.core import LedgerStore
from session_ledger.store.models import (
    Observation,
    PromptPayload,
    Session,
    SessionSummary,
    SummaryRequestPayload,
    ToolUsePayload,
)

logger = logging.getLogger(__name__)

EDIT_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})

_SUMMARY_FIELD_LIMIT = 500


class MessageProcessor(Protocol):
    """Processes one decoded queue message.

    Raising marks the message as failed: it is released back to the queue
    and delivered again on the next pass.
    """

    def __call__(
        self,
        store: LedgerStore,
        session: Session,
        payload: ToolUsePayload | PromptPayload | SummaryRequestPayload,
    ) -> list[str]: ...


def _edited_file(tool_input: str) -> str | None:
    """Extract the target path from an edit tool's JSON input."""
    try:
        data = json.loads(tool_input)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    path = data.get("file_path") or data.get("notebook_path") or data.get("path")
    return path if isinstance(path, str) and path else None


def _clip(text: str | None) -> str | None:
    if not text:
        return None
    return text if len(text) <= _SUMMARY_FIELD_LIMIT else text[:_SUMMARY_FIELD_LIMIT] + "..."


class DigestProcessor:
    """Heuristic processor.

    - Edit tool uses become ``change`` observations naming the file.
    - A summary request writes a :class:`SessionSummary` built from the
      session's prompts, tool uses and file edits.
    """

    def __call__(
        self,
        store: LedgerStore,
        session: Session,
        payload: ToolUsePayload | PromptPayload | SummaryRequestPayload,
    ) -> list[str]:
        if isinstance(payload, ToolUsePayload):
            return self._process_tool_use(store, session, payload)
        if isinstance(payload, SummaryRequestPayload):
            return self._summarize(store, session, payload)
        logger.debug(f"Prompt {payload.prompt_number} noted for {session.session_id}")
        return []

    def _process_tool_use(
        self, store: LedgerStore, session: Session, payload: ToolUsePayload
    ) -> list[str]:
        if payload.tool_name not in EDIT_TOOLS:
            return []
        file_path = _edited_file(payload.tool_input)
        if not file_path:
            return []
        observation_id = store.create_observation(
            Observation(
                session_id=session.session_id,
                project=session.project,
                type="change",
                title=f"Modified {PurePath(file_path).name}",
                files_modified=[file_path],
                created_at_epoch=payload.created_at_epoch,
            )
        )
        return [f"observation:{observation_id}"]

    def _summarize(
        self, store: LedgerStore, session: Session, payload: SummaryRequestPayload
    ) -> list[str]:
        prompts = store.get_session_prompts(session.session_id)
        tool_uses = store.get_session_tool_uses(session.session_id)
        file_reads = store.get_session_file_reads(session.session_id)
        observations = store.get_session_observations(session.session_id)

        tool_counts = Counter(tool_use.tool_name for tool_use in tool_uses)
        modified = sorted({path for obs in observations for path in obs.files_modified})
        files_read = sorted({read.file_path for read in file_reads})

        completed = None
        if tool_counts:
            completed = ", ".join(f"{name} x{count}" for name, count in tool_counts.most_common())
        if modified:
            completed = f"{completed or 'No tools recorded'}; modified {', '.join(modified)}"

        summary = SessionSummary(
            session_id=session.session_id,
            project=session.project,
            request=_clip(prompts[0].prompt_text) if prompts else None,
            investigated=_clip(", ".join(files_read)) if files_read else None,
            learned=_clip(payload.last_assistant_message),
            completed=_clip(completed),
            written_notes=[f"observation:{obs.id}" for obs in observations if obs.id],
        )
        store.upsert_session_summary(summary)
        logger.info(
            f"Summarized session {session.session_id}: {len(prompts)} prompt(s), "
            f"{len(tool_uses)} tool use(s)"
        )
        return [f"summary:{session.session_id}"]
