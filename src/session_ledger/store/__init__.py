"""Ledger store package.

- schema.py: Database schema SQL
- migrations.py: Idempotent schema migration
- retry.py: Retry-with-backoff for transient lock errors
- models.py: Row dataclasses and queue payload models
- core.py: LedgerStore with connection management
- sessions.py: Session lifecycle and cleanup sweeps
- activities.py: Prompts, tool uses, file reads and FTS5 search
- observations.py: Session summaries and observations
- pending.py: Claim-and-delete work queue
"""

from session_ledger.store.core import LedgerStore
from session_ledger.store.models import (
    FileRead,
    MessagePayload,
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
from session_ledger.store.retry import retry_with_backoff, with_retry

__all__ = [
    # Main class
    "LedgerStore",
    # Data models
    "FileRead",
    "Observation",
    "PendingMessage",
    "Session",
    "SessionSummary",
    "ToolUse",
    "UserPrompt",
    # Queue payloads
    "MessagePayload",
    "PromptPayload",
    "SummaryRequestPayload",
    "ToolUsePayload",
    # Retry
    "retry_with_backoff",
    "with_retry",
]
