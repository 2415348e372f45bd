"""Tests for the claim-and-delete pending message queue.

Covers:
- FIFO claim order and batch limits
- Claimed messages are invisible to further claims
- Delete and release
- Stale claim redelivery, exactly once
- A session from first message to retention
- Payload decoding and PayloadError
- No double claims across processes
"""

import multiprocessing
import sqlite3
import sys
from pathlib import Path

import pytest

from session_ledger.exceptions import PayloadError
from session_ledger.store.core import LedgerStore
from session_ledger.store.models import (
    PendingMessage,
    PromptPayload,
    SummaryRequestPayload,
    ToolUsePayload,
)
from session_ledger.utils.timestamps import now_epoch_ms


@pytest.fixture
def session_store(store: LedgerStore) -> LedgerStore:
    store.create_session("s1", "proj")
    return store


def _prompt(number: int) -> PromptPayload:
    return PromptPayload(prompt_text=f"prompt {number}", prompt_number=number)


def _enqueue_prompts(ledger: LedgerStore, count: int, session_id: str = "s1") -> list[int]:
    return [ledger.enqueue_message(session_id, _prompt(n)) for n in range(1, count + 1)]


class TestClaim:
    """Claims return unclaimed messages oldest first."""

    def test_fifo_order(self, session_store: LedgerStore) -> None:
        ids = _enqueue_prompts(session_store, 5)

        claimed = session_store.claim_all_messages("s1")

        assert [m.id for m in claimed] == ids
        assert all(m.is_claimed for m in claimed)

    def test_batch_limit(self, session_store: LedgerStore) -> None:
        ids = _enqueue_prompts(session_store, 5)

        first = session_store.claim_messages("s1", limit=2)
        second = session_store.claim_messages("s1", limit=10)

        assert [m.id for m in first] == ids[:2]
        assert [m.id for m in second] == ids[2:]
        assert session_store.claim_messages("s1", limit=10) == []

    def test_zero_limit_claims_nothing(self, session_store: LedgerStore) -> None:
        _enqueue_prompts(session_store, 1)
        assert session_store.claim_messages("s1", limit=0) == []
        assert session_store.get_pending_count("s1") == 1

    def test_claims_are_per_session(self, session_store: LedgerStore) -> None:
        session_store.create_session("s2", "proj")
        _enqueue_prompts(session_store, 2, "s1")
        _enqueue_prompts(session_store, 3, "s2")

        assert len(session_store.claim_all_messages("s2")) == 3
        assert session_store.get_pending_count("s1") == 2
        assert session_store.get_pending_count() == 2

    def test_counts_exclude_claimed(self, session_store: LedgerStore) -> None:
        _enqueue_prompts(session_store, 3)
        assert session_store.has_pending_messages("s1") is True

        session_store.claim_all_messages("s1")

        assert session_store.get_pending_count("s1") == 0
        assert session_store.has_pending_messages("s1") is False
        assert len(session_store.get_pending_messages("s1")) == 3


class TestResolve:
    """Processed messages are deleted, failed ones released."""

    def test_delete(self, session_store: LedgerStore) -> None:
        _enqueue_prompts(session_store, 3)
        claimed = session_store.claim_all_messages("s1")

        session_store.delete_message(claimed[0].id)
        session_store.delete_messages([m.id for m in claimed[1:]])

        assert session_store.get_pending_messages("s1") == []

    def test_release_makes_claimable_again(self, session_store: LedgerStore) -> None:
        ids = _enqueue_prompts(session_store, 2)
        session_store.claim_all_messages("s1")

        session_store.release_messages([ids[1]])

        reclaimed = session_store.claim_all_messages("s1")
        assert [m.id for m in reclaimed] == [ids[1]]

    def test_empty_id_lists_are_noops(self, session_store: LedgerStore) -> None:
        session_store.delete_messages([])
        session_store.release_messages([])

    def test_delete_session_messages(self, session_store: LedgerStore) -> None:
        _enqueue_prompts(session_store, 4)
        assert session_store.delete_session_messages("s1") == 4
        assert session_store.get_pending_messages("s1") == []


class TestStaleClaims:
    """Claims held past the timeout are redelivered."""

    def test_stale_claim_is_released(self, session_store: LedgerStore) -> None:
        ids = _enqueue_prompts(session_store, 2)
        session_store.claim_all_messages("s1")
        session_store._get_connection().execute(
            "UPDATE pending_messages SET claimed_at_epoch = ? WHERE id = ?",
            (now_epoch_ms() - 120_000, ids[0]),
        )

        released = session_store.cleanup_stale_claims(timeout_ms=60_000)

        assert released == 1
        redelivered = session_store.claim_all_messages("s1")
        assert [m.id for m in redelivered] == [ids[0]]
        assert redelivered[0].parse_payload() == _prompt(1)
        assert session_store.claim_all_messages("s1") == []
        assert session_store.cleanup_stale_claims(timeout_ms=60_000) == 0

    def test_fresh_claims_are_kept(self, session_store: LedgerStore) -> None:
        _enqueue_prompts(session_store, 2)
        session_store.claim_all_messages("s1")

        assert session_store.cleanup_stale_claims(timeout_ms=60_000) == 0
        assert session_store.get_pending_count("s1") == 0


class TestPayloads:
    """Payloads decode into exactly one typed shape."""

    @pytest.mark.parametrize(
        "payload",
        [
            ToolUsePayload(
                tool_name="Edit",
                tool_input='{"file_path": "/a.py"}',
                tool_output="ok",
                duration_ms=5,
                cwd="/repo",
                created_at_epoch=1767225600000,
            ),
            PromptPayload(prompt_text="hello", prompt_number=2),
            SummaryRequestPayload(last_assistant_message="done"),
            SummaryRequestPayload(),
        ],
    )
    def test_queue_preserves_payload(self, session_store: LedgerStore, payload) -> None:
        session_store.enqueue_message("s1", payload)

        message = session_store.claim_all_messages("s1")[0]

        assert message.message_type == payload.message_type
        assert '"message_type"' not in message.payload
        assert message.parse_payload() == payload

    def _message(self, message_type: str, payload: str) -> PendingMessage:
        return PendingMessage(
            id=7,
            session_id="s1",
            message_type=message_type,
            payload=payload,
            created_at="2026-01-01T00:00:00.000+00:00",
            created_at_epoch=1767225600000,
        )

    def test_invalid_json(self) -> None:
        with pytest.raises(PayloadError) as exc_info:
            self._message("prompt", "{not json").parse_payload()
        assert exc_info.value.message_id == 7
        assert exc_info.value.message_type == "prompt"

    def test_non_object_json(self) -> None:
        with pytest.raises(PayloadError, match="JSON object"):
            self._message("prompt", "[1, 2]").parse_payload()

    def test_shape_mismatch(self) -> None:
        with pytest.raises(PayloadError, match="does not match prompt"):
            self._message("prompt", '{"tool_name": "Bash"}').parse_payload()

    def test_unknown_type(self) -> None:
        with pytest.raises(PayloadError):
            self._message("telemetry", "{}").parse_payload()

    def test_type_column_wins_over_body(self) -> None:
        message = self._message(
            "summary_request", '{"message_type": "prompt", "last_assistant_message": "x"}'
        )
        assert isinstance(message.parse_payload(), SummaryRequestPayload)

    def test_unknown_session_violates_foreign_key(self, store: LedgerStore) -> None:
        with pytest.raises(sqlite3.IntegrityError):
            store.enqueue_message("missing", _prompt(1))


# =============================================================================
# End to end
# =============================================================================


class TestSessionRoundTrip:
    """Queued work is drained, the session finishes and retention removes it."""

    def test_drain_complete_and_evict(self, store: LedgerStore) -> None:
        store.create_session("s1", "p")
        ids = [
            store.enqueue_message(
                "s1",
                ToolUsePayload(
                    tool_name="Bash",
                    tool_input=f'{{"command": "step {n}"}}',
                    tool_output="ok",
                    created_at_epoch=now_epoch_ms(),
                ),
            )
            for n in range(3)
        ]

        claimed = store.claim_all_messages("s1")

        assert [m.id for m in claimed] == ids
        assert all(m.claimed_at is not None for m in claimed)
        store.delete_messages([m.id for m in claimed if m.id is not None])
        assert store.has_pending_messages("s1") is False

        store.update_session_status("s1", "completed")
        assert store.cleanup_old_sessions(0) == ["s1"]

        assert store.get_session("s1") is None
        placeholders = ", ".join("?" for _ in ids)
        remaining = (
            store._get_connection()
            .execute(f"SELECT COUNT(*) FROM pending_messages WHERE id IN ({placeholders})", ids)
            .fetchone()[0]
        )
        assert remaining == 0


# =============================================================================
# Cross-process claims
# =============================================================================


def _claim_worker(db_path: str, rounds: int, results: "multiprocessing.Queue[list[int]]") -> None:
    claimed: list[int] = []
    with LedgerStore(Path(db_path)) as ledger:
        for _ in range(rounds):
            claimed.extend(m.id for m in ledger.claim_messages("s1", limit=3) if m.id is not None)
    results.put(claimed)


@pytest.mark.skipif(
    sys.platform == "win32" or "fork" not in multiprocessing.get_all_start_methods(),
    reason="requires fork start method",
)
class TestConcurrentClaims:
    """Concurrent workers never claim the same message twice."""

    def test_no_double_claims(self, tmp_path: Path) -> None:
        db_path = tmp_path / "queue.db"
        with LedgerStore(db_path) as ledger:
            ledger.create_session("s1", "proj")
            ids = _enqueue_prompts(ledger, 60)

        ctx = multiprocessing.get_context("fork")
        results = ctx.Queue()
        workers = [
            ctx.Process(target=_claim_worker, args=(str(db_path), 15, results)) for _ in range(4)
        ]
        for worker in workers:
            worker.start()
        claimed_lists = [results.get(timeout=60) for _ in workers]
        for worker in workers:
            worker.join(timeout=60)

        all_claimed = [message_id for claimed in claimed_lists for message_id in claimed]
        assert len(all_claimed) == len(set(all_claimed))
        assert sorted(all_claimed) == sorted(ids)
