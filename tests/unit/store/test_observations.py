"""Tests for session summaries and observations."""

import pytest

from session_ledger.store.core import LedgerStore
from session_ledger.store.models import Observation, SessionSummary


@pytest.fixture
def session_store(store: LedgerStore) -> LedgerStore:
    store.create_session("s1", "proj")
    return store


def _observation(title: str, obs_type: str = "discovery", **kwargs) -> Observation:
    return Observation(session_id="s1", project="proj", type=obs_type, title=title, **kwargs)


class TestSessionSummary:
    def test_missing_summary(self, session_store: LedgerStore) -> None:
        assert session_store.get_session_summary("s1") is None

    def test_upsert_replaces_content(self, session_store: LedgerStore) -> None:
        session_store.upsert_session_summary(
            SessionSummary(session_id="s1", project="proj", request="first")
        )
        first = session_store.get_session_summary("s1")

        session_store.upsert_session_summary(
            SessionSummary(
                session_id="s1",
                project="proj",
                request="second",
                written_notes=["observation:1"],
                written_to_vault=True,
            )
        )
        second = session_store.get_session_summary("s1")

        assert first is not None and second is not None
        assert second.request == "second"
        assert second.written_notes == ["observation:1"]
        assert second.written_to_vault is True
        # Creation time survives replacement
        assert second.created_at_epoch == first.created_at_epoch
        assert second.id == first.id


class TestObservations:
    def test_create_and_read_back(self, session_store: LedgerStore) -> None:
        observation = _observation(
            "Cache is keyed by path",
            facts=["keys are absolute"],
            concepts=["caching"],
            files_read=["/repo/cache.py"],
        )

        obs_id = session_store.create_observation(observation)

        assert observation.id == obs_id
        stored = session_store.get_session_observations("s1")[0]
        assert stored.title == "Cache is keyed by path"
        assert stored.facts == ["keys are absolute"]
        assert stored.concepts == ["caching"]
        assert stored.files_read == ["/repo/cache.py"]
        assert stored.files_modified == []
        assert stored.created_at_epoch is not None
        assert stored.created_at is not None

    def test_explicit_timestamp_kept(self, session_store: LedgerStore) -> None:
        session_store.create_observation(_observation("Dated", created_at_epoch=1767225600000))

        stored = session_store.get_session_observations("s1")[0]
        assert stored.created_at_epoch == 1767225600000
        assert stored.created_at == "2026-01-01T00:00:00.000+00:00"

    def test_unknown_type_rejected(self, session_store: LedgerStore) -> None:
        with pytest.raises(ValueError, match="Unknown observation type"):
            session_store.create_observation(_observation("Bad", obs_type="musing"))

    def test_batch_is_atomic(self, session_store: LedgerStore) -> None:
        items = [_observation("good"), _observation("bad", obs_type="musing")]

        with pytest.raises(ValueError):
            session_store.create_observations(items)

        assert session_store.get_session_observations("s1") == []

    def test_batch_returns_ids_in_order(self, session_store: LedgerStore) -> None:
        ids = session_store.create_observations([_observation("one"), _observation("two")])

        assert len(ids) == 2
        assert [o.id for o in session_store.get_session_observations("s1")] == ids
        assert session_store.create_observations([]) == []

    def test_recent_by_project(self, session_store: LedgerStore) -> None:
        session_store.create_session("s2", "other")
        session_store.create_observation(_observation("mine", created_at_epoch=1000))
        session_store.create_observation(
            Observation(
                session_id="s2",
                project="other",
                type="bugfix",
                title="theirs",
                created_at_epoch=2000,
            )
        )

        assert [o.title for o in session_store.get_recent_observations()] == ["theirs", "mine"]
        assert [o.title for o in session_store.get_recent_observations(project="proj")] == [
            "mine"
        ]

    def test_search(self, session_store: LedgerStore) -> None:
        session_store.create_observation(_observation("Retry on busy database", obs_type="pattern"))
        session_store.create_observation(_observation("Logging format", obs_type="decision"))

        assert [o.title for o in session_store.search_observations("busy")] == [
            "Retry on busy database"
        ]
