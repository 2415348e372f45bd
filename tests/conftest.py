"""Pytest configuration and fixtures for session-ledger tests."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from session_ledger.config import LedgerConfig
from session_ledger.constants import CONFIG_DIR_ENV_VAR
from session_ledger.store.core import LedgerStore
from session_ledger.worker.lock import LockStore


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the ledger config directory at a temp dir for every test.

    Returns:
        Path to the temporary config directory.
    """
    config_dir = tmp_path / "ledger-home"
    monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(config_dir))
    return config_dir


@pytest.fixture
def config(isolated_config_dir: Path) -> LedgerConfig:
    """Default configuration rooted in the temp config directory."""
    return LedgerConfig(config_dir=isolated_config_dir)


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LedgerStore]:
    """Create a LedgerStore with a real temp SQLite database.

    Yields:
        Open store, closed after the test.
    """
    ledger = LedgerStore(tmp_path / "db" / "sessions.db")
    try:
        yield ledger
    finally:
        ledger.close()


@pytest.fixture
def locks(tmp_path: Path) -> LockStore:
    """Create a LockStore over a temp locks directory."""
    return LockStore(tmp_path / "locks")
