"""Tests for the ledger exception hierarchy."""

from pathlib import Path

import pytest

from session_ledger.exceptions import (
    ConfigurationError,
    LedgerError,
    MigrationError,
    PayloadError,
    StorageError,
    StorageUnavailableError,
    ValidationError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        ("error_class", "parent"),
        [
            (ConfigurationError, LedgerError),
            (ValidationError, ConfigurationError),
            (StorageError, LedgerError),
            (StorageUnavailableError, StorageError),
            (MigrationError, StorageError),
            (PayloadError, LedgerError),
        ],
    )
    def test_inheritance(self, error_class: type, parent: type) -> None:
        assert issubclass(error_class, parent)


class TestDetails:
    def test_plain_message(self) -> None:
        assert str(LedgerError("boom")) == "boom"

    def test_storage_error_details(self) -> None:
        error = StorageUnavailableError("cannot open", db_path=Path("/x/db"), operation="open")

        assert error.db_path == Path("/x/db")
        assert error.operation == "open"
        assert str(error) == "cannot open (db_path=/x/db, operation=open)"

    def test_validation_error_truncates_long_values(self) -> None:
        error = ValidationError("bad", field="level", value="x" * 150, expected="a level")

        assert error.field == "level"
        assert error.details["value"] == "x" * 100 + "..."
        assert error.details["expected"] == "a level"

    def test_payload_error_details(self) -> None:
        error = PayloadError("bad payload", message_type="prompt", message_id=0)

        assert error.details == {"message_type": "prompt", "message_id": 0}
