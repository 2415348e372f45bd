"""Exceptions raised by the session ledger.

Exception hierarchy:
    LedgerError (base)
    ├── ConfigurationError
    │   └── ValidationError
    ├── StorageError
    │   ├── StorageUnavailableError
    │   └── MigrationError
    └── PayloadError

Transient SQLite lock contention is not represented here: it surfaces as
``sqlite3.OperationalError`` and is handled by the retry wrapper.
"""

from pathlib import Path
from typing import Any

MAX_DETAIL_LENGTH = 100


def _clip(value: Any) -> str:
    text = str(value)
    if len(text) > MAX_DETAIL_LENGTH:
        return text[:MAX_DETAIL_LENGTH] + "..."
    return text


class LedgerError(Exception):
    """Base exception for all session ledger errors.

    Keyword context passed by subclasses is kept in ``details`` (``None``
    values are skipped) and appended to the message when rendered.

    Attributes:
        message: Human-readable error description.
        details: Context about the failure, in insertion order.
    """

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        rendered = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"{self.message} ({rendered})"


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(LedgerError):
    """Raised when configuration is invalid or cannot be loaded."""

    def __init__(self, message: str, config_file: Path | None = None, **context: Any):
        super().__init__(
            message, config_file=str(config_file) if config_file else None, **context
        )
        self.config_file = config_file


class ValidationError(ConfigurationError):
    """Raised when a configuration value fails validation.

    Args:
        message: Error description.
        field: Name of the offending field.
        value: The rejected value; clipped in ``details`` when long.
        expected: Description of what would have been accepted.
    """

    def __init__(
        self,
        message: str,
        field: str,
        value: Any = None,
        expected: str | None = None,
    ):
        super().__init__(
            message,
            field=field,
            value=_clip(value) if value is not None else None,
            expected=expected or None,
        )
        self.field = field
        self.value = value
        self.expected = expected


# =============================================================================
# Storage
# =============================================================================


class StorageError(LedgerError):
    """Raised when a storage operation fails for a non-transient reason."""

    def __init__(
        self,
        message: str,
        db_path: Path | None = None,
        operation: str | None = None,
    ):
        super().__init__(message, db_path=db_path, operation=operation)
        self.db_path = db_path
        self.operation = operation


class StorageUnavailableError(StorageError):
    """Raised when the database cannot be opened or configured.

    Callers treat this as the signal to switch to the JSON fallback store.
    """


class MigrationError(StorageError):
    """Raised when the schema cannot be brought up to date."""


# =============================================================================
# Queue
# =============================================================================


class PayloadError(LedgerError):
    """Raised when a queued message payload cannot be decoded."""

    def __init__(
        self,
        message: str,
        message_type: str | None = None,
        message_id: int | None = None,
    ):
        super().__init__(message, message_type=message_type or None, message_id=message_id)
        self.message_type = message_type
        self.message_id = message_id
