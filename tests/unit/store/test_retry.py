"""Tests for retry-with-backoff on transient SQLite lock errors.

Covers:
- is_retryable_error(): busy/locked detection by message and error name
- retry_with_backoff(): attempt count, delay schedule, error propagation
- with_retry: decorator form
"""

import sqlite3
from unittest.mock import MagicMock

import pytest

from session_ledger.store.retry import is_retryable_error, retry_with_backoff, with_retry


def _locked() -> sqlite3.OperationalError:
    return sqlite3.OperationalError("database is locked")


class _Flaky:
    """Callable that raises the given errors in order, then returns a value."""

    def __init__(self, errors: list[Exception], result: str = "ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestIsRetryableError:
    """Only busy/locked operational errors are transient."""

    @pytest.mark.parametrize(
        "message",
        [
            "database is locked",
            "database table is locked",
            "Database is busy",
            "database is locked (SQLITE_BUSY)",
        ],
    )
    def test_lock_messages_are_retryable(self, message: str) -> None:
        assert is_retryable_error(sqlite3.OperationalError(message)) is True

    def test_error_name_is_retryable(self) -> None:
        error = sqlite3.OperationalError("something odd")
        error.sqlite_errorname = "SQLITE_BUSY_RECOVERY"  # type: ignore[attr-defined]
        assert is_retryable_error(error) is True

    def test_other_operational_errors_are_not_retryable(self) -> None:
        assert is_retryable_error(sqlite3.OperationalError("no such table: foo")) is False

    def test_integrity_error_is_not_retryable(self) -> None:
        assert is_retryable_error(sqlite3.IntegrityError("database is locked")) is False

    def test_non_sqlite_error_is_not_retryable(self) -> None:
        assert is_retryable_error(ValueError("database is locked")) is False


class TestRetryWithBackoff:
    """Verify the attempt budget and delay schedule."""

    def test_success_first_try_does_not_sleep(self) -> None:
        sleep = MagicMock()
        operation = _Flaky([])

        assert retry_with_backoff(operation, sleep=sleep) == "ok"
        assert operation.calls == 1
        sleep.assert_not_called()

    def test_retries_then_succeeds(self) -> None:
        sleep = MagicMock()
        operation = _Flaky([_locked(), _locked()])

        assert retry_with_backoff(operation, sleep=sleep) == "ok"
        assert operation.calls == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.05, 0.1]

    def test_exhaustion_reraises_original_error(self) -> None:
        sleep = MagicMock()
        errors = [_locked() for _ in range(4)]
        last = errors[-1]
        operation = _Flaky(errors)

        with pytest.raises(sqlite3.OperationalError) as exc_info:
            retry_with_backoff(operation, sleep=sleep)

        assert exc_info.value is last
        assert operation.calls == 4
        assert [c.args[0] for c in sleep.call_args_list] == [0.05, 0.1, 0.2]

    def test_non_retryable_error_raises_immediately(self) -> None:
        sleep = MagicMock()
        operation = _Flaky([sqlite3.OperationalError("no such column: x")])

        with pytest.raises(sqlite3.OperationalError, match="no such column"):
            retry_with_backoff(operation, sleep=sleep)

        assert operation.calls == 1
        sleep.assert_not_called()

    def test_other_exceptions_propagate_unchanged(self) -> None:
        operation = _Flaky([KeyError("missing")])

        with pytest.raises(KeyError):
            retry_with_backoff(operation, sleep=MagicMock())

    def test_custom_budget(self) -> None:
        sleep = MagicMock()
        operation = _Flaky([_locked(), _locked()])

        with pytest.raises(sqlite3.OperationalError):
            retry_with_backoff(operation, max_retries=1, initial_delay=0.01, sleep=sleep)

        assert operation.calls == 2
        assert [c.args[0] for c in sleep.call_args_list] == [0.01]


class TestWithRetry:
    """The decorator retries the wrapped call with its arguments."""

    def test_decorated_function_is_retried(self) -> None:
        calls: list[tuple[int, str]] = []

        @with_retry
        def operation(value: int, label: str = "x") -> str:
            calls.append((value, label))
            if len(calls) == 1:
                raise _locked()
            return f"{label}{value}"

        assert operation(3, label="y") == "y3"
        assert calls == [(3, "y"), (3, "y")]
        assert operation.__name__ == "operation"
