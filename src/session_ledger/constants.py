"""Constants for the session ledger.

Centralizes status values, table names, tuning knobs, and filesystem
layout so that magic strings and numbers do not leak into store code.
"""

from typing import Final

# =============================================================================
# Filesystem layout
# =============================================================================

CONFIG_DIR_NAME: Final[str] = ".session-ledger"
CONFIG_DIR_ENV_VAR: Final[str] = "SESSION_LEDGER_CONFIG_DIR"
CONFIG_FILE_NAME: Final[str] = "config.yaml"
DEFAULT_DB_FILE_NAME: Final[str] = "sessions.db"
FALLBACK_DIR_NAME: Final[str] = "fallback"
LOCKS_DIR_NAME: Final[str] = "locks"
COMPLETED_DIR_NAME: Final[str] = "completed"
LOGS_DIR_NAME: Final[str] = "logs"
LOG_FILE_NAME: Final[str] = "ledger.log"
LOCK_FILE_SUFFIX: Final[str] = ".lock"
MARKER_FILE_SUFFIX: Final[str] = ".marker"
FALLBACK_FILE_SUFFIX: Final[str] = ".json"

# Owner-only permissions for everything we persist
PRIVATE_DIR_MODE: Final[int] = 0o700
PRIVATE_FILE_MODE: Final[int] = 0o600

# =============================================================================
# Session status
# =============================================================================

SESSION_STATUS_ACTIVE: Final[str] = "active"
SESSION_STATUS_COMPLETED: Final[str] = "completed"
SESSION_STATUS_FAILED: Final[str] = "failed"
SESSION_STATUSES: Final[tuple[str, ...]] = (
    SESSION_STATUS_ACTIVE,
    SESSION_STATUS_COMPLETED,
    SESSION_STATUS_FAILED,
)
SESSION_TERMINAL_STATUSES: Final[tuple[str, ...]] = (
    SESSION_STATUS_COMPLETED,
    SESSION_STATUS_FAILED,
)

# =============================================================================
# Observation types
# =============================================================================

OBSERVATION_TYPES: Final[tuple[str, ...]] = (
    "decision",
    "bugfix",
    "feature",
    "refactor",
    "discovery",
    "change",
    "error",
    "pattern",
)

# =============================================================================
# SQLite tuning
# =============================================================================

SQLITE_CONNECT_TIMEOUT_SECONDS: Final[float] = 5.0
SQLITE_BUSY_TIMEOUT_MS: Final[int] = 5000
SQLITE_MMAP_SIZE: Final[int] = 268435456  # 256MB
SQLITE_CACHE_SIZE_KB: Final[int] = -10000  # ~10MB

# Transient errors that are worth retrying
SQLITE_RETRYABLE_ERROR_NAMES: Final[frozenset[str]] = frozenset(
    {"SQLITE_BUSY", "SQLITE_BUSY_RECOVERY", "SQLITE_LOCKED"}
)
SQLITE_RETRYABLE_MESSAGES: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database is busy",
)

# =============================================================================
# Retry
# =============================================================================

# Retries after the first attempt; delays double from the initial delay
RETRY_MAX_RETRIES: Final[int] = 3
RETRY_INITIAL_DELAY_SECONDS: Final[float] = 0.05

# =============================================================================
# Retention and processing defaults
# =============================================================================

DEFAULT_SESSION_RETENTION: Final[int] = 50
DEFAULT_ORPHAN_TIMEOUT_HOURS: Final[int] = 24
DEFAULT_MAX_READS_PER_FILE: Final[int] = 5
DEFAULT_MAX_TOOL_OUTPUT_SIZE: Final[int] = 50000
DEFAULT_STALENESS_TIMEOUT_MINUTES: Final[int] = 30
DEFAULT_STALE_CLAIM_TIMEOUT_MS: Final[int] = 60000
DEFAULT_LOCK_MAX_AGE_MS: Final[int] = 5 * 60 * 1000
DEFAULT_RUNNING_LOCK_MAX_AGE_MS: Final[int] = 30 * 60 * 1000
DEFAULT_PID_VALIDATION_TIMEOUT_MS: Final[int] = 500
DEFAULT_SPAWN_VERIFY_DELAY_MS: Final[int] = 100
DEFAULT_CLAIM_BATCH_SIZE: Final[int] = 10
DEFAULT_SEARCH_LIMIT: Final[int] = 50
DEFAULT_RECENT_LIMIT: Final[int] = 20

# Reservations older than this are treated as abandoned
RESERVATION_MAX_AGE_MS: Final[int] = 5 * 60 * 1000
# Running locks older than this are always stale
RUNNING_LOCK_MAX_AGE_MS: Final[int] = 24 * 60 * 60 * 1000
# Allowed drift between recorded and observed process start time
PROCESS_START_TOLERANCE_MS: Final[int] = 1000

FILE_READ_SNIPPET_LENGTH: Final[int] = 1024
TRUNCATION_MARKER: Final[str] = "\n\n... [TRUNCATED] ...\n\n"
REDACTION_SUFFIX: Final[str] = "...[REDACTED]"
REDACTION_KEEP_CHARS: Final[int] = 10

# Constraints for validated config values
MIN_SESSION_RETENTION: Final[int] = 1
MAX_SESSION_RETENTION: Final[int] = 10000
MIN_TIMEOUT_VALUE: Final[int] = 1

# =============================================================================
# Logging
# =============================================================================

VALID_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
DEFAULT_LOG_LEVEL: Final[str] = "INFO"
DEFAULT_LOG_ROTATION_ENABLED: Final[bool] = True
DEFAULT_LOG_MAX_SIZE_MB: Final[int] = 10
DEFAULT_LOG_BACKUP_COUNT: Final[int] = 3
MIN_LOG_MAX_SIZE_MB: Final[int] = 1
MAX_LOG_MAX_SIZE_MB: Final[int] = 100
MAX_LOG_BACKUP_COUNT: Final[int] = 10
LEDGER_LOGGER_NAME: Final[str] = "session_ledger"
