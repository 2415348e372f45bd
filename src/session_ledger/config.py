"""Configuration for the session ledger.

Settings live in ``{config_dir}/config.yaml``. The config directory defaults
to ``~/.session-ledger`` and can be overridden with the
``SESSION_LEDGER_CONFIG_DIR`` environment variable. Every section is a
validated dataclass; invalid or unreadable files fall back to defaults so a
hook never fails because of a bad config.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from session_ledger.constants import (
    COMPLETED_DIR_NAME,
    CONFIG_DIR_ENV_VAR,
    CONFIG_DIR_NAME,
    CONFIG_FILE_NAME,
    DEFAULT_DB_FILE_NAME,
    DEFAULT_LOCK_MAX_AGE_MS,
    DEFAULT_RUNNING_LOCK_MAX_AGE_MS,
    DEFAULT_LOG_BACKUP_COUNT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_LOG_MAX_SIZE_MB,
    DEFAULT_LOG_ROTATION_ENABLED,
    DEFAULT_MAX_READS_PER_FILE,
    DEFAULT_MAX_TOOL_OUTPUT_SIZE,
    DEFAULT_ORPHAN_TIMEOUT_HOURS,
    DEFAULT_PID_VALIDATION_TIMEOUT_MS,
    DEFAULT_SESSION_RETENTION,
    DEFAULT_SPAWN_VERIFY_DELAY_MS,
    DEFAULT_STALE_CLAIM_TIMEOUT_MS,
    DEFAULT_STALENESS_TIMEOUT_MINUTES,
    FALLBACK_DIR_NAME,
    LOCKS_DIR_NAME,
    LOG_FILE_NAME,
    LOGS_DIR_NAME,
    MAX_LOG_BACKUP_COUNT,
    MAX_LOG_MAX_SIZE_MB,
    MAX_SESSION_RETENTION,
    MIN_LOG_MAX_SIZE_MB,
    MIN_SESSION_RETENTION,
    MIN_TIMEOUT_VALUE,
    VALID_LOG_LEVELS,
)
from session_ledger.exceptions import ValidationError

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """Resolve the ledger config directory.

    Returns:
        Directory from ``SESSION_LEDGER_CONFIG_DIR`` or ``~/.session-ledger``.
    """
    override = os.environ.get(CONFIG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / CONFIG_DIR_NAME


def _require_at_least(name: str, value: int, minimum: int) -> None:
    if value < minimum:
        raise ValidationError(
            f"{name} must be at least {minimum}",
            field=name,
            value=value,
            expected=f">= {minimum}",
        )


@dataclass
class StorageConfig:
    """Locations of persisted state.

    Relative paths are resolved against the config directory; ``None`` means
    the default location inside it.

    Attributes:
        db_path: SQLite database file.
        fallback_dir: Directory for JSON fallback session files.
        locks_dir: Directory for per-session reservation lock files.
    """

    db_path: str | None = None
    fallback_dir: str | None = None
    locks_dir: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StorageConfig":
        """Create config from dictionary."""
        return cls(
            db_path=data.get("db_path"),
            fallback_dir=data.get("fallback_dir"),
            locks_dir=data.get("locks_dir"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "db_path": self.db_path,
            "fallback_dir": self.fallback_dir,
            "locks_dir": self.locks_dir,
        }


@dataclass
class RetentionConfig:
    """How much history the ledger keeps.

    Attributes:
        sessions: Number of completed/failed sessions to keep.
        orphan_timeout_hours: Active sessions older than this are marked failed.
        max_reads_per_file: Distinct reads kept per (session, file).
        max_tool_output_size: Characters of tool output kept before truncation.
    """

    sessions: int = DEFAULT_SESSION_RETENTION
    orphan_timeout_hours: int = DEFAULT_ORPHAN_TIMEOUT_HOURS
    max_reads_per_file: int = DEFAULT_MAX_READS_PER_FILE
    max_tool_output_size: int = DEFAULT_MAX_TOOL_OUTPUT_SIZE

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate configuration values.

        Raises:
            ValidationError: If any configuration value is invalid.
        """
        _require_at_least("sessions", self.sessions, MIN_SESSION_RETENTION)
        if self.sessions > MAX_SESSION_RETENTION:
            raise ValidationError(
                f"sessions must be at most {MAX_SESSION_RETENTION}",
                field="sessions",
                value=self.sessions,
                expected=f"<= {MAX_SESSION_RETENTION}",
            )
        _require_at_least("orphan_timeout_hours", self.orphan_timeout_hours, MIN_TIMEOUT_VALUE)
        _require_at_least("max_reads_per_file", self.max_reads_per_file, 1)
        _require_at_least("max_tool_output_size", self.max_tool_output_size, 1)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetentionConfig":
        """Create config from dictionary."""
        return cls(
            sessions=data.get("sessions", DEFAULT_SESSION_RETENTION),
            orphan_timeout_hours=data.get("orphan_timeout_hours", DEFAULT_ORPHAN_TIMEOUT_HOURS),
            max_reads_per_file=data.get("max_reads_per_file", DEFAULT_MAX_READS_PER_FILE),
            max_tool_output_size=data.get("max_tool_output_size", DEFAULT_MAX_TOOL_OUTPUT_SIZE),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "sessions": self.sessions,
            "orphan_timeout_hours": self.orphan_timeout_hours,
            "max_reads_per_file": self.max_reads_per_file,
            "max_tool_output_size": self.max_tool_output_size,
        }


@dataclass
class ProcessingConfig:
    """Timing knobs for background processing and lock coordination.

    Attributes:
        staleness_timeout_minutes: Sessions processing longer than this are reset.
        stale_claim_timeout_ms: Claimed queue messages older than this are redelivered.
        lock_max_age_ms: Reservations older than this are removed by the sweep.
        running_lock_max_age_ms: Running locks older than this are removed by the
            sweep even if the holder is alive.
        pid_validation_timeout_ms: Upper bound for a start-time liveness check.
        spawn_verify_delay_ms: Wait after spawning the worker before checking it.
    """

    staleness_timeout_minutes: int = DEFAULT_STALENESS_TIMEOUT_MINUTES
    stale_claim_timeout_ms: int = DEFAULT_STALE_CLAIM_TIMEOUT_MS
    lock_max_age_ms: int = DEFAULT_LOCK_MAX_AGE_MS
    running_lock_max_age_ms: int = DEFAULT_RUNNING_LOCK_MAX_AGE_MS
    pid_validation_timeout_ms: int = DEFAULT_PID_VALIDATION_TIMEOUT_MS
    spawn_verify_delay_ms: int = DEFAULT_SPAWN_VERIFY_DELAY_MS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate configuration values.

        Raises:
            ValidationError: If any configuration value is invalid.
        """
        for name in (
            "staleness_timeout_minutes",
            "stale_claim_timeout_ms",
            "lock_max_age_ms",
            "running_lock_max_age_ms",
            "pid_validation_timeout_ms",
        ):
            _require_at_least(name, getattr(self, name), MIN_TIMEOUT_VALUE)
        _require_at_least("spawn_verify_delay_ms", self.spawn_verify_delay_ms, 0)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProcessingConfig":
        """Create config from dictionary."""
        return cls(
            staleness_timeout_minutes=data.get(
                "staleness_timeout_minutes", DEFAULT_STALENESS_TIMEOUT_MINUTES
            ),
            stale_claim_timeout_ms=data.get(
                "stale_claim_timeout_ms", DEFAULT_STALE_CLAIM_TIMEOUT_MS
            ),
            lock_max_age_ms=data.get("lock_max_age_ms", DEFAULT_LOCK_MAX_AGE_MS),
            running_lock_max_age_ms=data.get(
                "running_lock_max_age_ms", DEFAULT_RUNNING_LOCK_MAX_AGE_MS
            ),
            pid_validation_timeout_ms=data.get(
                "pid_validation_timeout_ms", DEFAULT_PID_VALIDATION_TIMEOUT_MS
            ),
            spawn_verify_delay_ms=data.get("spawn_verify_delay_ms", DEFAULT_SPAWN_VERIFY_DELAY_MS),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "staleness_timeout_minutes": self.staleness_timeout_minutes,
            "stale_claim_timeout_ms": self.stale_claim_timeout_ms,
            "lock_max_age_ms": self.lock_max_age_ms,
            "running_lock_max_age_ms": self.running_lock_max_age_ms,
            "pid_validation_timeout_ms": self.pid_validation_timeout_ms,
            "spawn_verify_delay_ms": self.spawn_verify_delay_ms,
        }


def _require_between(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ValidationError(
            f"{name} must be between {low} and {high}",
            field=name,
            value=value,
            expected=f"{low}-{high}",
        )


@dataclass
class LogRotationConfig:
    """Size-based rotation of the ledger log file.

    Hooks fire on every prompt and tool call, so the log is rotated rather
    than left to grow. ``backup_count`` keeps ``ledger.log.1`` and onward.
    """

    enabled: bool = DEFAULT_LOG_ROTATION_ENABLED
    max_size_mb: int = DEFAULT_LOG_MAX_SIZE_MB
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT

    def __post_init__(self) -> None:
        _require_between(
            "max_size_mb", self.max_size_mb, MIN_LOG_MAX_SIZE_MB, MAX_LOG_MAX_SIZE_MB
        )
        _require_between("backup_count", self.backup_count, 0, MAX_LOG_BACKUP_COUNT)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogRotationConfig":
        defaults = cls()
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            max_size_mb=data.get("max_size_mb", defaults.max_size_mb),
            backup_count=data.get("backup_count", defaults.backup_count),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def max_bytes(self) -> int:
        """Rotation threshold in bytes."""
        return self.max_size_mb * 1024 * 1024


@dataclass
class LoggingConfig:
    """Logging settings.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        log_dir: Directory for the log file; ``None`` means ``{config_dir}/logs``.
        rotation: Log rotation settings.
    """

    level: str = DEFAULT_LOG_LEVEL
    log_dir: str | None = None
    rotation: LogRotationConfig = field(default_factory=LogRotationConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate configuration values.

        Raises:
            ValidationError: If any configuration value is invalid.
        """
        if self.level.upper() not in VALID_LOG_LEVELS:
            raise ValidationError(
                f"Invalid log level: {self.level}",
                field="level",
                value=self.level,
                expected=f"one of {', '.join(VALID_LOG_LEVELS)}",
            )
        self.level = self.level.upper()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoggingConfig":
        """Create config from dictionary."""
        return cls(
            level=data.get("level", DEFAULT_LOG_LEVEL),
            log_dir=data.get("log_dir"),
            rotation=LogRotationConfig.from_dict(data.get("rotation", {}) or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "log_dir": self.log_dir,
            "rotation": self.rotation.to_dict(),
        }


@dataclass
class LedgerConfig:
    """Top-level ledger configuration.

    Attributes:
        config_dir: Directory the configuration was loaded from. Not serialized.
        storage: Storage locations.
        retention: Retention limits.
        processing: Background processing timings.
        logging: Logging settings.
    """

    config_dir: Path = field(default_factory=get_config_dir)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_dir: Path | None = None) -> "LedgerConfig":
        """Create config from dictionary.

        Args:
            data: Configuration dictionary.
            config_dir: Directory relative paths resolve against.

        Returns:
            LedgerConfig instance.
        """
        return cls(
            config_dir=config_dir or get_config_dir(),
            storage=StorageConfig.from_dict(data.get("storage", {}) or {}),
            retention=RetentionConfig.from_dict(data.get("retention", {}) or {}),
            processing=ProcessingConfig.from_dict(data.get("processing", {}) or {}),
            logging=LoggingConfig.from_dict(data.get("logging", {}) or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "storage": self.storage.to_dict(),
            "retention": self.retention.to_dict(),
            "processing": self.processing.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def _resolve(self, value: str | None, default: str) -> Path:
        path = Path(value).expanduser() if value else Path(default)
        return path if path.is_absolute() else self.config_dir / path

    @property
    def db_path(self) -> Path:
        """Resolved SQLite database path."""
        return self._resolve(self.storage.db_path, DEFAULT_DB_FILE_NAME)

    @property
    def fallback_dir(self) -> Path:
        """Resolved JSON fallback directory."""
        return self._resolve(self.storage.fallback_dir, FALLBACK_DIR_NAME)

    @property
    def locks_dir(self) -> Path:
        """Resolved reservation lock directory."""
        return self._resolve(self.storage.locks_dir, LOCKS_DIR_NAME)

    @property
    def completed_dir(self) -> Path:
        """Directory holding completion markers."""
        return self.config_dir / COMPLETED_DIR_NAME

    @property
    def log_file(self) -> Path:
        """Resolved log file path."""
        return self._resolve(self.logging.log_dir, LOGS_DIR_NAME) / LOG_FILE_NAME


def load_config(config_dir: Path | None = None) -> LedgerConfig:
    """Load ledger configuration.

    Args:
        config_dir: Directory containing ``config.yaml``. Defaults to
            :func:`get_config_dir`.

    Returns:
        LedgerConfig with settings (defaults if not configured).

    Note:
        Returns defaults on error rather than raising, so hooks keep
        recording even with an invalid config.
    """
    config_dir = config_dir or get_config_dir()
    config_file = config_dir / CONFIG_FILE_NAME

    if not config_file.exists():
        logger.debug(f"No config file at {config_file}, using defaults")
        return LedgerConfig(config_dir=config_dir)

    try:
        with open(config_file, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning(f"Config in {config_file} is not a mapping, using defaults")
            return LedgerConfig(config_dir=config_dir)
        config = LedgerConfig.from_dict(data, config_dir=config_dir)
        logger.debug(f"Loaded ledger config from {config_file}")
        return config

    except ValidationError as e:
        logger.warning(f"Invalid ledger config in {config_file}: {e}")
        logger.info("Using default configuration")
        return LedgerConfig(config_dir=config_dir)

    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse config YAML from {config_file}: {e}")
        return LedgerConfig(config_dir=config_dir)

    except OSError as e:
        logger.warning(f"Failed to read config from {config_file}: {e}")
        return LedgerConfig(config_dir=config_dir)


def save_config(config: LedgerConfig) -> Path:
    """Write configuration to ``{config_dir}/config.yaml``.

    Args:
        config: Configuration to persist.

    Returns:
        Path of the written file.
    """
    config.config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config.config_dir / CONFIG_FILE_NAME
    with open(config_file, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    logger.info(f"Saved ledger config to {config_file}")
    return config_file
