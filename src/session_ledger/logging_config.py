"""Logging setup for ledger processes.

Hook processes write their stdout back to the assistant, so ledger logging
goes to a rotating file and never to a stream unless explicitly requested.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from session_ledger.config import LogRotationConfig
from session_ledger.constants import LEDGER_LOGGER_NAME


def configure_logging(
    log_level: str,
    log_file: Path | None = None,
    log_rotation: LogRotationConfig | None = None,
    stream: bool = False,
) -> logging.Logger:
    """Configure the ledger logger.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR).
        log_file: Optional log file path.
        log_rotation: Optional log rotation configuration.
        stream: Also log to stderr (interactive commands only).

    Returns:
        The configured ``session_ledger`` logger.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    ledger_logger = logging.getLogger(LEDGER_LOGGER_NAME)
    ledger_logger.setLevel(level)
    ledger_logger.propagate = False

    # Clear existing handlers so reconfiguring does not duplicate output
    for handler in list(ledger_logger.handlers):
        ledger_logger.removeHandler(handler)
        handler.close()

    if level == logging.DEBUG:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(process)d %(name)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(process)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            rotation = log_rotation or LogRotationConfig()
            file_handler: logging.Handler
            if rotation.enabled:
                file_handler = RotatingFileHandler(
                    log_file,
                    maxBytes=rotation.max_bytes,
                    backupCount=rotation.backup_count,
                    encoding="utf-8",
                )
            else:
                file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            ledger_logger.addHandler(file_handler)
        except OSError as e:
            # Logging must never take down a hook
            sys.stderr.write(f"session-ledger: cannot open log file {log_file}: {e}\n")

    if stream:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        ledger_logger.addHandler(stream_handler)

    if not ledger_logger.handlers:
        ledger_logger.addHandler(logging.NullHandler())

    return ledger_logger
