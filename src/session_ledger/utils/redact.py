"""Secrets redaction and content truncation for captured activity.

Tool inputs and outputs are redacted before they are persisted to SQLite or
queued for the background worker. A redacted match keeps its first few
characters so the record stays readable.
"""

from __future__ import annotations

import logging
import re

from session_ledger.constants import REDACTION_KEEP_CHARS, REDACTION_SUFFIX, TRUNCATION_MARKER

logger = logging.getLogger(__name__)

# (name, regex) pairs for high-confidence secret formats
_SECRET_PATTERNS: list[tuple[str, str]] = [
    (
        "API Key Assignment",
        r"""['"]?api[_-]?key['"]?\s*[:=]\s*['"]?[a-zA-Z0-9_\-]{20,}['"]?""",
    ),
    ("Token Assignment", r"""['"]?token['"]?\s*[:=]\s*['"]?[a-zA-Z0-9_\-]{20,}['"]?"""),
    ("Bearer Token", r"Bearer\s+[a-zA-Z0-9_\-.]{20,}"),
    ("Password Assignment", r"""['"]?password['"]?\s*[:=]\s*['"]?[^\s'"]{8,}['"]?"""),
    ("Passwd Assignment", r"""['"]?passwd['"]?\s*[:=]\s*['"]?[^\s'"]{8,}['"]?"""),
    ("AWS Access Key ID", r"AKIA[0-9A-Z]{16}"),
    (
        "PEM Private Key",
        r"-----BEGIN\s+(?:RSA\s+)?PRIVATE\s+KEY-----[\s\S]*?-----END\s+(?:RSA\s+)?PRIVATE\s+KEY-----",
    ),
    ("Database URL", r"""(?:postgres|mysql|mongodb)://[^\s'"]+:[^\s'"]+@[^\s'"]+"""),
]

_compiled_patterns: list[tuple[str, re.Pattern[str]]] = [
    (name, re.compile(pattern, re.IGNORECASE)) for name, pattern in _SECRET_PATTERNS
]


def _mask(match: re.Match[str]) -> str:
    text = match.group(0)
    return f"{text[:REDACTION_KEEP_CHARS]}{REDACTION_SUFFIX}"


def redact_sensitive_data(text: str) -> str:
    """Redact known secret patterns from text.

    Args:
        text: Input text that may contain secrets.

    Returns:
        Text with each secret replaced by its first characters plus a
        ``...[REDACTED]`` marker.
    """
    if not text:
        return text
    redacted = text
    for name, pattern in _compiled_patterns:
        redacted, count = pattern.subn(_mask, redacted)
        if count:
            logger.debug(f"Redacted {count} match(es) of {name}")
    return redacted


def contains_sensitive_data(text: str) -> bool:
    """Check whether text matches any secret pattern."""
    return any(pattern.search(text) for _, pattern in _compiled_patterns)


def truncate_content(content: str, max_size: int) -> tuple[str, bool]:
    """Truncate content to roughly ``max_size`` characters.

    Keeps the first and last halves so both the start of a command's output
    and its final result survive.

    Args:
        content: Text to truncate.
        max_size: Maximum characters to keep (excluding the marker).

    Returns:
        Tuple of (possibly truncated content, whether truncation happened).
    """
    if len(content) <= max_size:
        return content, False
    half = max_size // 2
    head = content[:half]
    tail = content[len(content) - half :] if half else ""
    return f"{head}{TRUNCATION_MARKER}{tail}", True


def sanitize_session_id(session_id: str) -> str:
    """Make a session id safe for use as a file name."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", session_id)
