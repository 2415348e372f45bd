"""Timestamp helpers.

Persisted epochs are integer milliseconds; human-readable timestamps are
ISO-8601 in UTC.
"""

import time
from datetime import datetime, timezone


def now_epoch_ms() -> int:
    """Current time as integer milliseconds since the Unix epoch."""
    return int(time.time() * 1000)


def epoch_ms_to_iso(epoch_ms: int) -> str:
    """Format an epoch in milliseconds as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat(
        timespec="milliseconds"
    )


def now_iso() -> str:
    """Current time as an ISO-8601 UTC string."""
    return epoch_ms_to_iso(now_epoch_ms())


def iso_to_epoch_ms(value: str) -> int | None:
    """Parse an ISO-8601 timestamp into epoch milliseconds.

    Returns:
        Milliseconds since the epoch, or None if the value cannot be parsed.
    """
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return round(parsed.timestamp() * 1000)
