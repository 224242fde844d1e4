"""Naive-UTC time helpers.

Every timestamp persisted by the backend is a **naive** UTC datetime.
Provider payloads arrive as epoch seconds, epoch milliseconds or ISO-8601
strings; ``to_utc_naive`` folds all of them into that representation.
"""

from datetime import datetime, timezone
from typing import Any, Optional

# Epoch values above this are treated as milliseconds (year ~2286 in seconds).
_EPOCH_MS_THRESHOLD = 10_000_000_000


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        if seconds > _EPOCH_MS_THRESHOLD:
            seconds /= 1000.0
        try:
            return utcfromtimestamp(seconds)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return to_utc_naive(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return to_utc_naive(parsed)
    return None
