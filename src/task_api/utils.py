from __future__ import annotations

import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Optional

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def normalize_text(value: str) -> str:
    """Apply Unicode NFC composition and strip surrounding whitespace."""
    return unicodedata.normalize("NFC", value).strip()


def format_timestamp(moment: datetime) -> str:
    """Render an aware datetime as 'YYYY-MM-DDTHH:MM:SS.mmmZ' in UTC."""
    moment = moment.astimezone(timezone.utc)
    return f"{moment.strftime(_TIMESTAMP_FORMAT)}.{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by format_timestamp back into an aware datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


# PUBLIC_INTERFACE
def utc_timestamp(after: Optional[str] = None) -> str:
    """
    Return the current UTC time as an ISO8601 string with millisecond precision.

    Args:
        after: A previously issued timestamp. When given, the result is guaranteed
            to be strictly later, moving one millisecond past it if the clock has
            not advanced.

    Returns:
        Timestamp string such as '2024-05-01T12:30:00.123Z'.
    """
    now = datetime.now(timezone.utc)
    if after:
        previous = parse_timestamp(after)
        # Compare at the precision we store.
        if now.replace(microsecond=now.microsecond // 1000 * 1000) <= previous:
            now = previous + timedelta(milliseconds=1)
    return format_timestamp(now)
