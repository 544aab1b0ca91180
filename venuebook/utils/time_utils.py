"""
Time utility functions for VenueBook.
"""

import math
from typing import Any, Optional
from datetime import datetime, timezone

def parse_exchange_timestamp(value: Any) -> Optional[int]:
    """
    Normalize a venue timestamp to integer epoch milliseconds.

    Venues send epoch milliseconds as ints or numeric strings, and some
    send ISO 8601 strings. The result is display metadata only, so a bad
    value (NaN, Infinity, garbage text) yields None instead of an error.

    Args:
        value: Raw timestamp field from a venue message

    Returns:
        Epoch milliseconds, or None if the value is missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, float) and not math.isfinite(value):
        return None

    try:
        if isinstance(value, (int, float)):
            return int(value)

        if isinstance(value, str):
            if value.isdigit():
                return int(value)
            # Parse ISO 8601 string safely
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return int(parsed.timestamp() * 1000)
    except (ValueError, OverflowError, OSError):
        return None

    return None


def format_timestamp(timestamp_ms: Optional[int]) -> str:
    """Render epoch milliseconds as a UTC ISO 8601 string for logs."""
    if timestamp_ms is None:
        return "n/a"
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()
    except (ValueError, OverflowError, OSError):
        # Out of datetime's range
        return str(timestamp_ms)
