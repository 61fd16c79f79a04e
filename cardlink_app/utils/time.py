"""
Wall-clock helpers for link session bounds.

All timestamps handled by the engine are timezone-aware UTC datetimes.
Components accept a ``clock`` callable defaulting to :func:`utc_now`.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current wall-clock time as a UTC datetime."""
    return datetime.now(timezone.utc)


def seconds_until(deadline: datetime, now: Optional[datetime] = None) -> float:
    """
    Seconds remaining until a deadline.

    Args:
        deadline: Absolute deadline
        now: Reference time, defaults to current wall-clock time

    Returns:
        Remaining seconds, negative once the deadline has passed
    """
    if now is None:
        now = utc_now()

    return (deadline - now).total_seconds()


def time_elapsed_seconds(start_time: datetime, end_time: Optional[datetime] = None) -> float:
    """
    Calculate elapsed time in seconds between two timestamps.

    Args:
        start_time: Start timestamp
        end_time: End timestamp, defaults to current wall-clock time

    Returns:
        Elapsed time in seconds
    """
    if end_time is None:
        end_time = utc_now()

    return (end_time - start_time).total_seconds()


def format_timestamp(ts: Optional[datetime]) -> Optional[str]:
    """Format a timestamp as ISO8601 for logging and payloads."""
    return ts.isoformat() if ts is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a backend timestamp into a UTC datetime.

    Accepts ISO8601 strings (with or without a trailing ``Z``), epoch seconds
    or epoch milliseconds. Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        # Values this large are epoch milliseconds
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None
