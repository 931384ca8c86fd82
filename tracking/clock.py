"""
Clock and duration utilities.

Pure functions converting between wall-clock timestamps and elapsed or
remaining seconds. No state.

All engine timestamps are timezone-aware UTC datetimes; naive datetimes
are assumed to be UTC. "Local day" means the host's local timezone.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Tuple


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Strictly parse a persisted timestamp.

    Args:
        value: ISO-8601 string or datetime.

    Returns:
        Aware UTC datetime.

    Raises:
        ValueError: If the value is not a valid timestamp.
    """
    if isinstance(value, datetime):
        return ensure_aware(value)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Not a timestamp: {value!r}")
    text = value.strip()
    # fromisoformat() before 3.11 rejects the "Z" suffix
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text))


def coerce_timestamp(value: Any, default: datetime) -> datetime:
    """
    Leniently convert a legacy date-like value.

    Accepts ISO strings, datetimes and epoch numbers (seconds or
    milliseconds). Anything unparseable becomes ``default`` instead of
    aborting the caller.

    Args:
        value: Raw value from a legacy payload.
        default: Timestamp used when value is missing or invalid.

    Returns:
        Aware UTC datetime.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return default
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        return default


def to_iso(value: datetime) -> str:
    """Serialize a timestamp for the persisted document."""
    return ensure_aware(value).isoformat()


def seconds_between(start: datetime, end: datetime) -> float:
    """Signed number of seconds from start to end."""
    return (ensure_aware(end) - ensure_aware(start)).total_seconds()


def minutes_to_seconds(minutes: float) -> float:
    """Convert minutes to seconds."""
    return minutes * 60


def seconds_to_minutes(seconds: float) -> int:
    """Whole minutes in a number of seconds (floor)."""
    return int(seconds // 60)


def local_date(value: datetime):
    """Calendar date of a timestamp in the host's local timezone."""
    return ensure_aware(value).astimezone().date()


def is_same_local_day(a: datetime, b: datetime) -> bool:
    """True if both timestamps fall on the same local calendar day."""
    return local_date(a) == local_date(b)


def local_day_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """
    Start (inclusive) and end (exclusive) of the local day containing now.

    Returns:
        Tuple of aware UTC datetimes.
    """
    local_now = ensure_aware(now).astimezone()
    start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = (start + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def format_duration(seconds: float, full_precision: bool = False) -> str:
    """
    Format duration in seconds to human-readable string.

    Truncation to int happens only here, at display time.

    Args:
        seconds: Duration in seconds (negative values show as zero).
        full_precision: If True, always show all time components including
                        seconds even when hours > 0.

    Returns:
        Formatted string like "1 min 30 secs", "45 secs" or "2 hrs 15 mins".

    Examples:
        >>> format_duration(90)
        '1 min 30 secs'
        >>> format_duration(3725)
        '1 hr 2 mins'
        >>> format_duration(0)
        '0 secs'
    """
    total_seconds = int(seconds) if seconds >= 0 else 0

    hours = total_seconds // 3600
    mins = (total_seconds % 3600) // 60
    secs = total_seconds % 60

    parts = []
    if hours > 0:
        parts.append(f"{hours} {'hr' if hours == 1 else 'hrs'}")
    if mins > 0 or (full_precision and hours > 0):
        parts.append(f"{mins} {'min' if mins == 1 else 'mins'}")
    if (secs > 0 or full_precision) and (hours == 0 or full_precision):
        parts.append(f"{secs} {'sec' if secs == 1 else 'secs'}")

    return " ".join(parts) if parts else "0 secs"


def format_countdown(seconds: float) -> str:
    """
    Format a countdown for the 1 Hz display tick.

    Returns:
        "MM:SS", or "HH:MM:SS" once an hour or more remains.
    """
    total = int(seconds) if seconds > 0 else 0
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"
