"""Timezone and local-time window utilities.

All persisted timestamps are naive UTC. User-facing rules (quiet hours, daily
budgets, best send hours) are evaluated in the user's IANA timezone.
"""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Get the current time as a naive UTC datetime (storage format)."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_local(dt: datetime, timezone_str: str = "UTC") -> datetime:
    """Convert a stored datetime to the given timezone.

    Assumes naive datetimes are UTC.

    Examples:
        >>> to_local(datetime(2026, 2, 8, 17, 30), "America/Denver").hour
        10
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(ZoneInfo(timezone_str))


def to_utc(dt: datetime) -> datetime:
    """Convert an aware datetime back to naive UTC storage format."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def local_date(dt: datetime, timezone_str: str = "UTC") -> date:
    """Calendar date of a stored datetime in the given timezone."""
    return to_local(dt, timezone_str).date()


def parse_time_window(window: str) -> tuple[time, time]:
    """Parse a window string like '22:00-08:00' into start/end times.

    Args:
        window: String in format "HH:MM-HH:MM".

    Returns:
        Tuple of (start_time, end_time).

    Raises:
        ValueError: If the format is invalid.
    """
    try:
        start_str, end_str = window.split("-")
        return parse_clock(start_str), parse_clock(end_str)
    except (ValueError, AttributeError) as e:
        raise ValueError(f"Invalid time window: {window}. Expected 'HH:MM-HH:MM'") from e


def parse_clock(value: str) -> time:
    """Parse 'HH:MM' (or 'HH:MM:SS') into a time."""
    parts = [int(p) for p in value.strip().split(":")]
    if len(parts) == 1:
        parts.append(0)
    return time(parts[0], parts[1])


def in_window(current: time, start: time, end: time) -> bool:
    """Check whether a local clock time falls inside a half-open window.

    Windows where start > end span midnight (e.g. 22:00-08:00).
    """
    if start == end:
        return False
    if start < end:
        return start <= current < end
    return current >= start or current < end


def next_local_time(now: datetime, timezone_str: str, at: time) -> datetime:
    """Next occurrence (strictly after now) of a local clock time, as naive UTC."""
    local = to_local(now, timezone_str)
    candidate = local.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= local:
        candidate = _add_local_days(candidate, 1, timezone_str)
    return to_utc(candidate)


def next_local_midnight(now: datetime, timezone_str: str) -> datetime:
    """Start of the next local calendar day, as naive UTC."""
    return next_local_time(now, timezone_str, time(0, 0))


def _add_local_days(local_dt: datetime, days: int, timezone_str: str) -> datetime:
    """Add calendar days in local wall time, re-resolving the UTC offset."""
    naive = local_dt.replace(tzinfo=None) + timedelta(days=days)
    return naive.replace(tzinfo=ZoneInfo(timezone_str))


def format_for_display(
    dt: datetime,
    timezone_str: str = "UTC",
    fmt: str = "%Y-%m-%d %H:%M %Z",
) -> str:
    """Format a stored datetime for display in a user's timezone.

    Examples:
        >>> format_for_display(datetime(2026, 2, 8, 17, 30), "America/Denver")
        '2026-02-08 10:30 MST'
    """
    return to_local(dt, timezone_str).strftime(fmt)
