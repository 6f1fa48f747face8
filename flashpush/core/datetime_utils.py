"""Centralized datetime utilities for consistent timezone handling.

Database columns hold naive UTC datetimes. Recipient-facing decisions
(quiet hours) are always evaluated in the recipient's own IANA timezone,
never the server's.

Usage:
    from flashpush.core.datetime_utils import utc_now, get_cutoff, is_in_quiet_hours

    cutoff = get_cutoff(hours=24)
    counters = query.filter(RateLimitCounter.created_at >= cutoff)

    if is_in_quiet_hours(prefs.quiet_hours_start, prefs.quiet_hours_end, prefs.timezone, now):
        skip(recipient)
"""

from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from flashpush.core.logging import get_logger

logger = get_logger(__name__)


def utc_now() -> datetime:
    """Get current UTC time as naive datetime.

    Returns naive datetime for database compatibility.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def get_cutoff(hours: int = 0, days: int = 0, now: datetime | None = None) -> datetime:
    """Get cutoff datetime for trailing-window queries.

    Args:
        hours: Hours to subtract from now
        days: Days to subtract from now
        now: Reference instant (naive UTC), defaults to utc_now()

    Returns:
        Naive UTC datetime representing the cutoff point
    """
    delta = timedelta(hours=hours, days=days)
    return (now or utc_now()) - delta


def get_expiry(minutes: int = 0, hours: int = 0, days: int = 0, now: datetime | None = None) -> datetime:
    """Get future expiry datetime (naive UTC)."""
    delta = timedelta(minutes=minutes, hours=hours, days=days)
    return (now or utc_now()) + delta


def to_naive_utc(dt: datetime) -> datetime:
    """Convert a datetime to naive UTC.

    Args:
        dt: Datetime to convert (can be aware or naive)

    Returns:
        Naive UTC datetime for database compatibility
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def to_aware_utc(dt: datetime) -> datetime:
    """Attach UTC to a naive datetime, or convert an aware one to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def is_valid_timezone(tz_name: str) -> bool:
    """Check if a timezone name is valid IANA identifier."""
    try:
        ZoneInfo(tz_name)
        return True
    except (KeyError, ValueError):
        return False


def local_time_at(timezone: str | None, instant: datetime) -> datetime:
    """Get the wall-clock time in a recipient's timezone at a given instant.

    Args:
        timezone: IANA timezone string (e.g., "America/New_York")
        instant: The instant to convert (naive values are treated as UTC)

    Returns:
        Aware datetime in the recipient's local timezone. Invalid or missing
        timezones fall back to UTC.
    """
    try:
        tz = ZoneInfo(timezone or "UTC")
    except (KeyError, ValueError):
        logger.bind(timezone=timezone).warning("invalid_timezone_fallback_utc")
        tz = ZoneInfo("UTC")

    return to_aware_utc(instant).astimezone(tz)


def parse_clock_time(value: str | time | None) -> time | None:
    """Parse "HH:MM" or "HH:MM:SS" into a time, passing time objects through.

    Returns None for empty or unparseable values.
    """
    if value is None or isinstance(value, time):
        return value
    try:
        parts = [int(p) for p in value.split(":")]
        return time(*parts[:3])
    except (ValueError, TypeError):
        return None


def is_in_quiet_hours(
    quiet_hours_start: str | time | None,
    quiet_hours_end: str | time | None,
    timezone: str | None,
    instant: datetime,
) -> bool:
    """Check whether an instant falls inside a recipient's quiet hours.

    The interval is half-open, [start, end), in the recipient's local time.
    When start > end the interval wraps midnight (e.g. 22:00-08:00). When
    start == end, or either bound is missing, there are no quiet hours.

    Args:
        quiet_hours_start: Local start time
        quiet_hours_end: Local end time
        timezone: Recipient's IANA timezone
        instant: Instant being evaluated (naive values are UTC)

    Returns:
        True if the recipient's local time is inside the quiet interval
    """
    start = parse_clock_time(quiet_hours_start)
    end = parse_clock_time(quiet_hours_end)
    if start is None or end is None or start == end:
        return False

    local_clock = local_time_at(timezone, instant).time().replace(tzinfo=None)

    if start > end:
        return local_clock >= start or local_clock < end
    return start <= local_clock < end
