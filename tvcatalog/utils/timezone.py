"""
Date and Time utilities

XMLTV timestamp parsing, playlist refresh interval parsing and display
formatting. Centralizes all date parsing logic to keep it consistent.
"""
from datetime import datetime, timedelta, timezone
import logging
import re

from tvcatalog.config import settings

logger = logging.getLogger(__name__)

_XMLTV_TIME_RE = re.compile(r"^\s*(\d{14})(?:\s*([+-])(\d{2}):?(\d{2}))?")
_INTERVAL_RE = re.compile(r"^\s*(\d{1,3}):(\d{1,2})\s*$")


class DateFormatError(ValueError):
    """Raised when date format is invalid"""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_xmltv_time(time_str: str | None) -> datetime:
    """
    Convert XMLTV time format to a UTC datetime

    Only the 14-digit date-time prefix is required. The `±HHMM` offset is
    applied when present; without one the value is taken as UTC.

    Args:
        time_str: XMLTV time like '20080715003000 -0600'

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        DateFormatError: If the 14-digit prefix is missing or not a valid date
    """
    if not time_str:
        raise DateFormatError("Empty XMLTV time")

    match = _XMLTV_TIME_RE.match(time_str)
    if not match:
        raise DateFormatError(f"Invalid XMLTV time: '{time_str}'")

    digits, sign, tz_hours, tz_mins = match.groups()
    try:
        dt = datetime.strptime(digits, "%Y%m%d%H%M%S")
    except ValueError as e:
        raise DateFormatError(f"Invalid XMLTV time: '{time_str}'") from e

    offset_minutes = 0
    if sign:
        offset_minutes = int(tz_hours) * 60 + int(tz_mins)
        if sign == "-":
            offset_minutes = -offset_minutes

    return (dt - timedelta(minutes=offset_minutes)).replace(tzinfo=timezone.utc)


def parse_update_interval(interval: str | None, default: str | None = None) -> timedelta:
    """
    Parse an `HH:MM` playlist refresh interval.

    Malformed or zero-length values fall back to the default interval
    instead of raising.
    """
    fallback = default or settings.default_update_interval

    for candidate in (interval, fallback):
        if not candidate:
            continue
        match = _INTERVAL_RE.match(candidate)
        if not match:
            logger.debug("Ignoring malformed update interval '%s'", candidate)
            continue
        hours, minutes = int(match.group(1)), int(match.group(2))
        if minutes >= 60 or (hours == 0 and minutes == 0):
            logger.debug("Ignoring out-of-range update interval '%s'", candidate)
            continue
        return timedelta(hours=hours, minutes=minutes)

    return timedelta(hours=2)


def format_clock(dt: datetime) -> str:
    """Format a UTC datetime as HH:MM for programme descriptions."""
    return dt.astimezone(timezone.utc).strftime("%H:%M")
