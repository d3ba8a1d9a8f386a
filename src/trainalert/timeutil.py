"""Helpers for timetable clock strings and service days."""

from datetime import date, datetime, time, timedelta
from typing import Optional

# Trains after midnight belong to the previous service day until 03:00
SERVICE_DAY_START_MINUTES = 3 * 60
MINUTES_PER_DAY = 24 * 60


def parse_hhmm(value: str) -> int:
    """
    Parse a timetable clock string into minutes after midnight.

    Accepts "HH:MM" and GTFS style "HH:MM:SS", including hours past 23
    for trains that run beyond midnight (e.g. "25:10").

    Raises:
        ValueError: If the string is not a clock time.
    """
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid timetable time '{value}'")
    try:
        hours = int(parts[0])
        minutes = int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid timetable time '{value}'") from None
    if hours < 0 or not 0 <= minutes < 60:
        raise ValueError(f"Invalid timetable time '{value}'")
    return hours * 60 + minutes


def service_minutes(value: str) -> int:
    """Minutes since the start of the service day the time belongs to."""
    minutes = parse_hhmm(value)
    if minutes < SERVICE_DAY_START_MINUTES:
        minutes += MINUTES_PER_DAY
    return minutes


def service_date_for(moment: datetime) -> date:
    """Return the service day a wall-clock moment falls in."""
    return (moment - timedelta(minutes=SERVICE_DAY_START_MINUTES)).date()


def at_service_minutes(service_date: date, minutes: int, tzinfo=None) -> datetime:
    """Build an absolute datetime from a service date and service minutes."""
    midnight = datetime.combine(service_date, time(0, 0), tzinfo=tzinfo)
    return midnight + timedelta(minutes=minutes)


def resolve_clock(service_date: date, value: Optional[str], tzinfo=None) -> Optional[datetime]:
    """Absolute datetime for a timetable string on a service date, or None."""
    if not value:
        return None
    return at_service_minutes(service_date, service_minutes(value), tzinfo)
