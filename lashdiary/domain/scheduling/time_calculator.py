"""
Time calculations for the booking calendar.

Every weekday and "today" decision is made in the business timezone with
pytz, so results do not depend on the server's local offset.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytz

from ...config import BUSINESS_TIMEZONE
from .errors import InvalidDate

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

WEEKDAY_KEYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def get_business_tz(tz_name: Optional[str] = None):
    return pytz.timezone(tz_name or BUSINESS_TIMEZONE)


def utcnow() -> datetime:
    """Current instant as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes (as stored in the database) as UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_db_datetime(dt: datetime) -> datetime:
    """Convert to naive UTC for storage"""
    return ensure_aware(dt).astimezone(timezone.utc).replace(tzinfo=None)


def parse_date(value: str) -> date:
    """
    Parse a YYYY-MM-DD string.

    Raises InvalidDate for anything else, including impossible dates like 2025-02-30.
    """
    if not isinstance(value, str) or not DATE_PATTERN.match(value.strip()):
        raise InvalidDate(f"Invalid date format: {value!r}. Expected YYYY-MM-DD")
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise InvalidDate(f"Invalid date: {value!r}") from None


def weekday_key(day: date, tz_name: Optional[str] = None) -> str:
    """
    Resolve the weekday name of a calendar date in the business timezone.

    The date is anchored at local noon in the business zone and the weekday is
    read from that localized instant.
    """
    tz = get_business_tz(tz_name)
    local_noon = tz.localize(datetime(day.year, day.month, day.day, 12, 0))
    return WEEKDAY_KEYS[local_noon.weekday()]


def business_today(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> date:
    tz = get_business_tz(tz_name)
    return ensure_aware(now or utcnow()).astimezone(tz).date()


def materialize_slot(day: date, hour: int, minute: int, tz_name: Optional[str] = None) -> datetime:
    """Absolute, timezone-aware start time for a template entry on a date"""
    tz = get_business_tz(tz_name)
    return tz.localize(datetime(day.year, day.month, day.day, hour, minute))


def parse_slot(value: str, tz_name: Optional[str] = None) -> datetime:
    """
    Parse an ISO slot string. Naive values are read as business-local time.

    Raises InvalidDate when the value is not an ISO timestamp.
    """
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        raise InvalidDate(f"Invalid time slot: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = get_business_tz(tz_name).localize(parsed)
    return parsed


def slot_key(start: datetime) -> str:
    """Normalized comparison key for a slot instant (UTC, minute precision)"""
    return ensure_aware(start).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%MZ")


def format_slot_value(start: datetime, tz_name: Optional[str] = None) -> str:
    """ISO string in business time, e.g. 2025-03-10T09:30:00+03:00"""
    return ensure_aware(start).astimezone(get_business_tz(tz_name)).isoformat()


def format_time_label(hour: int, minute: int) -> str:
    ampm = "PM" if hour >= 12 else "AM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {ampm}"


def format_date_label(day: date) -> str:
    """Monday, March 10, 2025"""
    return f"{day.strftime('%A')}, {day.strftime('%B')} {day.day}, {day.year}"


def day_bounds_utc(day: date, tz_name: Optional[str] = None) -> tuple[datetime, datetime]:
    """Start and end of a business-local calendar day as aware UTC datetimes"""
    tz = get_business_tz(tz_name)
    start = tz.localize(datetime(day.year, day.month, day.day))
    next_day = day + timedelta(days=1)
    end = tz.localize(datetime(next_day.year, next_day.month, next_day.day))
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def hours_until(start: datetime, now: datetime) -> float:
    return (ensure_aware(start) - ensure_aware(now)).total_seconds() / 3600
