"""
Calendar Module

Plain calendar-date arithmetic in the loan's fixed local calendar
(Santo Domingo, UTC-4, no daylight-saving transitions). Dates never carry
a time component so due dates cannot drift by a day across timezones.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional
import calendar

from .exceptions import DataError

SANTO_DOMINGO = timezone(timedelta(hours=-4), "America/Santo_Domingo")


def local_timezone(offset_hours: Optional[int] = None) -> timezone:
    """Fixed-offset local timezone"""
    if offset_hours is None or offset_hours == -4:
        return SANTO_DOMINGO
    return timezone(timedelta(hours=offset_hours))


def today_local(offset_hours: Optional[int] = None, now: Optional[datetime] = None) -> date:
    """Current calendar date in the local calendar"""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(local_timezone(offset_hours)).date()


def parse_date(value: Any) -> date:
    """
    Parse a stored date. Accepts date objects, 'YYYY-MM-DD' strings and
    ISO timestamps (the date part is taken as-is, never shifted).

    Raises:
        DataError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value or not isinstance(value, str):
        raise DataError(f"Invalid date value: {value!r}")
    try:
        return date.fromisoformat(value.split('T')[0].strip())
    except ValueError:
        raise DataError(f"Invalid date value: {value!r}")


def parse_optional_date(value: Any) -> Optional[date]:
    """Parse a nullable stored date"""
    if value is None or value == "":
        return None
    return parse_date(value)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_periods(anchor: date, frequency, periods: int) -> date:
    """
    Step `periods` payment periods from `anchor`.

    Monthly steps are always taken from the anchor, not chained, so a
    schedule anchored on the 31st keeps returning to the 31st.
    """
    value = getattr(frequency, "value", frequency)
    if value == "daily":
        return anchor + timedelta(days=periods)
    elif value == "weekly":
        return anchor + timedelta(days=7 * periods)
    elif value == "biweekly":
        return anchor + timedelta(days=14 * periods)
    elif value == "monthly":
        return add_months(anchor, periods)
    else:
        raise ValueError(f"Unsupported payment frequency: {frequency}")


def days_between(earlier: date, later: date) -> int:
    """Whole days from `earlier` to `later`"""
    return (later - earlier).days
