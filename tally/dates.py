"""Date utilities for tally.

Pure functions for calendar arithmetic and period windows. Windows are
half-open ``[start, end)`` ranges of local calendar dates.
"""

import calendar
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(start: date, months: int, anchor_day: int | None = None) -> date:
    """Move ``months`` calendar months from ``start``.

    The day of month is ``anchor_day`` (or ``start.day``), clamped to the
    last day of the target month, so anchor 31 lands on Feb 28/29.
    """
    index = start.year * 12 + (start.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(anchor_day or start.day, days_in_month(year, month))
    return date(year, month, day)


def get_zone(tz_name: str) -> ZoneInfo:
    """Resolve an IANA time zone name.

    Raises:
        ValueError: If the zone is unknown.
    """
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown time zone '{tz_name}'") from e


def local_date(instant: date | datetime, tz_name: str) -> date:
    """Calendar date of an instant in a time zone.

    Plain dates are taken as already local. Naive datetimes are interpreted
    as wall-clock time in ``tz_name``.
    """
    if not isinstance(instant, datetime):
        return instant
    if instant.tzinfo is None:
        return instant.date()
    return instant.astimezone(get_zone(tz_name)).date()


def month_window(day: date) -> tuple[date, date]:
    start = day.replace(day=1)
    return start, add_months(start, 1)


def week_window(day: date, week_start: int) -> tuple[date, date]:
    """Week containing ``day``; ``week_start`` is 0=Monday .. 6=Sunday."""
    offset = (day.weekday() - week_start) % 7
    start = day - timedelta(days=offset)
    return start, start + timedelta(days=7)


def span_window(day: date, anchor: date, span_days: int) -> tuple[date, date]:
    """Fixed-length window repeating every ``span_days`` from ``anchor`` in both directions."""
    index = (day - anchor).days // span_days
    start = anchor + timedelta(days=index * span_days)
    return start, start + timedelta(days=span_days)
