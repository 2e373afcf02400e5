"""cx_dashboard.time_filter

Date-range filtering for a contact's timeline (activities, surveys, notes).

Range names:
  fixed    all, today, yesterday, this_week, last_week, this_month,
           last_month, this_quarter, last_quarter, this_year, last_year
  rolling  last_7_days, last_14_days, last_30_days, last_60_days,
           last_90_days, last_180_days, last_365_days
  custom   explicit start and/or end

Weeks start on Sunday.  Bounds are inclusive.  Items without any date are
always kept.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, TypeVar

T = TypeVar("T")

ROLLING_DAYS = {
    "last_7_days": 7,
    "last_14_days": 14,
    "last_30_days": 30,
    "last_60_days": 60,
    "last_90_days": 90,
    "last_180_days": 180,
    "last_365_days": 365,
}

FIXED_RANGES = frozenset({
    "all", "today", "yesterday", "this_week", "last_week", "this_month",
    "last_month", "this_quarter", "last_quarter", "this_year", "last_year",
})

# Attributes checked, in order, for an item's timeline date
DATE_ATTRS = ("created_at", "participation_date", "sent_at")

_END_OF_DAY = timedelta(days=1) - timedelta(microseconds=1)


def _start_of_day(ts: datetime) -> datetime:
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def _month_start(year: int, month: int, tz: Any) -> datetime:
    # month may overflow / underflow by whole years
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return datetime(year, month, 1, tzinfo=tz)


def date_range(range_name: str, now: datetime | None = None) -> tuple[datetime | None, datetime | None]:
    """Return (start, end) for a named range; (None, None) means unbounded.

    Raises ValueError for an unknown range name.
    """
    now = now or datetime.now(timezone.utc)
    tz = now.tzinfo

    if range_name in ROLLING_DAYS:
        return now - timedelta(days=ROLLING_DAYS[range_name]), now
    if range_name not in FIXED_RANGES:
        raise ValueError(f"unknown time range {range_name!r}")

    today = _start_of_day(now)
    if range_name == "all":
        return None, None
    if range_name == "today":
        return today, today + _END_OF_DAY
    if range_name == "yesterday":
        start = today - timedelta(days=1)
        return start, start + _END_OF_DAY

    if range_name in ("this_week", "last_week"):
        # Python weekday(): Monday=0 … Sunday=6
        start = today - timedelta(days=(now.weekday() + 1) % 7)
        if range_name == "last_week":
            start -= timedelta(days=7)
        return start, start + timedelta(days=7) - timedelta(microseconds=1)

    if range_name in ("this_month", "last_month"):
        offset = 0 if range_name == "this_month" else -1
        start = _month_start(now.year, now.month + offset, tz)
        end = _month_start(now.year, now.month + offset + 1, tz)
        return start, end - timedelta(microseconds=1)

    if range_name in ("this_quarter", "last_quarter"):
        first_month = 3 * ((now.month - 1) // 3) + 1
        if range_name == "last_quarter":
            first_month -= 3
        start = _month_start(now.year, first_month, tz)
        end = _month_start(now.year, first_month + 3, tz)
        return start, end - timedelta(microseconds=1)

    # this_year / last_year
    year = now.year if range_name == "this_year" else now.year - 1
    return (
        datetime(year, 1, 1, tzinfo=tz),
        datetime(year + 1, 1, 1, tzinfo=tz) - timedelta(microseconds=1),
    )


def item_date(item: Any) -> datetime | None:
    for attr in DATE_ATTRS:
        value = getattr(item, attr, None)
        if value is not None:
            return value
    return None


def in_range(ts: datetime, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and ts < start:
        return False
    if end is not None and ts > end:
        return False
    return True


def filter_by_date_range(
    items: Iterable[T],
    range_name: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> list[T]:
    """Keep items whose timeline date falls in the range.

    An explicit start / end takes precedence over range_name (custom range).
    """
    if start is None and end is None and range_name:
        start, end = date_range(range_name, now)
    if start is None and end is None:
        return list(items)
    kept = []
    for item in items:
        ts = item_date(item)
        if ts is None or in_range(ts, start, end):
            kept.append(item)
    return kept
