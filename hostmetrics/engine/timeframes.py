"""
Timeframe resolution.

A timeframe is only a name until it is resolved against "now". Calendar
boundaries (start of day, week, month) are taken in the reporting timezone
and returned as UTC-aware instants.
"""

from datetime import datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hostmetrics.models import Timeframe, TimeWindow

ROLLING_DAYS = {
    Timeframe.LAST_30_DAYS: 30,
    Timeframe.LAST_90_DAYS: 90,
}


@lru_cache(maxsize=32)
def get_timezone(name: str) -> tzinfo:
    """
    Resolve an IANA timezone name.

    Raises:
        ValueError: If the name is unknown
    """
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name!r}") from e


def _local_midnight(day: datetime, tz: tzinfo) -> datetime:
    return datetime.combine(day.date(), time.min, tzinfo=tz)


def resolve_window(
    timeframe: Timeframe | str,
    now: datetime,
    tz: tzinfo = timezone.utc,
    week_start: int = 0,
) -> TimeWindow:
    """
    Resolve a timeframe to a concrete [start, now] window.

    Args:
        timeframe: Timeframe or its string form
        now: Evaluation instant (naive values are taken as UTC)
        tz: Reporting timezone for calendar boundaries
        week_start: First weekday of a week (0=Monday ... 6=Sunday)

    Returns:
        TimeWindow in UTC with end == now

    Raises:
        InvalidTimeframeError: If the timeframe is not recognised
    """
    timeframe = Timeframe.parse(timeframe)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz)

    if timeframe == Timeframe.TODAY:
        start = _local_midnight(local_now, tz)
    elif timeframe == Timeframe.THIS_WEEK:
        days_back = (local_now.weekday() - week_start) % 7
        start = _local_midnight(local_now - timedelta(days=days_back), tz)
    elif timeframe == Timeframe.THIS_MONTH:
        start = _local_midnight(local_now.replace(day=1), tz)
    else:
        start = now - timedelta(days=ROLLING_DAYS[timeframe])

    return TimeWindow(
        start=start.astimezone(timezone.utc),
        end=now.astimezone(timezone.utc),
    )
