"""
Discount availability windows (day/time restrictions shown on the coupon).
Informational only: redemption is gated by the coupon lifecycle, not by these.

Windows are written in store-local time. Aware datetimes are converted to the
store timezone first; naive datetimes are taken as already local.
"""
from datetime import datetime, time, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import STORE_TIMEZONE
from models import DiscountSummary

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def to_store_time(when: datetime, tz: Union[str, tzinfo] = STORE_TIMEZONE) -> datetime:
    if when.tzinfo is None:
        return when
    return when.astimezone(ZoneInfo(tz) if isinstance(tz, str) else tz)


def _day_index(when: datetime) -> int:
    """0 = Sunday, matching the backend's dayIndex."""
    return (when.weekday() + 1) % 7


def _parse_hhmm(value: str) -> time:
    hours, _, minutes = value.partition(":")
    h = int(hours)
    if h >= 24:
        return time(23, 59, 59)
    return time(h, int(minutes or 0))


def is_available_at(
    discount: DiscountSummary,
    when: datetime,
    tz: Union[str, tzinfo] = STORE_TIMEZONE,
) -> bool:
    when = to_store_time(when, tz)
    day = _day_index(when)

    if discount.excluded_days_of_week and day in discount.excluded_days_of_week:
        return False
    if discount.excluded_hours and when.hour in discount.excluded_hours:
        return False

    schedule = discount.available_days_and_times
    if schedule is None or not schedule.available_days:
        return True

    for available in schedule.available_days:
        if available.day_index != day:
            continue
        if not available.time_ranges:
            return True
        now = when.time()
        for window in available.time_ranges:
            start, end = _parse_hhmm(window.start), _parse_hhmm(window.end)
            if start <= end:
                if start <= now <= end:
                    return True
            elif now >= start or now <= end:  # window crosses midnight
                return True
    return False


def describe_schedule(discount: DiscountSummary) -> Optional[str]:
    """Human readable summary, e.g. 'Monday 09:00-13:00; Friday all day'."""
    schedule = discount.available_days_and_times
    if schedule is None or not schedule.available_days:
        return None

    parts = []
    for available in sorted(schedule.available_days, key=lambda d: d.day_index):
        name = DAY_NAMES[available.day_index % 7]
        if not available.time_ranges:
            parts.append(f"{name} all day")
        else:
            ranges = ", ".join(f"{r.start}-{r.end}" for r in available.time_ranges)
            parts.append(f"{name} {ranges}")
    return "; ".join(parts)
