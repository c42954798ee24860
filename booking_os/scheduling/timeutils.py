"""Minutes-of-day helpers shared by slot generation and conflict checks."""

import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Union
from zoneinfo import ZoneInfo

TimeLike = Union[time, str]

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*([AaPp][Mm])?\s*$")


def parse_time(value: TimeLike) -> time:
    """Parse ``"HH:MM"``, ``"HH:MM:SS"`` or ``"h:MM AM"`` into a time."""
    if isinstance(value, time):
        return value
    m = _TIME_RE.match(value)
    if not m:
        raise ValueError(f"Cannot parse time: {value!r}")
    hours, minutes, meridiem = int(m.group(1)), int(m.group(2)), m.group(3)
    if meridiem:
        if not 1 <= hours <= 12:
            raise ValueError(f"Cannot parse time: {value!r}")
        if meridiem.upper() == "PM" and hours != 12:
            hours += 12
        elif meridiem.upper() == "AM" and hours == 12:
            hours = 0
    if hours > 23 or minutes > 59:
        raise ValueError(f"Cannot parse time: {value!r}")
    return time(hours, minutes)


def to_minutes(value: TimeLike) -> int:
    """Minutes since midnight."""
    t = parse_time(value)
    return t.hour * 60 + t.minute


def minutes_to_time(minutes: int) -> time:
    if not 0 <= minutes < 24 * 60:
        raise ValueError(f"Minutes out of range for a single day: {minutes}")
    return time(minutes // 60, minutes % 60)


def add_minutes(value: TimeLike, minutes: int) -> time:
    return minutes_to_time(to_minutes(value) + minutes)


def get_zone(name: str) -> tzinfo:
    return ZoneInfo(name)


def local_now(now: datetime, tz: tzinfo) -> datetime:
    """Convert an aware ``now`` into the business timezone."""
    return now.astimezone(tz)


def combine(day: date, value: TimeLike, tz: tzinfo) -> datetime:
    return datetime.combine(day, parse_time(value), tzinfo=tz)


def hours_until(start: datetime, now: datetime) -> float:
    return (start - now) / timedelta(hours=1)
