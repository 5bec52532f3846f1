"""Weekly schedule → concrete class instants — pure business logic.

A subject recurs every week on a weekday at a local wall-clock time in its
owner's timezone. These helpers turn that into absolute instants.

Weeks are stepped on the local calendar date and the wall-clock time is
re-applied afterwards, so a class at 10:00 stays at 10:00 local across a
daylight-saving shift. Instants are always compared in UTC: two datetimes that
share a tzinfo object compare by wall time in Python, which is wrong across a
shift.

No I/O: this module only transforms data.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

WEEKDAYS = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


def parse_hhmm(raw: str) -> time:
    """Parse a strict 24h ``H:MM``/``HH:MM`` string. Raises ValueError."""
    parts = raw.strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts) or len(parts[1]) != 2:
        raise ValueError(f"Not an HH:MM time: {raw!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Hour/minute out of range: {raw!r}")
    return time(hour, minute)


def _weekday_index(day: str) -> int:
    try:
        return WEEKDAYS.index(day)
    except ValueError:
        raise ValueError(f"Unknown weekday: {day!r}") from None


def _at_local(day: date, clock: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, clock, tzinfo=tz)


def _utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc)


def next_occurrence(day: str, time_str: str, tz_name: str, now: datetime) -> datetime:
    """First occurrence strictly after ``now``, in the owner's timezone."""
    tz = ZoneInfo(tz_name)
    clock = parse_hhmm(time_str)
    local_now = now.astimezone(tz)

    days_ahead = (_weekday_index(day) - local_now.weekday()) % 7
    candidate_date = local_now.date() + timedelta(days=days_ahead)
    candidate = _at_local(candidate_date, clock, tz)
    if _utc(candidate) <= _utc(now):
        candidate = _at_local(candidate_date + timedelta(weeks=1), clock, tz)
    return candidate


def most_recent_occurrence(day: str, time_str: str, tz_name: str, now: datetime) -> datetime:
    """Latest occurrence at or before ``now``, in the owner's timezone."""
    tz = ZoneInfo(tz_name)
    clock = parse_hhmm(time_str)
    local_now = now.astimezone(tz)

    days_back = (local_now.weekday() - _weekday_index(day)) % 7
    candidate_date = local_now.date() - timedelta(days=days_back)
    candidate = _at_local(candidate_date, clock, tz)
    if _utc(candidate) > _utc(now):
        candidate = _at_local(candidate_date - timedelta(weeks=1), clock, tz)
    return candidate


def occurrence_end(start: datetime, duration_hours: float) -> datetime:
    """Absolute end of a class (elapsed time, not wall-clock)."""
    return _utc(start) + timedelta(hours=duration_hours)


def within_window(now: datetime, target: datetime, window: timedelta = timedelta(minutes=1)) -> bool:
    """True if ``now`` is strictly closer than ``window`` to ``target``."""
    return abs(_utc(now) - _utc(target)) < window
