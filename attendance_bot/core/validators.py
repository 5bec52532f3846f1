"""Input normalization for days, times, durations and timezones.

Every function either returns a normalized value or raises ValueError with a
message that is safe to show to the user.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from attendance_bot.core.schedule_resolver import WEEKDAYS, parse_hhmm

MIN_DURATION_HOURS = 0.5
MAX_DURATION_HOURS = 8.0

_DAY_ALIASES = {
    "mon": "Monday",
    "tue": "Tuesday",
    "tues": "Tuesday",
    "wed": "Wednesday",
    "thu": "Thursday",
    "thur": "Thursday",
    "thurs": "Thursday",
    "fri": "Friday",
    "sat": "Saturday",
    "sun": "Sunday",
}

_TIMEZONE_ALIASES = {
    "india": "Asia/Kolkata",
    "indian": "Asia/Kolkata",
    "ist": "Asia/Kolkata",
    "usa": "America/New_York",
    "america": "America/New_York",
    "us": "America/New_York",
    "est": "America/New_York",
    "pst": "America/Los_Angeles",
    "uk": "Europe/London",
    "britain": "Europe/London",
    "london": "Europe/London",
    "gmt": "Europe/London",
}

_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$", re.IGNORECASE)


def capitalize_words(text: str) -> str:
    return " ".join(word.capitalize() for word in text.split())


def normalize_day(raw: str) -> str:
    """'wed', 'Wednesday', 'WEDNESDAY' → 'Wednesday'."""
    key = raw.strip().lower().rstrip(".")
    if key in _DAY_ALIASES:
        return _DAY_ALIASES[key]
    for day in WEEKDAYS:
        if day.lower() == key:
            return day
    raise ValueError(f"'{raw.strip()}' is not a day of the week.")


def normalize_time(raw: str) -> str:
    """'2pm', '9:30am', '14:05', '9' → 24h 'HH:MM'."""
    match = _TIME_RE.match(raw.strip())
    if match is None:
        raise ValueError(f"'{raw.strip()}' is not a valid time.")

    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").lower()

    if meridiem:
        if not 1 <= hour <= 12:
            raise ValueError(f"'{raw.strip()}' is not a valid time.")
        if meridiem == "pm" and hour != 12:
            hour += 12
        if meridiem == "am" and hour == 12:
            hour = 0

    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"'{raw.strip()}' is not a valid time.")
    return f"{hour:02d}:{minute:02d}"


def validate_duration(hours: float) -> float:
    if not MIN_DURATION_HOURS <= hours <= MAX_DURATION_HOURS:
        raise ValueError(
            f"Class duration must be between {MIN_DURATION_HOURS:g} and "
            f"{MAX_DURATION_HOURS:g} hours."
        )
    return hours


def duration_between(start: str, end: str) -> float:
    """Hours from ``start`` to ``end`` (both HH:MM, same day). Raises if end <= start."""
    start_t, end_t = parse_hhmm(start), parse_hhmm(end)
    anchor = datetime(2000, 1, 1)
    delta: timedelta = datetime.combine(anchor, end_t) - datetime.combine(anchor, start_t)
    if delta <= timedelta(0):
        raise ValueError("The end time must be after the start time.")
    return delta.total_seconds() / 3600


def parse_time_range(raw: str) -> tuple[str, float]:
    """'10:00-11:30' → ('10:00', 1.5). Times may use am/pm."""
    parts = re.split(r"\s*(?:-|–|to)\s*", raw.strip(), maxsplit=1)
    if len(parts) != 2:
        raise ValueError("Please send the time as a range, e.g. 10:00-11:30.")
    start, end = normalize_time(parts[0]), normalize_time(parts[1])
    return start, validate_duration(duration_between(start, end))


def normalize_timezone(raw: str) -> str:
    """Map a friendly alias or IANA name to a timezone ZoneInfo accepts."""
    candidate = raw.strip()
    candidate = _TIMEZONE_ALIASES.get(candidate.lower(), candidate)
    if not is_valid_timezone(candidate):
        raise ValueError(f"'{raw.strip()}' is not a valid timezone.")
    return candidate


def is_valid_timezone(name: str) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True
