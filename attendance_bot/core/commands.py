"""
Attendance Bot — Slash commands.

The command set is closed: every message starting with "/" parses into a
``Command`` whose ``kind`` is one member of ``CommandKind``. The coordinator
maps each member to exactly one handler.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

from attendance_bot.core.validators import (
    capitalize_words,
    normalize_day,
    normalize_time,
    validate_duration,
)


class CommandKind(str, Enum):
    START = "/start"
    HELP = "/help"
    ADD = "/add"
    EDIT = "/edit"
    REMOVE = "/remove"
    CLEAR_LIST = "/clearlist"
    LIST = "/list"
    SHOW = "/show"
    TIMEZONE = "/timezone"
    SETTINGS = "/settings"
    REMINDERS = "/reminders"
    ALERTS = "/alerts"
    UPLOAD = "/upload"
    DELETE_USER = "/deleteuser"
    CANCEL = "/cancel"
    UNKNOWN = ""


# Commands that are allowed while another flow is open.
ALWAYS_ALLOWED = frozenset({CommandKind.CANCEL, CommandKind.HELP})


@dataclass
class Command:
    kind: CommandKind
    args: str = ""
    raw: str = ""


def is_command(text: str) -> bool:
    return text.strip().startswith("/")


def parse_command(text: str) -> Command:
    """Split '/add Maths on mon at 10 for 2' into kind + argument string.

    Telegram may append the bot name ('/list@MyBot'); it is ignored.
    """
    stripped = text.strip()
    head, _, args = stripped.partition(" ")
    name = head.split("@", 1)[0].lower()
    for kind in CommandKind:
        if kind is not CommandKind.UNKNOWN and kind.value == name:
            return Command(kind=kind, args=args.strip(), raw=stripped)
    return Command(kind=CommandKind.UNKNOWN, args=args.strip(), raw=stripped)


# ---------------------------------------------------------------------------
# /add argument grammar
# ---------------------------------------------------------------------------


class NewSubject(BaseModel):
    """A validated schedule entry from /add.

    JSON example:
    {
        "name": "Mathematics",
        "day": "Monday",
        "time": "10:00",
        "duration_hours": 2.0
    }
    """
    name: str
    day: str
    time: str             # HH:MM in 24h format
    duration_hours: float


_DAY = r"(mon|tue|tues|wed|thu|thur|thurs|fri|sat|sun|monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
_TIME = r"(\d{1,2}(?::\d{2})?\s*(?:am|pm)?)"
_HOURS = r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h)?"

_ADD_PATTERNS = (
    re.compile(rf"^(.+?)\s+on\s+{_DAY}\s+at\s+{_TIME}\s+for\s+{_HOURS}$", re.IGNORECASE),
    re.compile(rf"^(.+?)\s+{_DAY}\s+{_TIME}\s+{_HOURS}$", re.IGNORECASE),
)

SUBJECT_NAME_MIN = 2
SUBJECT_NAME_MAX = 100


def validate_subject_name(raw: str) -> str:
    name = capitalize_words(raw.strip())
    if not SUBJECT_NAME_MIN <= len(name) <= SUBJECT_NAME_MAX:
        raise ValueError(
            f"Subject names must be {SUBJECT_NAME_MIN}-{SUBJECT_NAME_MAX} characters."
        )
    return name


def parse_add_args(args: str) -> NewSubject | None:
    """Parse '<subject> on <day> at <time> for <hours>' (or the compact form).

    Returns None if the text doesn't fit the grammar; raises ValueError if it
    fits but a value is out of range.
    """
    for pattern in _ADD_PATTERNS:
        match = pattern.match(args.strip())
        if match is None:
            continue
        name, day, time, hours = match.groups()
        return NewSubject(
            name=validate_subject_name(name),
            day=normalize_day(day),
            time=normalize_time(time),
            duration_hours=validate_duration(float(hours)),
        )
    return None
