"""Fixed reply vocabulary for attendance prompts and yes/no confirmations.

Matching is case-insensitive and works on whole words or phrases: a message
matches a token if it equals it or contains it surrounded by word breaks, so
"yes I was there" counts as affirmative while "yesterday" does not.
Confirmations of destructive actions are stricter and need a bare yes or no.
"""

from __future__ import annotations

import string

from attendance_bot.data.models import AttendanceStatus

AFFIRMATIVE = (
    "yes", "y", "yeah", "yep", "yup", "present", "attended", "there", "came", "went",
    "हां", "जी", "उपस्थित", "आया", "गया", "था",
)
NEGATIVE = (
    "no", "n", "nope", "nah", "absent", "missed", "not", "couldn't", "didn't", "wasn't",
    "skip", "skipped",
    "नहीं", "ना", "अनुपस्थित", "नहीं आया", "छूटा", "नहीं गया",
)
MASS_SKIP = ("mass bunk", "massbunk", "bunked", "mass skip", "mass skipped")
HOLIDAY = ("holiday",)

# Destructive confirmations only accept a bare yes or no, so a question such
# as "is there an undo?" is never taken as consent.
CONFIRM = ("yes", "y", "yeah", "yep", "yup", "confirm", "हां")
DECLINE = ("no", "n", "nope", "nah", "cancel", "नहीं", "ना")

# More specific outcomes first: "no, it was a holiday" is a holiday.
_ATTENDANCE_ORDER = (
    (MASS_SKIP, AttendanceStatus.MASS_SKIPPED),
    (HOLIDAY, AttendanceStatus.HOLIDAY),
    (NEGATIVE, AttendanceStatus.ABSENT),
    (AFFIRMATIVE, AttendanceStatus.PRESENT),
)

_EDGE_PUNCTUATION = string.punctuation.replace("'", "")


def normalize(text: str) -> str:
    words = (word.strip(_EDGE_PUNCTUATION) for word in text.lower().split())
    return " ".join(word for word in words if word)


def matches(text: str, tokens: tuple[str, ...]) -> bool:
    padded = f" {normalize(text)} "
    return any(f" {token} " in padded for token in tokens)


def parse_attendance_response(text: str) -> AttendanceStatus | None:
    """Map a reply to a terminal outcome, or None if it isn't an attendance reply."""
    for tokens, status in _ATTENDANCE_ORDER:
        if matches(text, tokens):
            return status
    return None


def is_attendance_response(text: str) -> bool:
    return parse_attendance_response(text) is not None


def parse_yes_no(text: str) -> bool | None:
    """True for a yes, False for a no, None when the reply is anything else.

    The whole message must be one of the words, ignoring case and edge
    punctuation ("Yes!" counts, "yes please" does not).
    """
    reply = normalize(text)
    if reply in DECLINE:
        return False
    if reply in CONFIRM:
        return True
    return None
