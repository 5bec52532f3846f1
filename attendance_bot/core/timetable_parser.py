"""
Attendance Bot — Timetable image parser.

Turns a photo of a weekly timetable into candidate schedule entries using the
configured vision LLM. Every entry the model returns is re-validated here;
entries that don't survive validation are dropped and logged, never guessed.
"""

from __future__ import annotations

import json
import logging
import re

from pydantic import BaseModel

from attendance_bot.core import llm
from attendance_bot.core.commands import SUBJECT_NAME_MAX, SUBJECT_NAME_MIN
from attendance_bot.core.validators import (
    MAX_DURATION_HOURS,
    MIN_DURATION_HOURS,
    normalize_day,
    normalize_time,
)
from attendance_bot.ports.timetable_port import TimetableParseError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared JSON contract
# ---------------------------------------------------------------------------


class ParsedClass(BaseModel):
    """One class extracted from a timetable image.

    JSON example:
    {
        "subject": "Mathematics",
        "day": "Monday",
        "start_time": "09:00",
        "end_time": "11:00",
        "duration_hours": 2.0
    }
    """
    subject: str
    day: str               # "Monday" .. "Sunday"
    start_time: str        # HH:MM in 24h format
    end_time: str          # HH:MM in 24h format
    duration_hours: float


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are a timetable extraction engine for a student attendance tracker.
You read photos and screenshots of weekly class timetables.
"""

_USER_PROMPT = """\
Extract every class from this timetable image.

Return ONLY a JSON array with one object per class:
[{"subject": "Subject Name", "day": "Monday", "startTime": "HH:MM", "endTime": "HH:MM"}]

Rules:
- Copy subject names exactly as they appear.
- "day" is the full English weekday name.
- Times use 24-hour HH:MM format.
- Several classes on the same day are separate entries.
- A class spanning several slots is one entry per contiguous block.
- If the image contains no timetable, return exactly: []
- No markdown, no explanation, no extra text.
"""

_JSON_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)
_NAME_JUNK_RE = re.compile(r"[^\w\s\-&]")


# ---------------------------------------------------------------------------
# Cleaning helpers
# ---------------------------------------------------------------------------


def _clean_subject_name(raw: str) -> str:
    name = _NAME_JUNK_RE.sub("", " ".join(raw.split()))
    return name.strip()[:SUBJECT_NAME_MAX]


def _span_hours(start: str, end: str) -> float:
    """Hours between two HH:MM times; an end before the start wraps past midnight."""
    start_h, start_m = map(int, start.split(":"))
    end_h, end_m = map(int, end.split(":"))
    minutes = (end_h * 60 + end_m) - (start_h * 60 + start_m)
    if minutes < 0:
        minutes += 24 * 60
    return minutes / 60


def _field(item: dict, *names: str) -> str:
    for name in names:
        value = item.get(name)
        if value not in (None, ""):
            return str(value)
    return ""


def _validate_entry(item: object) -> ParsedClass | None:
    """Normalize one raw model entry, or None if it can't be trusted."""
    if not isinstance(item, dict):
        logger.warning("Skipping non-dict timetable entry: %s", item)
        return None

    raw_subject = _field(item, "subject", "name")
    raw_day = _field(item, "day")
    raw_start = _field(item, "startTime", "start_time", "start")
    raw_end = _field(item, "endTime", "end_time", "end")
    if not (raw_subject and raw_day and raw_start and raw_end):
        logger.warning("Skipping incomplete timetable entry: %s", item)
        return None

    try:
        day = normalize_day(raw_day)
        start = normalize_time(raw_start.replace(".", ":"))
        end = normalize_time(raw_end.replace(".", ":"))
    except ValueError as exc:
        logger.warning("Skipping timetable entry %s: %s", item, exc)
        return None

    duration = _span_hours(start, end)
    if not MIN_DURATION_HOURS <= duration <= MAX_DURATION_HOURS:
        logger.warning("Skipping timetable entry with duration %.2fh: %s", duration, item)
        return None

    subject = _clean_subject_name(raw_subject)
    if len(subject) < SUBJECT_NAME_MIN:
        logger.warning("Skipping timetable entry with unusable name: %s", item)
        return None

    return ParsedClass(
        subject=subject,
        day=day,
        start_time=start,
        end_time=end,
        duration_hours=round(duration, 2),
    )


def extract_classes(raw_text: str) -> list[ParsedClass]:
    """Pull the JSON array out of a model response and validate its entries.

    Raises TimetableParseError if the response holds no JSON array at all.
    """
    match = _JSON_ARRAY_RE.search(raw_text)
    if match is None:
        raise TimetableParseError("No JSON array found in the model response")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse timetable response as JSON: %s — raw: '%s'", exc, raw_text)
        raise TimetableParseError("The model response was not valid JSON") from exc

    if not isinstance(data, list):
        raise TimetableParseError(f"Expected a JSON array, got {type(data).__name__}")

    results: list[ParsedClass] = []
    for item in data:
        parsed = _validate_entry(item)
        if parsed is not None:
            results.append(parsed)
    return results


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class LLMTimetableParser:
    """Vision-LLM implementation of TimetableParserPort."""

    def __init__(self, mime_type: str = "image/jpeg") -> None:
        self._mime_type = mime_type

    def is_available(self) -> bool:
        return llm.is_configured()

    async def parse(self, image: bytes) -> list[ParsedClass]:
        if not image:
            raise TimetableParseError("Empty image")

        try:
            raw_text = await llm.complete_with_image(
                system=_SYSTEM_PROMPT,
                prompt=_USER_PROMPT,
                image=image,
                mime_type=self._mime_type,
                max_tokens=2048,
            )
        except Exception as exc:
            logger.error("Timetable vision request failed: %s", exc)
            raise TimetableParseError(f"Vision request failed: {exc}") from exc

        logger.debug("Timetable raw response: %s", raw_text)
        classes = extract_classes(raw_text or "")
        logger.info("Timetable parsed: %d classes", len(classes))
        return classes
