"""Tests for attendance_bot.core.timetable_parser — vision response → schedule entries."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from attendance_bot.core.timetable_parser import LLMTimetableParser, extract_classes
from attendance_bot.ports.timetable_port import TimetableParseError


def _response(*entries: dict) -> str:
    return json.dumps(list(entries))


# ---------------------------------------------------------------------------
# extract_classes
# ---------------------------------------------------------------------------


class TestExtractClasses:
    def test_valid_entries(self):
        raw = _response(
            {"subject": "Mathematics", "day": "Monday", "startTime": "09:00", "endTime": "11:00"},
            {"subject": "Physics Lab", "day": "wed", "startTime": "2pm", "endTime": "4:30pm"},
        )
        classes = extract_classes(raw)
        assert len(classes) == 2
        assert classes[0].subject == "Mathematics"
        assert classes[0].duration_hours == 2.0
        assert classes[1].day == "Wednesday"
        assert (classes[1].start_time, classes[1].end_time) == ("14:00", "16:30")
        assert classes[1].duration_hours == 2.5

    def test_strips_surrounding_text_and_fences(self):
        raw = "Here you go:\n```json\n" + _response(
            {"subject": "Chemistry", "day": "Friday", "startTime": "10:00", "endTime": "11:00"},
        ) + "\n```"
        assert [c.subject for c in extract_classes(raw)] == ["Chemistry"]

    def test_accepts_snake_case_and_dotted_times(self):
        raw = _response(
            {"name": "Biology", "day": "Tuesday", "start_time": "9.30", "end_time": "10.30"},
        )
        [parsed] = extract_classes(raw)
        assert parsed.start_time == "09:30"
        assert parsed.duration_hours == 1.0

    def test_drops_untrustworthy_entries(self):
        raw = _response(
            {"subject": "Ok Class", "day": "Monday", "startTime": "09:00", "endTime": "10:00"},
            {"subject": "No Day", "startTime": "09:00", "endTime": "10:00"},
            {"subject": "Bad Day", "day": "Someday", "startTime": "09:00", "endTime": "10:00"},
            {"subject": "Too Short", "day": "Monday", "startTime": "09:00", "endTime": "09:15"},
            {"subject": "Too Long", "day": "Monday", "startTime": "08:00", "endTime": "18:00"},
            {"subject": "?", "day": "Monday", "startTime": "09:00", "endTime": "10:00"},
            "not a dict",
        )
        assert [c.subject for c in extract_classes(raw)] == ["Ok Class"]

    def test_wraps_past_midnight(self):
        raw = _response(
            {"subject": "Night Lab", "day": "Friday", "startTime": "23:00", "endTime": "01:00"},
        )
        assert extract_classes(raw)[0].duration_hours == 2.0

    def test_cleans_subject_names(self):
        raw = _response(
            {"subject": "  Maths*  (A) ", "day": "Monday", "startTime": "09:00", "endTime": "10:00"},
        )
        assert extract_classes(raw)[0].subject == "Maths A"

    def test_empty_array(self):
        assert extract_classes("[]") == []

    def test_no_array_raises(self):
        with pytest.raises(TimetableParseError):
            extract_classes("I cannot see a timetable here.")

    def test_invalid_json_raises(self):
        with pytest.raises(TimetableParseError):
            extract_classes("[{'subject': 'Maths',}]")


# ---------------------------------------------------------------------------
# LLMTimetableParser
# ---------------------------------------------------------------------------


class TestLLMTimetableParser:
    @pytest.mark.asyncio
    async def test_parse_calls_vision_model(self):
        raw = _response(
            {"subject": "Mathematics", "day": "Monday", "startTime": "09:00", "endTime": "11:00"},
        )
        with patch(
            "attendance_bot.core.llm.complete_with_image", new=AsyncMock(return_value=raw),
        ) as mock_llm:
            classes = await LLMTimetableParser(mime_type="image/png").parse(b"\x89PNG")

        assert [c.subject for c in classes] == ["Mathematics"]
        kwargs = mock_llm.call_args.kwargs
        assert kwargs["image"] == b"\x89PNG"
        assert kwargs["mime_type"] == "image/png"

    @pytest.mark.asyncio
    async def test_request_failure_becomes_parse_error(self):
        with patch(
            "attendance_bot.core.llm.complete_with_image",
            new=AsyncMock(side_effect=RuntimeError("quota exceeded")),
        ):
            with pytest.raises(TimetableParseError, match="quota exceeded"):
                await LLMTimetableParser().parse(b"img")

    @pytest.mark.asyncio
    async def test_empty_image(self):
        with pytest.raises(TimetableParseError):
            await LLMTimetableParser().parse(b"")

    def test_is_available_follows_api_key(self):
        with patch("attendance_bot.core.llm.is_configured", return_value=False):
            assert LLMTimetableParser().is_available() is False
