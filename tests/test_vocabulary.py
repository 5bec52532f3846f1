"""Tests for attendance_bot.core.vocabulary — reply classification."""

import pytest

from attendance_bot.core.vocabulary import (
    is_attendance_response,
    normalize,
    parse_attendance_response,
    parse_yes_no,
)
from attendance_bot.data.models import AttendanceStatus


class TestNormalize:
    def test_lowercases_and_strips_edge_punctuation(self):
        assert normalize("  Yes!!  I WAS there. ") == "yes i was there"

    def test_keeps_apostrophes(self):
        assert normalize("Didn't go") == "didn't go"


class TestParseAttendanceResponse:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("yes", AttendanceStatus.PRESENT),
            ("Yep, attended", AttendanceStatus.PRESENT),
            ("हां", AttendanceStatus.PRESENT),
            ("no", AttendanceStatus.ABSENT),
            ("I missed it", AttendanceStatus.ABSENT),
            ("I was not there", AttendanceStatus.ABSENT),
            ("नहीं आया", AttendanceStatus.ABSENT),
            ("mass bunk", AttendanceStatus.MASS_SKIPPED),
            ("we all bunked", AttendanceStatus.MASS_SKIPPED),
            ("Holiday!", AttendanceStatus.HOLIDAY),
            ("no, it was a holiday", AttendanceStatus.HOLIDAY),
        ],
    )
    def test_outcomes(self, text, expected):
        assert parse_attendance_response(text) is expected

    @pytest.mark.parametrize("text", ["yesterday", "nothing much", "notes please", "", "what time?"])
    def test_whole_words_only(self, text):
        assert parse_attendance_response(text) is None
        assert not is_attendance_response(text)


class TestParseYesNo:
    def test_yes(self):
        assert parse_yes_no("Yes!") is True
        assert parse_yes_no("confirm") is True

    def test_no(self):
        assert parse_yes_no("nope") is False
        assert parse_yes_no("cancel") is False

    def test_whole_message_must_match(self):
        assert parse_yes_no("yes please") is None
        assert parse_yes_no("no, not yet") is None

    @pytest.mark.parametrize("text", ["maybe later", "is there an undo?", "I went", "y not"])
    def test_neither(self, text):
        assert parse_yes_no(text) is None
