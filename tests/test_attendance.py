"""Tests for attendance_bot.core.attendance — record lifecycle and breakeven math."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from attendance_bot.core.attendance import breakeven, classes_needed
from attendance_bot.data.models import AttendanceStatus

KOLKATA = ZoneInfo("Asia/Kolkata")
CLASS_START = datetime(2025, 1, 6, 10, 0, tzinfo=KOLKATA)  # Monday


# ---------------------------------------------------------------------------
# Breakeven math
# ---------------------------------------------------------------------------


class TestClassesNeeded:
    def test_deficit(self):
        # 5/10 → (75*10 - 500) / 25 = 10 consecutive classes
        assert classes_needed(5, 10, 75) == 10

    def test_already_above_target(self):
        assert classes_needed(9, 10, 75) == 0

    def test_no_classes(self):
        assert classes_needed(0, 0, 75) == 0

    def test_rounds_up(self):
        # (75*4 - 100*2) / 25 = 4; (75*3 - 100*2) / 25 = 1
        assert classes_needed(2, 4, 75) == 4
        assert classes_needed(2, 3, 75) == 1


class TestBreakeven:
    def test_deficit(self):
        result = breakeven(5, 10, 75)
        assert result.kind == "deficit"
        assert result.classes == 10

    def test_surplus(self):
        result = breakeven(9, 10, 75)
        assert result.kind == "surplus"
        assert result.classes >= 1

    def test_even(self):
        result = breakeven(3, 4, 75)
        assert result.kind == "even"
        assert result.classes == 0

    def test_no_classes_counts_as_surplus(self):
        assert breakeven(0, 0, 75).kind == "surplus"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestEnsureRecord:
    def test_creates_pending_record_keyed_by_local_date(self, state_machine, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        assert record.status is AttendanceStatus.PENDING
        assert record.class_date == "2025-01-06"
        assert record.scheduled_time == "2025-01-06T04:30:00+00:00"
        # end 12:00 IST = 06:30 UTC, plus the 10 minute delay
        assert record.confirmation_due == "2025-01-06T06:40:00+00:00"

    def test_idempotent(self, state_machine, maths):
        first = state_machine.ensure_record(maths, CLASS_START)
        second = state_machine.ensure_record(maths, CLASS_START)
        assert first.id == second.id


class TestFlags:
    def test_reminder_flag_flips_once(self, state_machine, attendance_db, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        assert state_machine.mark_reminder_sent(record) is True
        assert state_machine.mark_reminder_sent(record) is False
        assert attendance_db.find_record(record.subject_id, record.class_date).reminder_sent is True

    def test_confirmation_flag_flips_once(self, state_machine, attendance_db, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        assert state_machine.mark_confirmation_sent(record) is True
        stale_copy = attendance_db.find_record(record.subject_id, record.class_date)
        stale_copy.confirmation_sent = False
        assert state_machine.mark_confirmation_sent(stale_copy) is False


class TestResolve:
    @pytest.mark.parametrize(
        ("outcome", "total", "attended", "mass_skipped", "holiday"),
        [
            (AttendanceStatus.PRESENT, 1, 1, 0, 0),
            (AttendanceStatus.ABSENT, 1, 0, 0, 0),
            (AttendanceStatus.MASS_SKIPPED, 1, 0, 1, 0),
            (AttendanceStatus.HOLIDAY, 0, 0, 0, 1),
        ],
    )
    def test_counter_effects(
        self, state_machine, subject_db, maths, outcome, total, attended, mass_skipped, holiday,
    ):
        record = state_machine.ensure_record(maths, CLASS_START)
        assert state_machine.resolve(record, outcome) is True

        subject = subject_db.get_subject(maths.id)
        assert subject.total_classes == total
        assert subject.attended_classes == attended
        assert subject.mass_skipped_classes == mass_skipped
        assert subject.holiday_classes == holiday
        assert record.status is outcome
        assert record.response_time is not None

    def test_holiday_leaves_percentages_unchanged(self, state_machine, subject_db, maths):
        subject_db.set_counter(maths.id, "total_classes", 10)
        subject_db.set_counter(maths.id, "attended_classes", 7)
        before = subject_db.get_subject(maths.id)

        record = state_machine.ensure_record(maths, CLASS_START)
        state_machine.resolve(record, AttendanceStatus.HOLIDAY)

        after = subject_db.get_subject(maths.id)
        assert after.attendance_percentage == before.attendance_percentage == 70
        assert after.percentage_excluding_mass_skips == before.percentage_excluding_mass_skips

    def test_terminal_record_never_changes(self, state_machine, attendance_db, subject_db, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        state_machine.resolve(record, AttendanceStatus.PRESENT)

        stale = attendance_db.find_record(record.subject_id, record.class_date)
        stale.status = AttendanceStatus.PENDING
        assert state_machine.resolve(stale, AttendanceStatus.ABSENT) is False

        assert attendance_db.find_record(record.subject_id, record.class_date).status is AttendanceStatus.PRESENT
        subject = subject_db.get_subject(maths.id)
        assert (subject.total_classes, subject.attended_classes) == (1, 1)

    def test_pending_is_not_an_outcome(self, state_machine, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        with pytest.raises(ValueError):
            state_machine.resolve(record, AttendanceStatus.PENDING)


class TestOverdue:
    def test_three_hours_after_due_is_auto_absent(self, state_machine, attendance_db, subject_db, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        due = datetime.fromisoformat(record.confirmation_due)
        now = due + timedelta(hours=3)

        overdue = state_machine.find_overdue(now)
        assert [r.id for r in overdue] == [record.id]
        assert state_machine.auto_resolve_overdue(overdue[0], now) is True

        stored = attendance_db.find_record(record.subject_id, record.class_date)
        assert stored.status is AttendanceStatus.ABSENT
        assert stored.auto_resolved is True
        assert subject_db.get_subject(maths.id).total_classes == 1

    def test_within_reply_window_is_left_alone(self, state_machine, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        now = datetime.fromisoformat(record.confirmation_due) + timedelta(hours=1)
        assert state_machine.find_overdue(now) == []
        assert state_machine.auto_resolve_overdue(record, now) is False

    def test_resolved_record_is_not_overdue(self, state_machine, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        state_machine.resolve(record, AttendanceStatus.PRESENT)
        now = datetime.fromisoformat(record.confirmation_due) + timedelta(hours=5)
        assert state_machine.find_overdue(now) == []
        assert state_machine.is_overdue(record, now) is False


class TestLatestPending:
    def test_only_started_classes(self, state_machine, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        before_start = CLASS_START - timedelta(minutes=5)
        assert state_machine.latest_pending(maths.user_id, before_start) is None
        found = state_machine.latest_pending(maths.user_id, CLASS_START + timedelta(hours=3))
        assert found.id == record.id

    def test_newest_first(self, state_machine, maths):
        state_machine.ensure_record(maths, CLASS_START - timedelta(weeks=1))
        latest = state_machine.ensure_record(maths, CLASS_START)
        now = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)
        assert state_machine.latest_pending(maths.user_id, now).id == latest.id


class TestReschedule:
    def test_upcoming_pending_record_is_dropped(self, state_machine, attendance_db, maths):
        state_machine.ensure_record(maths, CLASS_START)
        assert state_machine.reschedule(maths, CLASS_START - timedelta(minutes=10)) == 1
        assert attendance_db.find_record(maths.id, "2025-01-06") is None

    def test_history_is_kept(self, state_machine, attendance_db, maths):
        past = state_machine.ensure_record(maths, CLASS_START - timedelta(weeks=1))
        state_machine.resolve(past, AttendanceStatus.PRESENT)

        assert state_machine.reschedule(maths, CLASS_START - timedelta(minutes=10)) == 0
        assert attendance_db.find_record(maths.id, "2024-12-30").status is AttendanceStatus.PRESENT

    def test_started_class_follows_new_duration(self, state_machine, attendance_db, subject_db, maths):
        state_machine.ensure_record(maths, CLASS_START)
        subject_db.update_subject(maths.id, duration_hours=3.0)
        longer = subject_db.get_subject(maths.id)

        assert state_machine.reschedule(longer, CLASS_START + timedelta(minutes=10)) == 0
        record = attendance_db.find_record(maths.id, "2025-01-06")
        assert record.confirmation_due == "2025-01-06T07:40:00+00:00"  # 13:10 IST

    def test_prompt_already_sent_keeps_its_due_time(self, state_machine, attendance_db, subject_db, maths):
        record = state_machine.ensure_record(maths, CLASS_START)
        state_machine.mark_confirmation_sent(record)
        subject_db.update_subject(maths.id, duration_hours=3.0)

        state_machine.reschedule(subject_db.get_subject(maths.id), CLASS_START + timedelta(hours=3))
        stored = attendance_db.find_record(maths.id, "2025-01-06")
        assert stored.confirmation_due == record.confirmation_due
