"""Tests for attendance_bot.data.models — derived percentages and enums."""

from attendance_bot.data.models import (
    AttendanceStatus,
    RegistrationStep,
    Subject,
    User,
    attendance_percentage,
    percentage_excluding_mass_skips,
    round_half_up,
)


class TestPercentages:
    def test_no_classes_is_full_attendance(self):
        assert attendance_percentage(0, 0) == 100

    def test_simple_ratio(self):
        assert attendance_percentage(7, 10) == 70

    def test_rounds_half_up(self):
        assert attendance_percentage(1, 8) == 13      # 12.5
        assert attendance_percentage(5, 8) == 63      # 62.5
        assert round_half_up(2.5) == 3

    def test_excluding_mass_skips(self):
        assert percentage_excluding_mass_skips(6, 10, 2) == 75

    def test_all_mass_skipped_is_full_attendance(self):
        assert percentage_excluding_mass_skips(5, 10, 10) == 100


class TestSubject:
    def test_percentage_properties(self):
        subject = Subject(
            id=1, user_id=1, name="Physics", day="Monday", time="10:00",
            duration_hours=1.0, total_classes=10, attended_classes=6,
            mass_skipped_classes=2,
        )
        assert subject.attendance_percentage == 60
        assert subject.percentage_excluding_mass_skips == 75

    def test_defaults(self):
        subject = Subject(id=1, user_id=1, name="Physics", day="Monday", time="10:00", duration_hours=1.0)
        assert subject.active is True
        assert subject.total_classes == 0
        assert subject.attendance_percentage == 100


class TestUser:
    def test_registered_needs_completed_step_and_name(self):
        assert User(user_id=1, display_name="Asha", registration_step=RegistrationStep.COMPLETED).is_registered
        assert not User(user_id=1, display_name=None, registration_step=RegistrationStep.COMPLETED).is_registered
        assert not User(user_id=1, display_name="Asha", registration_step=RegistrationStep.TIMEZONE).is_registered


class TestAttendanceStatus:
    def test_only_pending_is_not_terminal(self):
        assert not AttendanceStatus.PENDING.is_terminal
        for status in (
            AttendanceStatus.PRESENT,
            AttendanceStatus.ABSENT,
            AttendanceStatus.MASS_SKIPPED,
            AttendanceStatus.HOLIDAY,
        ):
            assert status.is_terminal
