"""
Attendance Bot — Data Models.

Users, their weekly class schedule entries ("subjects") and one attendance
record per class occurrence. Percentages are derived from the counters and
never stored.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum


class RegistrationStep(str, Enum):
    NAME = "name"
    TIMEZONE = "timezone"
    COMPLETED = "completed"


class AttendanceStatus(str, Enum):
    """Lifecycle of one class occurrence. Everything but PENDING is terminal."""

    PENDING = "pending"
    PRESENT = "present"
    ABSENT = "absent"
    MASS_SKIPPED = "mass_skipped"
    HOLIDAY = "holiday"

    @property
    def is_terminal(self) -> bool:
        return self is not AttendanceStatus.PENDING


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def attendance_percentage(attended: int, total: int) -> int:
    """Attended share of all counted classes. No classes yet means no penalty."""
    if total <= 0:
        return 100
    return round_half_up(attended / total * 100)


def percentage_excluding_mass_skips(attended: int, total: int, mass_skipped: int) -> int:
    """Like attendance_percentage, but mass-skipped classes are not counted at all."""
    effective_total = total - mass_skipped
    if effective_total <= 0:
        return 100
    return round_half_up(attended / effective_total * 100)


@dataclass
class User:
    """A bot user, keyed by their Telegram id."""

    user_id: int
    display_name: str | None = None
    timezone: str = "Asia/Kolkata"
    registration_step: RegistrationStep = RegistrationStep.NAME
    reminders_enabled: bool = True
    low_attendance_alerts: bool = True
    created_at: str = ""

    @property
    def is_registered(self) -> bool:
        return self.registration_step is RegistrationStep.COMPLETED and bool(self.display_name)


@dataclass
class Subject:
    """A weekly recurring class owned by one user.

    Soft-deleted entries (active=False) keep their counters and history but
    are never scheduled again.
    """

    id: int
    user_id: int
    name: str
    day: str                          # "Monday" .. "Sunday"
    time: str                         # local HH:MM
    duration_hours: float             # 0.5 - 8
    total_classes: int = 0
    attended_classes: int = 0
    mass_skipped_classes: int = 0
    holiday_classes: int = 0
    active: bool = field(default=True)

    @property
    def attendance_percentage(self) -> int:
        return attendance_percentage(self.attended_classes, self.total_classes)

    @property
    def percentage_excluding_mass_skips(self) -> int:
        return percentage_excluding_mass_skips(
            self.attended_classes, self.total_classes, self.mass_skipped_classes,
        )


@dataclass
class AttendanceRecord:
    """One occurrence of a subject on a local calendar date."""

    id: int
    user_id: int
    subject_id: int
    class_date: str                   # ISO date YYYY-MM-DD in the owner's timezone
    scheduled_time: str               # ISO datetime, UTC
    confirmation_due: str             # ISO datetime, UTC: class end + confirmation delay
    status: AttendanceStatus = AttendanceStatus.PENDING
    reminder_sent: bool = False
    confirmation_sent: bool = False
    response_time: str | None = None
    auto_resolved: bool = False
