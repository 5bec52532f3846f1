"""
Attendance Bot — Attendance record state machine.

One record per class occurrence:

    pending ──► present | absent | mass_skipped | holiday   (terminal)

plus two one-way flags, reminder_sent and confirmation_sent, that stop
overlapping scheduler passes from notifying twice. Counter updates on the
owning subject happen in the same write as the status change, so a record is
never counted twice or left uncounted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from attendance_bot.core.schedule_resolver import occurrence_end
from attendance_bot.data.db import from_utc_iso, to_utc_iso
from attendance_bot.data.models import AttendanceRecord, AttendanceStatus, Subject

if TYPE_CHECKING:
    from attendance_bot.data.db import AttendanceDB

logger = logging.getLogger(__name__)

# Holiday is tracked separately and never enters total, so it cannot move
# either percentage.
_COUNTER_EFFECTS: dict[AttendanceStatus, dict[str, int]] = {
    AttendanceStatus.PRESENT: {"total_classes": 1, "attended_classes": 1},
    AttendanceStatus.ABSENT: {"total_classes": 1},
    AttendanceStatus.MASS_SKIPPED: {"total_classes": 1, "mass_skipped_classes": 1},
    AttendanceStatus.HOLIDAY: {"holiday_classes": 1},
}


# ---------------------------------------------------------------------------
# Breakeven math
# ---------------------------------------------------------------------------


@dataclass
class Breakeven:
    """How far a subject is from a target percentage."""

    kind: str       # "deficit" | "surplus" | "even"
    classes: int    # classes to attend (deficit) or that can be missed (surplus)


def classes_needed(attended: int, total: int, target: int) -> int:
    """Consecutive attended classes needed to reach ``target`` percent."""
    if total <= 0:
        return 0
    return max(0, math.ceil((target * total - 100 * attended) / (100 - target)))


def breakeven(attended: int, total: int, target: int) -> Breakeven:
    current = attended / total * 100 if total > 0 else 100
    if current > target:
        return Breakeven("surplus", math.floor((100 * attended - target * total) / target))
    if current < target:
        return Breakeven("deficit", classes_needed(attended, total, target))
    return Breakeven("even", 0)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class AttendanceStateMachine:
    """Drives attendance records through their lifecycle."""

    def __init__(
        self,
        records: AttendanceDB,
        confirmation_delay: timedelta = timedelta(minutes=10),
        auto_absent_after: timedelta = timedelta(hours=2),
    ) -> None:
        self._records = records
        self.confirmation_delay = confirmation_delay
        self.auto_absent_after = auto_absent_after

    def confirmation_due(self, subject: Subject, occurrence: datetime) -> datetime:
        """Earliest moment the "did you attend?" prompt may go out."""
        return occurrence_end(occurrence, subject.duration_hours) + self.confirmation_delay

    def ensure_record(self, subject: Subject, occurrence: datetime) -> AttendanceRecord:
        """Get or create the record for this occurrence.

        ``occurrence`` must be expressed in the owner's timezone: its
        calendar date is the record's key together with the subject.
        """
        record, _ = self._records.get_or_create(
            user_id=subject.user_id,
            subject_id=subject.id,
            class_date=occurrence.date().isoformat(),
            scheduled_time=to_utc_iso(occurrence),
            confirmation_due=to_utc_iso(self.confirmation_due(subject, occurrence)),
        )
        return record

    def mark_reminder_sent(self, record: AttendanceRecord) -> bool:
        flipped = self._records.set_flag(record.id, "reminder_sent")
        if not flipped:
            logger.debug("Record #%d reminder flag already set", record.id)
        record.reminder_sent = True
        return flipped

    def mark_confirmation_sent(self, record: AttendanceRecord) -> bool:
        flipped = self._records.set_flag(record.id, "confirmation_sent")
        if not flipped:
            logger.debug("Record #%d confirmation flag already set", record.id)
        record.confirmation_sent = True
        return flipped

    def resolve(
        self,
        record: AttendanceRecord,
        outcome: AttendanceStatus,
        now: datetime | None = None,
        auto_resolved: bool = False,
    ) -> bool:
        """Move a pending record to a terminal outcome.

        Returns True if this call performed the transition. A record that is
        already terminal is left untouched (logged, not an error).
        """
        if not outcome.is_terminal:
            raise ValueError("A record can only be resolved to a terminal outcome")
        if now is None:
            now = datetime.now(timezone.utc)

        applied = self._records.resolve(
            record.id,
            outcome,
            response_time=to_utc_iso(now),
            auto_resolved=auto_resolved,
            counter_increments=_COUNTER_EFFECTS[outcome],
        )
        if not applied:
            logger.info(
                "Record #%d already resolved; ignoring %s", record.id, outcome.value,
            )
            return False

        record.status = outcome
        record.response_time = to_utc_iso(now)
        record.auto_resolved = auto_resolved
        logger.info(
            "Record #%d resolved: %s%s",
            record.id, outcome.value, " (auto)" if auto_resolved else "",
        )
        return True

    def is_overdue(self, record: AttendanceRecord, now: datetime) -> bool:
        if record.status is not AttendanceStatus.PENDING:
            return False
        due = from_utc_iso(record.confirmation_due)
        return now - due > self.auto_absent_after

    def auto_resolve_overdue(self, record: AttendanceRecord, now: datetime) -> bool:
        """Mark a record absent if nobody answered in time after the prompt became due."""
        if not self.is_overdue(record, now):
            return False
        return self.resolve(record, AttendanceStatus.ABSENT, now=now, auto_resolved=True)

    def find_overdue(self, now: datetime) -> list[AttendanceRecord]:
        return self._records.find_overdue(now - self.auto_absent_after)

    def latest_pending(self, user_id: int, now: datetime) -> AttendanceRecord | None:
        """The record a bare "yes"/"no" reply refers to: newest pending class that has started."""
        return self._records.latest_pending_for_user(user_id, started_before=now)

    def reschedule(self, subject: Subject, now: datetime) -> int:
        """Bring a subject's pending records in line with its edited schedule.

        Records of classes that haven't started yet are dropped; the next
        reminder or confirmation pass recreates them from the new day and
        time. A class already under way keeps its record, and its
        confirmation time follows the new duration unless the prompt has
        already been sent. Returns the number of records dropped.
        """
        dropped = 0
        for record in self._records.list_pending_for_subject(subject.id):
            start = from_utc_iso(record.scheduled_time)
            if start > now:
                if self._records.delete_pending(record.id):
                    dropped += 1
            elif not record.confirmation_sent:
                due = to_utc_iso(self.confirmation_due(subject, start))
                if due != record.confirmation_due:
                    self._records.set_confirmation_due(record.id, due)
                    record.confirmation_due = due
        if dropped:
            logger.info("Subject #%d rescheduled: %d upcoming records dropped", subject.id, dropped)
        return dropped
