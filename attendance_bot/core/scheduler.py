"""
Attendance Bot — Periodic passes.

Class Reminder: every minute, a heads-up shortly before each class starts.

Attendance Confirmation: every minute, a "did you attend?" prompt once a
class has ended plus the confirmation delay.

Overdue Sweep: every 30 minutes, pending records nobody answered are
auto-marked absent.

Low Attendance Alert: once a day, one consolidated message per user listing
subjects below the threshold.

Session Sweep: every 5 minutes, expired conversation sessions are dropped.

Each pass is a full scan: one failing user or subject is logged and skipped,
and a pass that is still running when its next tick fires is skipped rather
than run twice. This module is transport-agnostic: it depends on the
NotificationPort protocol, not on Telegram.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

from attendance_bot.core.attendance import classes_needed
from attendance_bot.core.schedule_resolver import (
    most_recent_occurrence,
    next_occurrence,
    within_window,
)
from attendance_bot.data.models import AttendanceStatus

if TYPE_CHECKING:
    from attendance_bot.core.attendance import AttendanceStateMachine
    from attendance_bot.core.sessions import SessionStore
    from attendance_bot.data.db import SubjectDB, UserDB
    from attendance_bot.data.models import AttendanceRecord, Subject, User
    from attendance_bot.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Message formatting
# ---------------------------------------------------------------------------


def _clock(moment: datetime) -> str:
    """'9:05 AM' style, in the moment's own timezone."""
    return moment.strftime("%I:%M %p").lstrip("0")


def _format_reminder(subject: Subject, occurrence: datetime, lead: timedelta) -> str:
    minutes = int(lead.total_seconds() // 60)
    return (
        "🔔 Class Reminder\n\n"
        f"📚 Subject: {subject.name}\n"
        f"⏰ Time: {_clock(occurrence)}\n"
        f"⌛ Duration: {subject.duration_hours:g} hour(s)\n\n"
        f"Your class starts in {minutes} minutes! 🎓"
    )


def _format_confirmation(subject: Subject, occurrence: datetime, reply_window: timedelta) -> str:
    hours = reply_window.total_seconds() / 3600
    return (
        "✅ Attendance Confirmation\n\n"
        f"📚 Subject: {subject.name}\n"
        f"📅 Date: {occurrence.strftime('%A, %d %b')}\n"
        f"⏰ Time: {_clock(occurrence)}\n\n"
        "Did you attend this class?\n\n"
        "Reply with:\n"
        "• Yes - if you attended\n"
        "• No - if you missed it\n"
        "• Mass bunk - if the whole class skipped\n"
        "• Holiday - if the class didn't happen\n\n"
        f"⏳ You have {hours:g} hours to respond, or you'll be marked absent."
    )


def _format_auto_absent(record: AttendanceRecord, subject: Subject, reply_window: timedelta) -> str:
    class_day = date.fromisoformat(record.class_date).strftime("%A, %d %b")
    hours = reply_window.total_seconds() / 3600
    return (
        "⏰ Attendance Auto-Marked\n\n"
        "❌ You've been marked absent for:\n"
        f"📚 {subject.name}\n"
        f"📅 {class_day}\n\n"
        f"Reason: no response within {hours:g} hours\n\n"
        f"Current attendance: {subject.attendance_percentage}%"
    )


def format_low_attendance_alert(user: User, subjects: list[Subject], threshold: int) -> str:
    lines = [
        "⚠️ Low Attendance Alert\n",
        f"Hi {user.display_name}, your attendance is below {threshold}% for:\n",
    ]
    for subject in subjects:
        needed = classes_needed(subject.attended_classes, subject.total_classes, threshold)
        needed_without_bunks = classes_needed(
            subject.attended_classes,
            subject.total_classes - subject.mass_skipped_classes,
            threshold,
        )
        lines.append(
            f"📚 {subject.name}\n"
            f"   Current: {subject.attendance_percentage}% "
            f"({subject.attended_classes}/{subject.total_classes})\n"
            f"   (Excluding mass bunks: {subject.percentage_excluding_mass_skips}%)\n"
            f"   Need {needed} more classes for {threshold}%\n"
            f"   (or {needed_without_bunks} if not counting mass bunks)\n"
        )
    lines.append("💡 Tip: attend your upcoming classes to improve your attendance!")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class AttendanceScheduler:
    """Runs the periodic attendance passes against injected stores and ports."""

    def __init__(
        self,
        notifier: NotificationPort,
        users: UserDB,
        subjects: SubjectDB,
        state_machine: AttendanceStateMachine,
        sessions: SessionStore,
        reminder_lead: timedelta = timedelta(minutes=10),
        low_attendance_threshold: int = 75,
        window: timedelta = timedelta(minutes=1),
    ) -> None:
        self._notifier = notifier
        self._users = users
        self._subjects = subjects
        self._machine = state_machine
        self._sessions = sessions
        self.reminder_lead = reminder_lead
        self.low_attendance_threshold = low_attendance_threshold
        self.window = window
        self._running: set[str] = set()

    async def _run_guarded(
        self,
        name: str,
        pass_fn: Callable[[datetime], Awaitable[int]],
        now: datetime | None,
    ) -> int:
        """Run one pass unless the previous run of the same pass is still going."""
        if name in self._running:
            logger.warning("%s pass still running; skipping this tick", name)
            return 0

        self._running.add(name)
        try:
            return await pass_fn(now or datetime.now(timezone.utc))
        except Exception as exc:
            logger.error("%s pass failed: %s", name, exc)
            return 0
        finally:
            self._running.discard(name)

    # -- public passes ------------------------------------------------------

    async def run_reminder_pass(self, now: datetime | None = None) -> int:
        """Returns the number of reminders delivered."""
        return await self._run_guarded("reminder", self._reminder_pass, now)

    async def run_confirmation_pass(self, now: datetime | None = None) -> int:
        """Returns the number of confirmation prompts delivered."""
        return await self._run_guarded("confirmation", self._confirmation_pass, now)

    async def run_overdue_pass(self, now: datetime | None = None) -> int:
        """Returns the number of records auto-marked absent."""
        return await self._run_guarded("overdue", self._overdue_pass, now)

    async def run_low_attendance_pass(self, now: datetime | None = None) -> int:
        """Returns the number of alerts delivered."""
        return await self._run_guarded("low_attendance", self._low_attendance_pass, now)

    async def run_session_sweep(self, now: datetime | None = None) -> int:
        """Returns the number of sessions dropped."""
        return await self._run_guarded("session_sweep", self._session_sweep, now)

    # -- pass bodies --------------------------------------------------------

    def _subjects_by_owner(self, preference: str | None = None) -> list[tuple[User, Subject]]:
        owners = {
            user.user_id: user
            for user in self._users.list_registered_users(preference=preference)
        }
        return [
            (owners[subject.user_id], subject)
            for subject in self._subjects.list_active()
            if subject.user_id in owners
        ]

    async def _reminder_pass(self, now: datetime) -> int:
        sent = 0
        for user, subject in self._subjects_by_owner("reminders_enabled"):
            try:
                if await self._remind(user, subject, now):
                    sent += 1
            except Exception as exc:
                logger.error(
                    "Reminder for subject #%d (user %d) failed: %s",
                    subject.id, user.user_id, exc,
                )
        return sent

    async def _remind(self, user: User, subject: Subject, now: datetime) -> bool:
        occurrence = next_occurrence(subject.day, subject.time, user.timezone, now)
        remind_at = occurrence.astimezone(timezone.utc) - self.reminder_lead
        if not within_window(now, remind_at, self.window):
            return False

        record = self._machine.ensure_record(subject, occurrence)
        if record.reminder_sent or record.status is not AttendanceStatus.PENDING:
            return False

        message = _format_reminder(subject, occurrence, self.reminder_lead)
        if not await self._notifier.send_message(user.user_id, message):
            logger.warning("Reminder for record #%d not delivered; will retry", record.id)
            return False

        self._machine.mark_reminder_sent(record)
        logger.info("Reminder sent: user %d, %s", user.user_id, subject.name)
        return True

    async def _confirmation_pass(self, now: datetime) -> int:
        sent = 0
        for user, subject in self._subjects_by_owner():
            try:
                if await self._confirm(user, subject, now):
                    sent += 1
            except Exception as exc:
                logger.error(
                    "Confirmation for subject #%d (user %d) failed: %s",
                    subject.id, user.user_id, exc,
                )
        return sent

    async def _confirm(self, user: User, subject: Subject, now: datetime) -> bool:
        occurrence = most_recent_occurrence(subject.day, subject.time, user.timezone, now)
        due = self._machine.confirmation_due(subject, occurrence)
        if not within_window(now, due, self.window):
            return False

        record = self._machine.ensure_record(subject, occurrence)
        if record.confirmation_sent or record.status is not AttendanceStatus.PENDING:
            return False

        message = _format_confirmation(subject, occurrence, self._machine.auto_absent_after)
        if not await self._notifier.send_message(user.user_id, message):
            logger.warning("Confirmation for record #%d not delivered; will retry", record.id)
            return False

        self._machine.mark_confirmation_sent(record)
        logger.info("Confirmation sent: user %d, %s", user.user_id, subject.name)
        return True

    async def _overdue_pass(self, now: datetime) -> int:
        resolved = 0
        for record in self._machine.find_overdue(now):
            try:
                if not self._machine.auto_resolve_overdue(record, now):
                    continue
                resolved += 1
                subject = self._subjects.get_subject(record.subject_id)
                if subject is None:
                    continue
                message = _format_auto_absent(record, subject, self._machine.auto_absent_after)
                if not await self._notifier.send_message(record.user_id, message):
                    logger.warning("Auto-absent notice for record #%d not delivered", record.id)
            except Exception as exc:
                logger.error("Overdue handling for record #%d failed: %s", record.id, exc)
        if resolved:
            logger.info("Auto-marked %d overdue records absent", resolved)
        return resolved

    async def _low_attendance_pass(self, now: datetime) -> int:
        sent = 0
        threshold = self.low_attendance_threshold
        for user in self._users.list_registered_users(preference="low_attendance_alerts"):
            try:
                low = [
                    subject for subject in self._subjects.list_active(user_id=user.user_id)
                    if subject.total_classes > 0 and subject.attendance_percentage < threshold
                ]
                if not low:
                    continue
                message = format_low_attendance_alert(user, low, threshold)
                if await self._notifier.send_message(user.user_id, message):
                    sent += 1
                    logger.info("Low attendance alert sent: user %d (%d subjects)", user.user_id, len(low))
                else:
                    logger.warning("Low attendance alert for user %d not delivered", user.user_id)
            except Exception as exc:
                logger.error("Low attendance check for user %d failed: %s", user.user_id, exc)
        return sent

    async def _session_sweep(self, now: datetime) -> int:
        return self._sessions.sweep(now)
