"""
Attendance Bot — /edit wizard.

A small state machine over one subject:

    menu ──(1-6)──► editing a field ──(valid value, saved)──► menu
      └──(done)──► finished            any state ──(cancel)──► finished

Values are validated before anything is written. Counter edits go through
guarded updates, so a class resolved by the scheduler while the user is
typing can't push attended above total. Day and time edits reschedule the
subject's pending records so the old slot can't mark the class absent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from attendance_bot.core.commands import validate_subject_name
from attendance_bot.core.sessions import EditSession, WizardStage
from attendance_bot.core.validators import normalize_day, parse_time_range

if TYPE_CHECKING:
    from attendance_bot.core.attendance import AttendanceStateMachine
    from attendance_bot.data.db import SubjectDB
    from attendance_bot.data.models import Subject

logger = logging.getLogger(__name__)

_MENU_OPTIONS: dict[str, WizardStage] = {
    "1": WizardStage.NAME,
    "2": WizardStage.DAY,
    "3": WizardStage.TIME,
    "4": WizardStage.ATTENDED,
    "5": WizardStage.TOTAL,
    "6": WizardStage.MASS_SKIPPED,
}
_DONE_WORDS = {"7", "done", "finish", "save"}

_FIELD_PROMPTS: dict[WizardStage, str] = {
    WizardStage.NAME: "Send the new subject name.",
    WizardStage.DAY: "Send the new day (e.g. Monday or wed).",
    WizardStage.TIME: "Send the new time range (e.g. 10:00-11:30 or 2pm-4pm).",
    WizardStage.ATTENDED: "Send the number of classes attended.",
    WizardStage.TOTAL: "Send the total number of classes held.",
    WizardStage.MASS_SKIPPED: "Send the number of mass-skipped classes.",
}

_COUNTER_COLUMNS: dict[WizardStage, str] = {
    WizardStage.ATTENDED: "attended_classes",
    WizardStage.TOTAL: "total_classes",
    WizardStage.MASS_SKIPPED: "mass_skipped_classes",
}


@dataclass
class WizardReply:
    text: str
    finished: bool = False


def _end_time(subject: Subject) -> str:
    hour, minute = map(int, subject.time.split(":"))
    end_minutes = hour * 60 + minute + round(subject.duration_hours * 60)
    return f"{end_minutes // 60 % 24:02d}:{end_minutes % 60:02d}"


def render_menu(subject: Subject) -> str:
    return (
        f"✏️ Editing {subject.name}\n\n"
        f"1. Name: {subject.name}\n"
        f"2. Day: {subject.day}\n"
        f"3. Time: {subject.time}-{_end_time(subject)}\n"
        f"4. Attended: {subject.attended_classes}\n"
        f"5. Total: {subject.total_classes}\n"
        f"6. Mass-skipped: {subject.mass_skipped_classes}\n"
        f"7. Done\n\n"
        "Reply with a number, or 'cancel' to stop."
    )


def _parse_count(text: str) -> int:
    value = text.strip()
    if not value.isdigit():
        raise ValueError("Please send a whole number (0 or more).")
    return int(value)


class EditWizard:
    """Applies one user message to an open EditSession."""

    def __init__(self, subjects: SubjectDB, state_machine: AttendanceStateMachine) -> None:
        self._subjects = subjects
        self._machine = state_machine

    def handle(
        self, session: EditSession, text: str, now: datetime | None = None,
    ) -> WizardReply:
        if now is None:
            now = datetime.now(timezone.utc)
        message = text.strip()
        if message.lower() in ("cancel", "/cancel"):
            return WizardReply(f"Editing of {session.subject_name} cancelled.", finished=True)

        subject = self._subjects.get_subject(session.subject_id)
        if subject is None or not subject.active:
            return WizardReply(
                f"{session.subject_name} no longer exists, so there is nothing to edit.",
                finished=True,
            )

        if session.stage is WizardStage.MENU:
            return self._handle_menu(session, subject, message)
        return self._handle_field(session, subject, message, now)

    def _handle_menu(self, session: EditSession, subject: Subject, message: str) -> WizardReply:
        choice = message.lower()
        if choice in _DONE_WORDS:
            return WizardReply(f"✅ Finished editing {subject.name}.", finished=True)

        stage = _MENU_OPTIONS.get(choice)
        if stage is None:
            return WizardReply("Please choose an option from 1 to 7.\n\n" + render_menu(subject))

        session.stage = stage
        return WizardReply(_FIELD_PROMPTS[stage] + " Or 'cancel' to stop.")

    def _handle_field(
        self, session: EditSession, subject: Subject, message: str, now: datetime,
    ) -> WizardReply:
        try:
            self._apply(session.stage, subject, message)
        except ValueError as exc:
            return WizardReply(f"❌ {exc}\n\n{_FIELD_PROMPTS[session.stage]}")

        updated = self._subjects.get_subject(subject.id) or subject
        if session.stage in (WizardStage.DAY, WizardStage.TIME):
            self._machine.reschedule(updated, now)
        session.stage = WizardStage.MENU
        session.subject_name = updated.name
        return WizardReply("✅ Saved.\n\n" + render_menu(updated))

    def _apply(self, stage: WizardStage, subject: Subject, message: str) -> None:
        if stage is WizardStage.NAME:
            name = validate_subject_name(message)
            clash = self._subjects.find_active_by_name(subject.user_id, name, day=subject.day)
            if clash is not None and clash.id != subject.id:
                raise ValueError(f"You already have {clash.name} on {clash.day}.")
            self._subjects.update_subject(subject.id, name=name)

        elif stage is WizardStage.DAY:
            day = normalize_day(message)
            clash = self._subjects.find_active_by_name(subject.user_id, subject.name, day=day)
            if clash is not None and clash.id != subject.id:
                raise ValueError(f"You already have {clash.name} on {clash.day}.")
            self._subjects.update_subject(subject.id, day=day)

        elif stage is WizardStage.TIME:
            start, duration = parse_time_range(message)
            self._subjects.update_subject(subject.id, time=start, duration_hours=duration)

        elif stage in _COUNTER_COLUMNS:
            self._apply_counter(stage, subject, _parse_count(message))

        else:
            raise ValueError("Please choose an option from the menu first.")

    def _apply_counter(self, stage: WizardStage, subject: Subject, value: int) -> None:
        if stage is WizardStage.TOTAL:
            floor = max(subject.attended_classes, subject.mass_skipped_classes)
            if value < floor:
                raise ValueError(
                    f"Total can't be lower than attended ({subject.attended_classes}) "
                    f"or mass-skipped ({subject.mass_skipped_classes})."
                )
        elif value > subject.total_classes:
            raise ValueError(f"That can't exceed the total of {subject.total_classes} classes.")

        if not self._subjects.set_counter(subject.id, _COUNTER_COLUMNS[stage], value):
            logger.info("Counter edit on subject #%d rejected by guard", subject.id)
            raise ValueError("The counts changed in the meantime. Please try again.")
