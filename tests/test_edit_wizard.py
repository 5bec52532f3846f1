"""Tests for attendance_bot.core.edit_wizard — the /edit state machine."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from attendance_bot.core.edit_wizard import EditWizard, render_menu
from attendance_bot.core.sessions import EditSession, WizardStage

USER_ID = 12345
NOW = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def wizard(subject_db, state_machine):
    return EditWizard(subject_db, state_machine)


@pytest.fixture
def session(maths):
    return EditSession(issued_at=NOW, subject_id=maths.id, subject_name=maths.name)


class TestMenu:
    def test_render_menu_shows_time_range(self, maths):
        menu = render_menu(maths)
        assert "3. Time: 10:00-12:00" in menu
        assert "7. Done" in menu

    def test_choose_field(self, wizard, session):
        reply = wizard.handle(session, "2")
        assert not reply.finished
        assert session.stage is WizardStage.DAY
        assert "new day" in reply.text

    def test_invalid_choice_reshows_menu(self, wizard, session):
        reply = wizard.handle(session, "9")
        assert "1 to 7" in reply.text
        assert session.stage is WizardStage.MENU

    @pytest.mark.parametrize("text", ["7", "done", "Save"])
    def test_done(self, wizard, session, text):
        assert wizard.handle(session, text).finished

    def test_cancel_from_any_stage(self, wizard, session):
        wizard.handle(session, "1")
        reply = wizard.handle(session, "cancel")
        assert reply.finished
        assert "cancelled" in reply.text


class TestFieldEdits:
    def test_rename(self, wizard, session, subject_db, maths):
        wizard.handle(session, "1")
        reply = wizard.handle(session, "linear algebra")
        assert reply.text.startswith("✅ Saved.")
        assert session.stage is WizardStage.MENU
        assert session.subject_name == "Linear Algebra"
        assert subject_db.get_subject(maths.id).name == "Linear Algebra"

    def test_rename_clash_on_same_day(self, wizard, session, subject_db):
        subject_db.add_subject(USER_ID, "Physics", "Monday", "14:00", 1.0)
        wizard.handle(session, "1")
        reply = wizard.handle(session, "physics")
        assert "already have Physics on Monday" in reply.text
        assert session.stage is WizardStage.NAME

    def test_same_name_on_another_day_is_fine(self, wizard, session, subject_db, maths):
        subject_db.add_subject(USER_ID, "Physics", "Friday", "14:00", 1.0)
        wizard.handle(session, "1")
        wizard.handle(session, "Physics")
        assert subject_db.get_subject(maths.id).name == "Physics"

    def test_change_day(self, wizard, session, subject_db, maths):
        wizard.handle(session, "2")
        wizard.handle(session, "wed")
        assert subject_db.get_subject(maths.id).day == "Wednesday"

    def test_change_time_range(self, wizard, session, subject_db, maths):
        wizard.handle(session, "3")
        wizard.handle(session, "2pm-3:30pm")
        updated = subject_db.get_subject(maths.id)
        assert (updated.time, updated.duration_hours) == ("14:00", 1.5)

    def test_day_change_drops_upcoming_record(self, wizard, session, state_machine, attendance_db, maths):
        next_monday = datetime(2025, 1, 13, 10, 0, tzinfo=ZoneInfo("Asia/Kolkata"))
        state_machine.ensure_record(maths, next_monday)

        wizard.handle(session, "2", NOW)
        wizard.handle(session, "wed", NOW)
        assert attendance_db.find_record(maths.id, "2025-01-13") is None

    def test_invalid_value_keeps_stage(self, wizard, session, subject_db, maths):
        wizard.handle(session, "3")
        reply = wizard.handle(session, "whenever")
        assert reply.text.startswith("❌")
        assert session.stage is WizardStage.TIME
        assert subject_db.get_subject(maths.id).time == "10:00"


class TestCounterEdits:
    def test_total_then_attended(self, wizard, session, subject_db, maths):
        wizard.handle(session, "5")
        wizard.handle(session, "10")
        wizard.handle(session, "4")
        wizard.handle(session, "7")
        stored = subject_db.get_subject(maths.id)
        assert (stored.total_classes, stored.attended_classes) == (10, 7)

    def test_attended_cannot_exceed_total(self, wizard, session, subject_db, maths):
        wizard.handle(session, "4")
        reply = wizard.handle(session, "3")
        assert "exceed the total of 0" in reply.text
        assert subject_db.get_subject(maths.id).attended_classes == 0

    def test_total_cannot_drop_below_attended(self, wizard, session, subject_db, maths):
        subject_db.set_counter(maths.id, "total_classes", 5)
        subject_db.set_counter(maths.id, "attended_classes", 5)
        wizard.handle(session, "5")
        reply = wizard.handle(session, "3")
        assert "can't be lower" in reply.text

    def test_rejects_non_numbers(self, wizard, session):
        wizard.handle(session, "6")
        reply = wizard.handle(session, "-2")
        assert "whole number" in reply.text


class TestDeletedSubject:
    def test_finishes_when_subject_gone(self, wizard, session, subject_db, maths):
        subject_db.deactivate(maths.id)
        reply = wizard.handle(session, "1")
        assert reply.finished
        assert "no longer exists" in reply.text
