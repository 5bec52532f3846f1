"""Shared test fixtures and configuration.

Sets up fake environment variables so attendance_bot.config doesn't sys.exit(),
and provides stores that share one temporary SQLite file.
"""

import os

# Patch env vars BEFORE any attendance_bot imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")

from unittest.mock import AsyncMock, MagicMock

import pytest

USER_ID = 12345


@pytest.fixture
def db_path(tmp_path):
    """Return a temporary SQLite DB path shared by all stores of one test."""
    return str(tmp_path / "test_attendance.db")


@pytest.fixture
def user_db(db_path):
    from attendance_bot.data.db import UserDB
    return UserDB(db_path=db_path)


@pytest.fixture
def subject_db(db_path):
    from attendance_bot.data.db import SubjectDB
    return SubjectDB(db_path=db_path)


@pytest.fixture
def attendance_db(db_path):
    from attendance_bot.data.db import AttendanceDB
    return AttendanceDB(db_path=db_path)


@pytest.fixture
def state_machine(attendance_db):
    from attendance_bot.core.attendance import AttendanceStateMachine
    return AttendanceStateMachine(attendance_db)


@pytest.fixture
def sessions():
    from attendance_bot.core.sessions import SessionStore
    return SessionStore()


@pytest.fixture
def notifier():
    """A NotificationPort whose sends always succeed."""
    mock = MagicMock()
    mock.send_message = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def registered_user(user_db):
    """A user who finished registration, in Asia/Kolkata."""
    user_db.add_user(USER_ID, "Asia/Kolkata")
    user_db.set_display_name(USER_ID, "Asha")
    user_db.complete_registration(USER_ID, "Asia/Kolkata")
    return user_db.get_user(USER_ID)


@pytest.fixture
def maths(subject_db, registered_user):
    """Mathematics on Monday 10:00 for 2 hours."""
    return subject_db.add_subject(USER_ID, "Mathematics", "Monday", "10:00", 2.0)


@pytest.fixture
def timetable_parser():
    parser = MagicMock()
    parser.is_available.return_value = True
    parser.parse = AsyncMock(return_value=[])
    return parser


@pytest.fixture
def coordinator(notifier, user_db, subject_db, state_machine, sessions, timetable_parser):
    from attendance_bot.core.conversation import ConversationCoordinator
    return ConversationCoordinator(
        notifier=notifier,
        users=user_db,
        subjects=subject_db,
        state_machine=state_machine,
        sessions=sessions,
        timetable_parser=timetable_parser,
    )


@pytest.fixture
def scheduler(notifier, user_db, subject_db, state_machine, sessions):
    from attendance_bot.core.scheduler import AttendanceScheduler
    return AttendanceScheduler(
        notifier=notifier,
        users=user_db,
        subjects=subject_db,
        state_machine=state_machine,
        sessions=sessions,
    )
