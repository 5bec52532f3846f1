"""
Attendance Bot — Per-user conversation sessions.

Process-local registry of interactive flows: at most one open flow per user
(edit wizard, pending delete/clear/import confirmation, or waiting for a
timetable image). The open flow doubles as the advisory "active command"
marker: while it is open no second top-level command may start.

The store is a plain object handed to the coordinator and the scheduler;
nothing here is global.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from attendance_bot.core.timetable_parser import ParsedClass

logger = logging.getLogger(__name__)


class WizardStage(str, Enum):
    """Edit wizard states: the menu, or editing one field."""

    MENU = "menu"
    NAME = "name"
    DAY = "day"
    TIME = "time"
    ATTENDED = "attended"
    TOTAL = "total"
    MASS_SKIPPED = "mass_skipped"


@dataclass(kw_only=True)
class Session:
    """Base class for an open interactive flow."""

    issued_at: datetime

    timeout: ClassVar[timedelta] = timedelta(minutes=5)
    label: ClassVar[str] = "interactive flow"
    command: ClassVar[str] = ""

    def is_expired(self, now: datetime) -> bool:
        return now - self.issued_at > self.timeout


@dataclass(kw_only=True)
class EditSession(Session):
    subject_id: int
    subject_name: str
    stage: WizardStage = WizardStage.MENU

    label: ClassVar[str] = "subject edit"
    command: ClassVar[str] = "/edit"


@dataclass(kw_only=True)
class PendingDeleteConfirmation(Session):
    subject_id: int
    subject_name: str

    timeout: ClassVar[timedelta] = timedelta(minutes=2)
    label: ClassVar[str] = "subject removal"
    command: ClassVar[str] = "/remove"


@dataclass(kw_only=True)
class PendingClearConfirmation(Session):
    timeout: ClassVar[timedelta] = timedelta(minutes=2)
    label: ClassVar[str] = "clear-list confirmation"
    command: ClassVar[str] = "/clearlist"


@dataclass(kw_only=True)
class PendingImportConfirmation(Session):
    candidates: list[ParsedClass] = field(default_factory=list)

    label: ClassVar[str] = "timetable import"
    command: ClassVar[str] = "/upload"


@dataclass(kw_only=True)
class AwaitingTimetableImage(Session):
    label: ClassVar[str] = "timetable upload"
    command: ClassVar[str] = "/upload"


YES_NO_SESSIONS = (
    PendingDeleteConfirmation,
    PendingClearConfirmation,
    PendingImportConfirmation,
)


@dataclass
class FlowConflict:
    """Returned instead of starting a flow when another one is open."""

    existing: Session


class SessionStore:
    """In-memory session registry keyed by user id."""

    def __init__(self) -> None:
        self._sessions: dict[int, Session] = {}

    def get(self, user_id: int) -> Session | None:
        """Return the open session without checking expiry."""
        return self._sessions.get(user_id)

    def pop_if_expired(self, user_id: int, now: datetime) -> Session | None:
        """Discard and return the user's session if it has timed out."""
        session = self._sessions.get(user_id)
        if session is None or not session.is_expired(now):
            return None
        self.end(user_id)
        logger.debug("Session %s for user %d expired", type(session).__name__, user_id)
        return session

    def try_begin(self, user_id: int, session: Session) -> FlowConflict | None:
        """Open ``session`` unless another live flow is open for this user."""
        self.pop_if_expired(user_id, session.issued_at)
        existing = self._sessions.get(user_id)
        if existing is not None:
            return FlowConflict(existing=existing)

        self._sessions[user_id] = session
        logger.debug("User %d began %s", user_id, type(session).__name__)
        return None

    def replace(self, user_id: int, session: Session) -> None:
        """Swap the open flow for its follow-up step (e.g. image → import confirmation)."""
        self._sessions[user_id] = session

    def touch(self, user_id: int, now: datetime) -> None:
        session = self._sessions.get(user_id)
        if session is not None:
            session.issued_at = now

    def end(self, user_id: int) -> Session | None:
        return self._sessions.pop(user_id, None)

    # -- periodic cleanup -----------------------------------------------------

    def sweep(self, now: datetime) -> int:
        """Drop every expired session. Returns how many were removed."""
        expired = [
            user_id for user_id, session in self._sessions.items()
            if session.is_expired(now)
        ]
        for user_id in expired:
            self.end(user_id)

        if expired:
            logger.info("Swept %d expired sessions", len(expired))
        return len(expired)
