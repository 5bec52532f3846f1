"""
Attendance Bot — SQLite storage.

Users, subjects and attendance records live in one SQLite file. Every write
the attendance lifecycle depends on is a single conditional statement (or a
single transaction), so two concurrent writers can never double-apply a
transition: the loser simply sees rowcount == 0.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from attendance_bot.data.models import (
    AttendanceRecord,
    AttendanceStatus,
    RegistrationStep,
    Subject,
    User,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id               INTEGER PRIMARY KEY,
    display_name          TEXT,
    timezone              TEXT    NOT NULL,
    registration_step     TEXT    NOT NULL DEFAULT 'name',
    reminders_enabled     INTEGER NOT NULL DEFAULT 1,
    low_attendance_alerts INTEGER NOT NULL DEFAULT 1,
    created_at            TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS subjects (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id              INTEGER NOT NULL,
    name                 TEXT    NOT NULL,
    day                  TEXT    NOT NULL,
    time                 TEXT    NOT NULL,
    duration_hours       REAL    NOT NULL,
    total_classes        INTEGER NOT NULL DEFAULT 0,
    attended_classes     INTEGER NOT NULL DEFAULT 0,
    mass_skipped_classes INTEGER NOT NULL DEFAULT 0,
    holiday_classes      INTEGER NOT NULL DEFAULT 0,
    active               INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_subjects_user_active ON subjects (user_id, active);

CREATE TABLE IF NOT EXISTS attendance_records (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id           INTEGER NOT NULL,
    subject_id        INTEGER NOT NULL,
    class_date        TEXT    NOT NULL,
    scheduled_time    TEXT    NOT NULL,
    confirmation_due  TEXT    NOT NULL,
    status            TEXT    NOT NULL DEFAULT 'pending',
    reminder_sent     INTEGER NOT NULL DEFAULT 0,
    confirmation_sent INTEGER NOT NULL DEFAULT 0,
    response_time     TEXT,
    auto_resolved     INTEGER NOT NULL DEFAULT 0,
    UNIQUE (subject_id, class_date)
);
CREATE INDEX IF NOT EXISTS idx_records_status_due ON attendance_records (status, confirmation_due);
CREATE INDEX IF NOT EXISTS idx_records_user_status ON attendance_records (user_id, status);
"""

_PREFERENCES = {"reminders_enabled", "low_attendance_alerts"}
_EDITABLE_SUBJECT_FIELDS = {"name", "day", "time", "duration_hours"}
_COUNTERS = {
    "total_classes",
    "attended_classes",
    "mass_skipped_classes",
    "holiday_classes",
}


def to_utc_iso(moment: datetime) -> str:
    """Canonical storage format: comparable as plain strings inside SQLite."""
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds")


def from_utc_iso(raw: str) -> datetime:
    return datetime.fromisoformat(raw)


class _SQLiteStore:
    """Shared connection handling; every store initializes the full schema."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from attendance_bot.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("%s initialized at %s", type(self).__name__, self._db_path)


class UserDB(_SQLiteStore):
    """Registered users and their preferences."""

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            user_id=row["user_id"],
            display_name=row["display_name"],
            timezone=row["timezone"],
            registration_step=RegistrationStep(row["registration_step"]),
            reminders_enabled=bool(row["reminders_enabled"]),
            low_attendance_alerts=bool(row["low_attendance_alerts"]),
            created_at=row["created_at"],
        )

    def add_user(self, user_id: int, timezone_name: str) -> User:
        """Create a user at the first registration step."""
        now = to_utc_iso(datetime.now(timezone.utc))
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, display_name, timezone, registration_step, created_at)
                VALUES (?, NULL, ?, ?, ?)
                """,
                (user_id, timezone_name, RegistrationStep.NAME.value, now),
            )
        logger.info("User created: %d", user_id)
        return User(user_id=user_id, timezone=timezone_name, created_at=now)

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def set_display_name(self, user_id: int, display_name: str) -> None:
        """Store the name and advance registration to the timezone step."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET display_name = ?, registration_step = ? WHERE user_id = ?",
                (display_name, RegistrationStep.TIMEZONE.value, user_id),
            )
        logger.info("User %d name set", user_id)

    def complete_registration(self, user_id: int, timezone_name: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET timezone = ?, registration_step = ? WHERE user_id = ?",
                (timezone_name, RegistrationStep.COMPLETED.value, user_id),
            )
        logger.info("User %d completed registration (%s)", user_id, timezone_name)

    def set_timezone(self, user_id: int, timezone_name: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET timezone = ? WHERE user_id = ?",
                (timezone_name, user_id),
            )
        logger.info("User %d timezone set to %s", user_id, timezone_name)

    def set_preference(self, user_id: int, preference: str, enabled: bool) -> None:
        if preference not in _PREFERENCES:
            raise ValueError(f"Unknown preference: {preference!r}")
        with self._connect() as conn:
            conn.execute(
                f"UPDATE users SET {preference} = ? WHERE user_id = ?",
                (int(enabled), user_id),
            )
        logger.info("User %d %s=%s", user_id, preference, enabled)

    def list_registered_users(self, preference: str | None = None) -> list[User]:
        """Return users who finished registration, optionally with a preference enabled."""
        query = "SELECT * FROM users WHERE registration_step = ? AND display_name IS NOT NULL"
        if preference is not None:
            if preference not in _PREFERENCES:
                raise ValueError(f"Unknown preference: {preference!r}")
            query += f" AND {preference} = 1"
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, (RegistrationStep.COMPLETED.value,)).fetchall()
        return [self._row_to_user(r) for r in rows]

    def delete_user_and_data(self, user_id: int) -> bool:
        """Delete a user with all their subjects and records in one transaction."""
        with self._connect() as conn:
            conn.execute("DELETE FROM attendance_records WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM subjects WHERE user_id = ?", (user_id,))
            cursor = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("User %d and all their data deleted", user_id)
        return deleted


class SubjectDB(_SQLiteStore):
    """Weekly schedule entries with their running attendance counters."""

    @staticmethod
    def _row_to_subject(row: sqlite3.Row) -> Subject:
        return Subject(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            day=row["day"],
            time=row["time"],
            duration_hours=row["duration_hours"],
            total_classes=row["total_classes"],
            attended_classes=row["attended_classes"],
            mass_skipped_classes=row["mass_skipped_classes"],
            holiday_classes=row["holiday_classes"],
            active=bool(row["active"]),
        )

    def add_subject(
        self,
        user_id: int,
        name: str,
        day: str,
        time: str,
        duration_hours: float,
    ) -> Subject:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO subjects (user_id, name, day, time, duration_hours)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, name, day, time, duration_hours),
            )
            subject_id = cursor.lastrowid

        logger.info(
            "Subject added: #%d '%s' %s %s (%.1fh) for user %d",
            subject_id, name, day, time, duration_hours, user_id,
        )
        return Subject(
            id=subject_id,
            user_id=user_id,
            name=name,
            day=day,
            time=time,
            duration_hours=duration_hours,
        )

    def get_subject(self, subject_id: int) -> Subject | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM subjects WHERE id = ?", (subject_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_subject(row)

    def list_active(
        self, user_id: int | None = None, day: str | None = None,
    ) -> list[Subject]:
        """Active subjects, optionally filtered by owner and/or weekday."""
        conditions = ["active = 1"]
        params: list = []
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        if day is not None:
            conditions.append("day = ?")
            params.append(day)

        query = "SELECT * FROM subjects WHERE " + " AND ".join(conditions)
        query += " ORDER BY user_id, time, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_subject(r) for r in rows]

    def find_active_by_name(
        self, user_id: int, name: str, day: str | None = None,
    ) -> Subject | None:
        """Case-insensitive exact name match among the user's active subjects."""
        query = "SELECT * FROM subjects WHERE user_id = ? AND active = 1 AND lower(name) = lower(?)"
        params: list = [user_id, name.strip()]
        if day is not None:
            query += " AND day = ?"
            params.append(day)
        query += " ORDER BY id"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_subject(row)

    def count_active(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM subjects WHERE user_id = ? AND active = 1",
                (user_id,),
            ).fetchone()
        return row[0]

    def update_subject(self, subject_id: int, **changes: object) -> bool:
        """Update schedule fields (name, day, time, duration_hours)."""
        unknown = set(changes) - _EDITABLE_SUBJECT_FIELDS
        if unknown:
            raise ValueError(f"Not editable: {', '.join(sorted(unknown))}")
        if not changes:
            return False

        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE subjects SET {assignments} WHERE id = ?",
                (*changes.values(), subject_id),
            )
        updated = cursor.rowcount > 0
        if updated:
            logger.info("Subject #%d updated: %s", subject_id, ", ".join(changes))
        return updated

    def set_counter(self, subject_id: int, counter: str, value: int) -> bool:
        """Overwrite one counter, refusing values that would break attended/mass-skipped <= total.

        The guard is evaluated against the row as it is at write time, so a
        concurrent increment from the scheduler cannot slip past it.
        """
        if counter not in _COUNTERS:
            raise ValueError(f"Unknown counter: {counter!r}")
        if value < 0:
            return False

        if counter == "total_classes":
            guard = "? >= attended_classes AND ? >= mass_skipped_classes"
            guard_params: tuple = (value, value)
        elif counter == "holiday_classes":
            guard = "1 = 1"
            guard_params = ()
        else:
            guard = "? <= total_classes"
            guard_params = (value,)

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE subjects SET {counter} = ? WHERE id = ? AND {guard}",
                (value, subject_id, *guard_params),
            )
        updated = cursor.rowcount > 0
        if updated:
            logger.info("Subject #%d %s set to %d", subject_id, counter, value)
        return updated

    def deactivate(self, subject_id: int) -> bool:
        """Soft-delete a subject (set active = False), keeping its history."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE subjects SET active = 0 WHERE id = ? AND active = 1",
                (subject_id,),
            )
        deactivated = cursor.rowcount > 0
        if deactivated:
            logger.info("Subject #%d soft-deleted", subject_id)
        return deactivated

    def deactivate_all(self, user_id: int) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE subjects SET active = 0 WHERE user_id = ? AND active = 1",
                (user_id,),
            )
        logger.info("Soft-deleted %d subjects for user %d", cursor.rowcount, user_id)
        return cursor.rowcount


class AttendanceDB(_SQLiteStore):
    """Per-occurrence attendance records."""

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AttendanceRecord:
        return AttendanceRecord(
            id=row["id"],
            user_id=row["user_id"],
            subject_id=row["subject_id"],
            class_date=row["class_date"],
            scheduled_time=row["scheduled_time"],
            confirmation_due=row["confirmation_due"],
            status=AttendanceStatus(row["status"]),
            reminder_sent=bool(row["reminder_sent"]),
            confirmation_sent=bool(row["confirmation_sent"]),
            response_time=row["response_time"],
            auto_resolved=bool(row["auto_resolved"]),
        )

    def find_record(self, subject_id: int, class_date: str) -> AttendanceRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM attendance_records WHERE subject_id = ? AND class_date = ?",
                (subject_id, class_date),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def get_or_create(
        self,
        user_id: int,
        subject_id: int,
        class_date: str,
        scheduled_time: str,
        confirmation_due: str,
    ) -> tuple[AttendanceRecord, bool]:
        """Return (record, created) for one occurrence; never creates a duplicate."""
        existing = self.find_record(subject_id, class_date)
        if existing is not None:
            return existing, False

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO attendance_records
                    (user_id, subject_id, class_date, scheduled_time, confirmation_due)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, subject_id, class_date, scheduled_time, confirmation_due),
            )
            created = cursor.rowcount > 0
            row = conn.execute(
                "SELECT * FROM attendance_records WHERE subject_id = ? AND class_date = ?",
                (subject_id, class_date),
            ).fetchone()

        record = self._row_to_record(row)
        if created:
            logger.info(
                "Attendance record #%d created: subject #%d on %s",
                record.id, subject_id, class_date,
            )
        return record, created

    def set_flag(self, record_id: int, flag: str) -> bool:
        """Flip reminder_sent / confirmation_sent from 0 to 1. True only for the flipping call."""
        if flag not in ("reminder_sent", "confirmation_sent"):
            raise ValueError(f"Unknown flag: {flag!r}")
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE attendance_records SET {flag} = 1 WHERE id = ? AND {flag} = 0",
                (record_id,),
            )
        return cursor.rowcount > 0

    def resolve(
        self,
        record_id: int,
        status: AttendanceStatus,
        response_time: str,
        auto_resolved: bool,
        counter_increments: dict[str, int],
    ) -> bool:
        """Move a pending record to ``status`` and bump the subject's counters atomically.

        Returns False (and changes nothing) if the record is no longer pending.
        """
        unknown = set(counter_increments) - _COUNTERS
        if unknown:
            raise ValueError(f"Unknown counters: {', '.join(sorted(unknown))}")

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE attendance_records
                SET status = ?, response_time = ?, auto_resolved = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value, response_time, int(auto_resolved),
                    record_id, AttendanceStatus.PENDING.value,
                ),
            )
            if cursor.rowcount == 0:
                return False

            if counter_increments:
                assignments = ", ".join(
                    f"{counter} = {counter} + ?" for counter in counter_increments
                )
                conn.execute(
                    f"""
                    UPDATE subjects SET {assignments}
                    WHERE id = (SELECT subject_id FROM attendance_records WHERE id = ?)
                    """,
                    (*counter_increments.values(), record_id),
                )
        return True

    def find_overdue(self, cutoff: datetime) -> list[AttendanceRecord]:
        """Pending records whose confirmation became due before ``cutoff``."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM attendance_records
                WHERE status = ? AND confirmation_due < ?
                ORDER BY confirmation_due
                """,
                (AttendanceStatus.PENDING.value, to_utc_iso(cutoff)),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def latest_pending_for_user(
        self, user_id: int, started_before: datetime,
    ) -> AttendanceRecord | None:
        """Most recent pending record of a class that has already started."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM attendance_records
                WHERE user_id = ? AND status = ? AND scheduled_time <= ?
                ORDER BY scheduled_time DESC
                LIMIT 1
                """,
                (user_id, AttendanceStatus.PENDING.value, to_utc_iso(started_before)),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def list_pending_for_subject(self, subject_id: int) -> list[AttendanceRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM attendance_records
                WHERE subject_id = ? AND status = ?
                ORDER BY scheduled_time
                """,
                (subject_id, AttendanceStatus.PENDING.value),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def delete_pending(self, record_id: int) -> bool:
        """Drop a record that is still pending; resolved history is never deleted."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM attendance_records WHERE id = ? AND status = ?",
                (record_id, AttendanceStatus.PENDING.value),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Pending attendance record #%d dropped", record_id)
        return deleted

    def set_confirmation_due(self, record_id: int, confirmation_due: str) -> bool:
        """Move the confirmation time of a pending record whose prompt hasn't gone out."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE attendance_records SET confirmation_due = ?
                WHERE id = ? AND status = ? AND confirmation_sent = 0
                """,
                (confirmation_due, record_id, AttendanceStatus.PENDING.value),
            )
        return cursor.rowcount > 0
