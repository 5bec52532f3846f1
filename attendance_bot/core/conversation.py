"""
Attendance Bot — Conversation coordinator.

Every inbound message goes through ``ConversationCoordinator.handle``, which
routes it by a fixed precedence:

    0. an expired session is discarded and the message consumed
    1. an open edit wizard takes the message as wizard input
       (a pending /upload takes an image or "cancel")
    2. an open delete/clear/import confirmation takes a yes or no
    3. an attendance reply resolves the latest pending class
    4. commands, registration, or fallback text

Replies go out through the NotificationPort, so nothing here knows about
Telegram. Messages from one user are handled one at a time.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable
from zoneinfo import ZoneInfo

from attendance_bot.core.attendance import breakeven
from attendance_bot.core.commands import (
    ALWAYS_ALLOWED,
    Command,
    CommandKind,
    is_command,
    parse_add_args,
    parse_command,
)
from attendance_bot.core.edit_wizard import EditWizard, render_menu
from attendance_bot.core.schedule_resolver import next_occurrence
from attendance_bot.core.sessions import (
    YES_NO_SESSIONS,
    AwaitingTimetableImage,
    EditSession,
    FlowConflict,
    PendingClearConfirmation,
    PendingDeleteConfirmation,
    PendingImportConfirmation,
    Session,
)
from attendance_bot.core.validators import capitalize_words, normalize_day, normalize_timezone
from attendance_bot.core.vocabulary import (
    is_attendance_response,
    matches,
    parse_attendance_response,
    parse_yes_no,
)
from attendance_bot.data.models import AttendanceStatus, RegistrationStep
from attendance_bot.ports.timetable_port import TimetableParseError

if TYPE_CHECKING:
    from attendance_bot.core.attendance import AttendanceStateMachine
    from attendance_bot.core.sessions import SessionStore
    from attendance_bot.data.db import SubjectDB, UserDB
    from attendance_bot.data.models import AttendanceRecord, Subject, User
    from attendance_bot.ports.notification_port import NotificationPort
    from attendance_bot.ports.timetable_port import TimetableParserPort

logger = logging.getLogger(__name__)

DISPLAY_NAME_MIN = 2
DISPLAY_NAME_MAX = 50

_ADD_USAGE = (
    "📝 Add a Subject\n\n"
    "Format: /add <subject> on <day> at <time> for <hours>\n\n"
    "Examples:\n"
    "• /add Mathematics on Monday at 10:00 for 2\n"
    "• /add Physics on Wed at 2pm for 1.5\n"
    "• /add Chemistry fri 9:30 3"
)

_HELP_TEXT = (
    "🤖 AttendanceBot Help\n\n"
    "📚 Subjects:\n"
    "/add <subject> on <day> at <time> for <hours> — add a weekly class\n"
    "/edit <subject> — change name, day, time or counts\n"
    "/remove <subject> — remove a subject (history is kept)\n"
    "/clearlist — remove all your subjects\n"
    "/list — show your subjects\n"
    "/upload — add subjects from a timetable photo\n\n"
    "📊 Attendance:\n"
    "/show — attendance overview\n"
    "/show <subject> — detailed view with what you need to reach the target\n\n"
    "⚙️ Settings:\n"
    "/timezone <timezone> — set your timezone\n"
    "/settings — view your preferences\n"
    "/reminders on|off — class reminders\n"
    "/alerts on|off — low attendance alerts\n"
    "/deleteuser confirmed — delete your account and all data\n"
    "/cancel — stop whatever is in progress\n\n"
    "💡 Tips:\n"
    "• I remind you before each class and ask afterwards if you attended.\n"
    "• Reply yes, no, mass bunk or holiday to those questions.\n"
    "• If you don't reply in time, the class is marked absent."
)

_GREETINGS = (
    ("thank you", "😊 You're welcome! Let me know if you need anything else."),
    ("thanks", "😊 You're welcome! Happy to help with your attendance."),
    ("hi", "👋 Hello! Type /help to see what I can do."),
    ("hello", "👋 Hi there! Type /help to see available commands."),
    ("hey", "👋 Hey! Type /help to see available commands."),
    ("help", "Type /help to see all available commands."),
    ("attendance", "Type /show to view your attendance overview."),
    ("subjects", "Type /list to see all your subjects."),
)

_TIMEZONE_EXAMPLES = (
    "Examples:\n"
    "• Asia/Kolkata (or just 'india')\n"
    "• America/New_York (or 'usa')\n"
    "• Europe/London (or 'uk')"
)

_SUBJECT_ON_DAY_RE = re.compile(r"^(.+?)\s+on\s+(\S+)$", re.IGNORECASE)


@dataclass
class InboundMessage:
    """One message from a user, already stripped of transport details."""

    user_id: int
    text: str = ""
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    display_name: str | None = None
    attachment: bytes | None = None

    @property
    def has_attachment(self) -> bool:
        return bool(self.attachment)


_Handler = Callable[["User | None", Command, InboundMessage], Awaitable[None]]


def _attendance_emoji(percentage: int, threshold: int) -> str:
    return "✅" if percentage >= threshold else "🔴"


def _conflict_text(conflict: FlowConflict) -> str:
    existing = conflict.existing
    return (
        f"⚠️ You already have an open {existing.label} ({existing.command}).\n\n"
        "Finish it first, or send /cancel to stop it."
    )


class ConversationCoordinator:
    """Routes inbound messages to flows, attendance replies and commands."""

    def __init__(
        self,
        notifier: NotificationPort,
        users: UserDB,
        subjects: SubjectDB,
        state_machine: AttendanceStateMachine,
        sessions: SessionStore,
        timetable_parser: TimetableParserPort | None = None,
        default_timezone: str = "Asia/Kolkata",
        low_attendance_threshold: int = 75,
    ) -> None:
        self._notifier = notifier
        self._users = users
        self._subjects = subjects
        self._machine = state_machine
        self._sessions = sessions
        self._parser = timetable_parser
        self._default_timezone = default_timezone
        self._threshold = low_attendance_threshold
        self._wizard = EditWizard(subjects, state_machine)
        self._locks: dict[int, asyncio.Lock] = {}
        self._handlers: dict[CommandKind, _Handler] = {
            CommandKind.START: self._cmd_start,
            CommandKind.HELP: self._cmd_help,
            CommandKind.ADD: self._cmd_add,
            CommandKind.EDIT: self._cmd_edit,
            CommandKind.REMOVE: self._cmd_remove,
            CommandKind.CLEAR_LIST: self._cmd_clearlist,
            CommandKind.LIST: self._cmd_list,
            CommandKind.SHOW: self._cmd_show,
            CommandKind.TIMEZONE: self._cmd_timezone,
            CommandKind.SETTINGS: self._cmd_settings,
            CommandKind.REMINDERS: self._cmd_reminders,
            CommandKind.ALERTS: self._cmd_alerts,
            CommandKind.UPLOAD: self._cmd_upload,
            CommandKind.DELETE_USER: self._cmd_deleteuser,
            CommandKind.CANCEL: self._cmd_cancel,
            CommandKind.UNKNOWN: self._cmd_unknown,
        }

    @property
    def handlers(self) -> dict[CommandKind, _Handler]:
        return dict(self._handlers)

    async def _reply(self, user_id: int, text: str) -> None:
        await self._notifier.send_message(user_id, text)

    def try_begin_interactive_flow(self, user_id: int, session: Session) -> FlowConflict | None:
        """Open ``session`` for the user, or report the flow that is already open."""
        conflict = self._sessions.try_begin(user_id, session)
        if conflict is not None:
            logger.info(
                "User %d tried to start %s while %s is open",
                user_id, type(session).__name__, type(conflict.existing).__name__,
            )
        return conflict

    # ---------------------------------------------------------------------------
    # Entry point
    # ---------------------------------------------------------------------------

    async def handle(self, message: InboundMessage) -> None:
        lock = self._locks.setdefault(message.user_id, asyncio.Lock())
        async with lock:
            try:
                await self._route(message)
            except Exception as exc:
                logger.error("Error handling message from %d: %s", message.user_id, exc)
                await self._reply(
                    message.user_id, "❌ Sorry, something went wrong. Please try again.",
                )

    async def _route(self, message: InboundMessage) -> None:
        user_id = message.user_id
        now = message.received_at
        text = message.text.strip()

        expired = self._sessions.pop_if_expired(user_id, now)
        if expired is not None:
            await self._reply(
                user_id,
                f"⏰ Your {expired.label} expired. Use {expired.command} again if you still need it.",
            )
            return

        session = self._sessions.get(user_id)

        if isinstance(session, EditSession):
            await self._continue_edit(session, message)
            return

        if isinstance(session, AwaitingTimetableImage):
            if message.has_attachment:
                await self._import_image(message)
                return
            if text.lower() in ("cancel", "/cancel"):
                self._sessions.end(user_id)
                await self._reply(user_id, "Image upload cancelled.")
                return

        if isinstance(session, YES_NO_SESSIONS) and not is_command(text):
            answer = parse_yes_no(text)
            if answer is not None:
                await self._resolve_confirmation(session, answer, message)
                return

        user = self._users.get_user(user_id)

        if user is not None and user.is_registered and not is_command(text):
            outcome = parse_attendance_response(text)
            if outcome is not None:
                record = self._machine.latest_pending(user_id, now)
                if record is not None:
                    await self._record_attendance(user, record, outcome, now)
                    return

        if is_command(text):
            await self._dispatch_command(user, parse_command(text), message)
            return

        if user is None:
            await self._reply(
                user_id,
                "👋 Welcome! You need to register first to use this bot.\n\n"
                "Please type /start to begin registration.",
            )
            return

        if not user.is_registered:
            await self._continue_registration(user, text)
            return

        if isinstance(session, YES_NO_SESSIONS):
            await self._reply(
                user_id,
                f"Please reply yes or no to the pending {session.label}, or send /cancel.",
            )
            return

        if message.has_attachment:
            await self._begin_image_import(message)
            return

        await self._fallback(user, text)

    # ---------------------------------------------------------------------------
    # Commands
    # ---------------------------------------------------------------------------

    async def _dispatch_command(
        self, user: User | None, command: Command, message: InboundMessage,
    ) -> None:
        user_id = message.user_id
        registered = user is not None and user.is_registered

        if not registered and command.kind not in (
            CommandKind.START, CommandKind.HELP, CommandKind.CANCEL,
        ):
            await self._reply(
                user_id,
                "👋 You need to finish registering first.\n\n"
                "Please type /start to continue.",
            )
            return

        # The open session is the active-command marker.
        if command.kind not in ALWAYS_ALLOWED:
            open_session = self._sessions.get(user_id)
            if open_session is not None:
                await self._reply(user_id, _conflict_text(FlowConflict(open_session)))
                return

        logger.info("User %d: %s", user_id, command.kind.value or command.raw.split(" ", 1)[0])
        await self._handlers[command.kind](user, command, message)

    async def _cmd_start(self, user: User | None, command: Command, message: InboundMessage) -> None:
        user_id = message.user_id
        if user is not None and user.is_registered:
            await self._reply(
                user_id,
                f"👋 Hello {user.display_name}!\n\n"
                "You are already registered. Type /help to see available commands.",
            )
            return

        if user is None:
            self._users.add_user(user_id, self._default_timezone)
            await self._reply(
                user_id,
                "🎓 Welcome to AttendanceBot!\n\n"
                "I'll help you track your class attendance. Let's get you set up!\n\n"
                "First, what's your name?",
            )
            return

        await self._prompt_registration_step(user)

    async def _cmd_help(self, user: User | None, command: Command, message: InboundMessage) -> None:
        await self._reply(message.user_id, _HELP_TEXT)

    async def _cmd_add(self, user: User, command: Command, message: InboundMessage) -> None:
        user_id = message.user_id
        if not command.args:
            await self._reply(user_id, _ADD_USAGE)
            return

        try:
            parsed = parse_add_args(command.args)
        except ValueError as exc:
            await self._reply(user_id, f"❌ {exc}")
            return
        if parsed is None:
            await self._reply(user_id, "❌ I couldn't understand that format.\n\n" + _ADD_USAGE)
            return

        if self._subjects.find_active_by_name(user_id, parsed.name, day=parsed.day) is not None:
            await self._reply(user_id, f"❌ You already have {parsed.name} on {parsed.day}.")
            return

        subject = self._subjects.add_subject(
            user_id, parsed.name, parsed.day, parsed.time, parsed.duration_hours,
        )
        upcoming = next_occurrence(subject.day, subject.time, user.timezone, message.received_at)
        await self._reply(
            user_id,
            "✅ Subject Added!\n\n"
            f"📚 Subject: {subject.name}\n"
            f"📅 Day: {subject.day}\n"
            f"⏰ Time: {subject.time}\n"
            f"⌛ Duration: {subject.duration_hours:g} hour(s)\n\n"
            f"Next class: {upcoming.strftime('%A, %d %b at %H:%M')}",
        )

    async def _cmd_edit(self, user: User, command: Command, message: InboundMessage) -> None:
        user_id = message.user_id
        if not command.args:
            await self._reply(user_id, "✏️ Format: /edit <subject>\n\nExample: /edit Mathematics")
            return

        subject, error = self._find_subject(user_id, command.args, "/edit")
        if subject is None:
            await self._reply(user_id, error)
            return

        conflict = self.try_begin_interactive_flow(
            user_id,
            EditSession(
                issued_at=message.received_at,
                subject_id=subject.id,
                subject_name=subject.name,
            ),
        )
        if conflict is not None:
            await self._reply(user_id, _conflict_text(conflict))
            return
        await self._reply(user_id, render_menu(subject))

    async def _cmd_remove(self, user: User, command: Command, message: InboundMessage) -> None:
        user_id = message.user_id
        if not command.args:
            await self._reply(user_id, "🗑️ Format: /remove <subject>\n\nExample: /remove Mathematics")
            return

        subject, error = self._find_subject(user_id, command.args, "/remove")
        if subject is None:
            await self._reply(user_id, error)
            return

        conflict = self.try_begin_interactive_flow(
            user_id,
            PendingDeleteConfirmation(
                issued_at=message.received_at,
                subject_id=subject.id,
                subject_name=subject.name,
            ),
        )
        if conflict is not None:
            await self._reply(user_id, _conflict_text(conflict))
            return
        await self._reply(
            user_id,
            f"⚠️ Remove {subject.name} ({subject.day} {subject.time}) from your schedule?\n\n"
            "Its attendance history is kept.\n\n"
            "Reply yes to confirm or no to cancel.",
        )

    async def _cmd_clearlist(self, user: User, command: Command, message: InboundMessage) -> None:
        user_id = message.user_id
        count = self._subjects.count_active(user_id)
        if count == 0:
            await self._reply(user_id, "📚 You don't have any subjects to remove.")
            return

        conflict = self.try_begin_interactive_flow(
            user_id, PendingClearConfirmation(issued_at=message.received_at),
        )
        if conflict is not None:
            await self._reply(user_id, _conflict_text(conflict))
            return
        await self._reply(
            user_id,
            f"⚠️ Remove all {count} of your subjects?\n\n"
            "Reply yes to confirm or no to cancel.",
        )

    async def _cmd_list(self, user: User, command: Command, message: InboundMessage) -> None:
        subjects = self._subjects.list_active(user_id=message.user_id)
        if not subjects:
            await self._reply(message.user_id, self._no_subjects_text())
            return

        lines = ["📚 Your Subjects\n"]
        for index, subject in enumerate(subjects, start=1):
            lines.append(
                f"{index}. {subject.name}\n"
                f"   📅 {subject.day}s at {subject.time}\n"
                f"   ⏱️ {subject.duration_hours:g} hour(s)\n"
            )
        await self._reply(message.user_id, "\n".join(lines))

    async def _cmd_show(self, user: User, command: Command, message: InboundMessage) -> None:
        target = command.args.strip()
        if target.lower() in ("", "attendance", "all"):
            await self._show_overview(user)
            return

        subject, error = self._find_subject(user.user_id, target, "/show")
        if subject is None:
            await self._reply(user.user_id, error)
            return
        await self._show_subject(user, subject, message.received_at)

    async def _show_overview(self, user: User) -> None:
        subjects = self._subjects.list_active(user_id=user.user_id)
        if not subjects:
            await self._reply(user.user_id, self._no_subjects_text())
            return

        lines = ["📊 Your Attendance Overview\n"]
        for subject in subjects:
            percentage = subject.attendance_percentage
            lines.append(
                f"{_attendance_emoji(percentage, self._threshold)} {subject.name} ({subject.day})\n"
                f"   {subject.attended_classes}/{subject.total_classes} classes ({percentage}%)\n"
                f"   Excluding mass bunks: {subject.percentage_excluding_mass_skips}%\n"
            )
        lines.append("💡 Type /show <subject> for a detailed view")
        await self._reply(user.user_id, "\n".join(lines))

    async def _show_subject(self, user: User, subject: Subject, now: datetime) -> None:
        percentage = subject.attendance_percentage
        upcoming = next_occurrence(subject.day, subject.time, user.timezone, now)
        lines = [
            f"📊 {subject.name} — Detailed View\n",
            f"{_attendance_emoji(percentage, self._threshold)} Attendance: {percentage}%",
            f"   Excluding mass bunks: {subject.percentage_excluding_mass_skips}%",
            f"✅ Attended: {subject.attended_classes}",
            f"📘 Total: {subject.total_classes}",
            f"🤪 Mass bunks: {subject.mass_skipped_classes}",
            f"🎉 Holidays: {subject.holiday_classes}\n",
            f"📅 Schedule: {subject.day}s at {subject.time} for {subject.duration_hours:g} hour(s)",
            f"🗓️ Next class: {upcoming.strftime('%A, %d %b at %H:%M')}\n",
        ]

        outlook = breakeven(subject.attended_classes, subject.total_classes, self._threshold)
        if outlook.kind == "deficit":
            lines.append(
                f"⚠️ Attend the next {outlook.classes} classes to reach {self._threshold}%."
            )
        elif outlook.kind == "surplus":
            lines.append(
                f"👍 You can miss {outlook.classes} classes and stay at or above {self._threshold}%."
            )
        else:
            lines.append(f"⚖️ You are exactly at {self._threshold}%. Don't miss the next one!")
        await self._reply(user.user_id, "\n".join(lines))

    async def _cmd_timezone(self, user: User, command: Command, message: InboundMessage) -> None:
        user_id = message.user_id
        if not command.args:
            await self._reply(
                user_id,
                f"🌍 Your timezone: {user.timezone}\n\n"
                "To change it: /timezone <timezone>\n" + _TIMEZONE_EXAMPLES,
            )
            return

        try:
            tz_name = normalize_timezone(command.args)
        except ValueError as exc:
            await self._reply(user_id, f"❌ {exc}\n\n{_TIMEZONE_EXAMPLES}")
            return

        self._users.set_timezone(user_id, tz_name)
        local_now = message.received_at.astimezone(ZoneInfo(tz_name))
        await self._reply(
            user_id,
            f"✅ Timezone set to {tz_name}\n"
            f"Current time there: {local_now.strftime('%A, %d %b %H:%M')}",
        )

    async def _cmd_settings(self, user: User, command: Command, message: InboundMessage) -> None:
        await self._reply(
            message.user_id,
            "⚙️ Your Settings\n\n"
            f"👤 Name: {user.display_name}\n"
            f"🌍 Timezone: {user.timezone}\n"
            f"🔔 Reminders: {'on' if user.reminders_enabled else 'off'}\n"
            f"⚠️ Low attendance alerts: {'on' if user.low_attendance_alerts else 'off'}\n\n"
            "Change with /timezone, /reminders on|off or /alerts on|off",
        )

    async def _cmd_reminders(self, user: User, command: Command, message: InboundMessage) -> None:
        await self._toggle(user, command, "reminders_enabled", "Class reminders", "/reminders")

    async def _cmd_alerts(self, user: User, command: Command, message: InboundMessage) -> None:
        await self._toggle(user, command, "low_attendance_alerts", "Low attendance alerts", "/alerts")

    async def _toggle(
        self, user: User, command: Command, preference: str, label: str, usage: str,
    ) -> None:
        choice = command.args.strip().lower()
        if choice not in ("on", "off"):
            current = getattr(user, preference)
            await self._reply(
                user.user_id,
                f"{label} are {'on' if current else 'off'}.\n\nUse {usage} on or {usage} off.",
            )
            return

        self._users.set_preference(user.user_id, preference, choice == "on")
        await self._reply(user.user_id, f"✅ {label} turned {choice}.")

    async def _cmd_upload(self, user: User, command: Command, message: InboundMessage) -> None:
        user_id = message.user_id
        if not self._parser_available():
            await self._reply(user_id, self._parser_unavailable_text())
            return

        conflict = self.try_begin_interactive_flow(
            user_id, AwaitingTimetableImage(issued_at=message.received_at),
        )
        if conflict is not None:
            await self._reply(user_id, _conflict_text(conflict))
            return
        await self._reply(
            user_id,
            "📸 Send me a clear photo or screenshot of your timetable.\n\n"
            "Send cancel to stop.",
        )

    async def _cmd_deleteuser(self, user: User, command: Command, message: InboundMessage) -> None:
        user_id = message.user_id
        if command.args.strip().lower() != "confirmed":
            await self._reply(
                user_id,
                "⚠️ This is irreversible! All of your data will be permanently deleted.\n\n"
                "To confirm, send exactly:\n/deleteuser confirmed",
            )
            return

        self._sessions.end(user_id)
        if self._users.delete_user_and_data(user_id):
            await self._reply(
                user_id,
                f"✅ Account deleted.\n\nAll data for {user.display_name} has been removed. "
                "We're sorry to see you go!",
            )
        else:
            await self._reply(user_id, "❌ Could not find an account to delete.")

    async def _cmd_cancel(self, user: User | None, command: Command, message: InboundMessage) -> None:
        session = self._sessions.end(message.user_id)
        if session is None:
            await self._reply(message.user_id, "Nothing to cancel.")
            return
        logger.info("User %d cancelled %s", message.user_id, type(session).__name__)
        await self._reply(message.user_id, f"👍 Cancelled your {session.label}.")

    async def _cmd_unknown(self, user: User | None, command: Command, message: InboundMessage) -> None:
        await self._reply(
            message.user_id, "❓ Unknown command.\n\nType /help to see all available commands.",
        )

    # ---------------------------------------------------------------------------
    # Registration
    # ---------------------------------------------------------------------------

    async def _prompt_registration_step(self, user: User) -> None:
        if user.registration_step is RegistrationStep.TIMEZONE:
            await self._reply(
                user.user_id,
                f"Nice to meet you, {user.display_name}! 👋\n\n"
                "What's your timezone? I use it to remind you at the right time.\n\n"
                + _TIMEZONE_EXAMPLES,
            )
        else:
            await self._reply(user.user_id, "To finish registering I still need your name. What's your name?")

    async def _continue_registration(self, user: User, text: str) -> None:
        if user.registration_step is RegistrationStep.NAME:
            name = capitalize_words(text)
            if not DISPLAY_NAME_MIN <= len(name) <= DISPLAY_NAME_MAX:
                await self._reply(
                    user.user_id,
                    f"❌ Please enter a valid name ({DISPLAY_NAME_MIN}-{DISPLAY_NAME_MAX} characters).\n\n"
                    "What's your name?",
                )
                return
            self._users.set_display_name(user.user_id, name)
            user.display_name = name
            user.registration_step = RegistrationStep.TIMEZONE
            await self._prompt_registration_step(user)
            return

        try:
            tz_name = normalize_timezone(text)
        except ValueError as exc:
            await self._reply(user.user_id, f"❌ {exc}\n\nPlease try again.\n{_TIMEZONE_EXAMPLES}")
            return

        self._users.complete_registration(user.user_id, tz_name)
        await self._reply(
            user.user_id,
            "🎉 Registration Complete!\n\n"
            f"✅ Name: {user.display_name}\n"
            f"🌍 Timezone: {tz_name}\n\n"
            "Add your first subject:\n"
            "/add Mathematics on Monday at 10:00 for 2\n\n"
            "or send /upload to import a timetable photo. Type /help for everything else.",
        )

    # ---------------------------------------------------------------------------
    # Flows
    # ---------------------------------------------------------------------------

    async def _continue_edit(self, session: EditSession, message: InboundMessage) -> None:
        reply = self._wizard.handle(session, message.text, message.received_at)
        if reply.finished:
            self._sessions.end(message.user_id)
        else:
            self._sessions.touch(message.user_id, message.received_at)
        await self._reply(message.user_id, reply.text)

    async def _resolve_confirmation(
        self, session: Session, confirmed: bool, message: InboundMessage,
    ) -> None:
        user_id = message.user_id
        self._sessions.end(user_id)

        if isinstance(session, PendingDeleteConfirmation):
            if not confirmed:
                await self._reply(user_id, f"👍 Removal of {session.subject_name} cancelled.")
                return
            subject = self._subjects.get_subject(session.subject_id)
            if subject is None or subject.user_id != user_id or not self._subjects.deactivate(subject.id):
                await self._reply(user_id, f"❌ {session.subject_name} was not found.")
                return
            await self._reply(
                user_id,
                f"✅ {session.subject_name} has been removed from your schedule.\n\n"
                "Your attendance history has been preserved.",
            )

        elif isinstance(session, PendingClearConfirmation):
            if not confirmed:
                await self._reply(user_id, "👍 Cancelled. Your subjects have not been removed.")
                return
            removed = self._subjects.deactivate_all(user_id)
            await self._reply(user_id, f"✅ Removed {removed} subjects.")

        elif isinstance(session, PendingImportConfirmation):
            if not confirmed:
                await self._reply(
                    user_id,
                    "❌ Timetable import cancelled. No classes were added.\n\n"
                    "You can still add subjects with /add.",
                )
                return
            await self._apply_import(session, user_id)

    async def _record_attendance(
        self, user: User, record: AttendanceRecord, outcome: AttendanceStatus, now: datetime,
    ) -> None:
        if not self._machine.resolve(record, outcome, now=now):
            await self._reply(user.user_id, "ℹ️ That class has already been recorded.")
            return

        subject = self._subjects.get_subject(record.subject_id)
        if subject is None:
            return

        class_day = date.fromisoformat(record.class_date).strftime("%A, %d %b")
        header = {
            AttendanceStatus.PRESENT: "✅ Marked present",
            AttendanceStatus.ABSENT: "❌ Marked absent",
            AttendanceStatus.MASS_SKIPPED: "🤪 Marked as mass bunk",
            AttendanceStatus.HOLIDAY: "🎉 Marked as holiday",
        }[outcome]
        text = f"{header}\n\n📚 {subject.name}\n📅 {class_day}\n\n"
        if outcome is AttendanceStatus.HOLIDAY:
            text += "This class doesn't count towards your attendance."
        else:
            text += (
                f"Current attendance: {subject.attendance_percentage}% "
                f"({subject.attended_classes}/{subject.total_classes})"
            )
            if outcome is AttendanceStatus.ABSENT and subject.attendance_percentage < self._threshold:
                text += f"\n\n⚠️ Your attendance is below {self._threshold}%."
        await self._reply(user.user_id, text)

    # -- timetable import -----------------------------------------------------

    def _parser_available(self) -> bool:
        return self._parser is not None and self._parser.is_available()

    @staticmethod
    def _parser_unavailable_text() -> str:
        return (
            "🤖 Timetable import isn't configured on this bot.\n\n"
            "Add your subjects with /add instead."
        )

    async def _begin_image_import(self, message: InboundMessage) -> None:
        if not self._parser_available():
            await self._reply(message.user_id, self._parser_unavailable_text())
            return
        conflict = self.try_begin_interactive_flow(
            message.user_id, AwaitingTimetableImage(issued_at=message.received_at),
        )
        if conflict is not None:
            await self._reply(message.user_id, _conflict_text(conflict))
            return
        await self._import_image(message)

    async def _import_image(self, message: InboundMessage) -> None:
        user_id = message.user_id
        await self._reply(user_id, "🔍 Reading your timetable. This may take a few seconds...")

        try:
            classes = await self._parser.parse(message.attachment)
        except TimetableParseError as exc:
            logger.warning("Timetable import for user %d failed: %s", user_id, exc)
            self._sessions.end(user_id)
            await self._reply(
                user_id,
                "❌ Sorry, I couldn't read that timetable.\n\n"
                "Try a clearer image, or add subjects with /add.",
            )
            return

        if not classes:
            self._sessions.end(user_id)
            await self._reply(
                user_id,
                "❌ I couldn't find any classes in that image.\n\n"
                "Make sure the text is readable, or add subjects with /add.",
            )
            return

        new, existing = [], []
        for parsed in classes:
            if self._subjects.find_active_by_name(user_id, parsed.subject, day=parsed.day) is None:
                new.append(parsed)
            else:
                existing.append(parsed)

        lines = [f"📋 I found {len(classes)} classes.\n"]
        if new:
            lines.append(f"🆕 {len(new)} new:")
            for index, parsed in enumerate(new, start=1):
                lines.append(
                    f"{index}. {parsed.subject} — {parsed.day} "
                    f"{parsed.start_time}-{parsed.end_time} ({parsed.duration_hours:g}h)"
                )
            lines.append("")
        if existing:
            lines.append(f"⚠️ {len(existing)} already in your schedule:")
            for parsed in existing:
                lines.append(f"• {parsed.subject} ({parsed.day} {parsed.start_time}-{parsed.end_time})")
            lines.append("")

        if not new:
            self._sessions.end(user_id)
            lines.append("Nothing new to add. Type /list to see your subjects.")
            await self._reply(user_id, "\n".join(lines))
            return

        self._sessions.replace(
            user_id,
            PendingImportConfirmation(issued_at=message.received_at, candidates=new),
        )
        lines.append("Add these classes? Reply yes to add them or no to cancel.")
        lines.append("⏰ This expires in 5 minutes.")
        await self._reply(user_id, "\n".join(lines))

    async def _apply_import(self, session: PendingImportConfirmation, user_id: int) -> None:
        added, skipped = [], []
        for parsed in session.candidates:
            if self._subjects.find_active_by_name(user_id, parsed.subject, day=parsed.day) is not None:
                skipped.append(parsed)
                continue
            self._subjects.add_subject(
                user_id, parsed.subject, parsed.day, parsed.start_time, parsed.duration_hours,
            )
            added.append(parsed)

        logger.info("Timetable import for user %d: %d added, %d skipped", user_id, len(added), len(skipped))
        lines = [f"🎉 Added {len(added)} classes."]
        for parsed in added:
            lines.append(f"• {parsed.subject} ({parsed.day} {parsed.start_time}-{parsed.end_time})")
        if skipped:
            lines.append(f"\n⚠️ Skipped {len(skipped)} that already exist.")
        lines.append("\nType /list to see your schedule.")
        await self._reply(user_id, "\n".join(lines))

    # ---------------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------------

    def _find_subject(
        self, user_id: int, raw: str, command: str,
    ) -> tuple[Subject | None, str]:
        """Look up an active subject by name, with an optional 'on <day>' suffix.

        Returns (subject, "") or (None, message to show the user).
        """
        name, day = raw.strip(), None
        match = _SUBJECT_ON_DAY_RE.match(name)
        if match is not None:
            try:
                day = normalize_day(match.group(2))
                name = match.group(1).strip()
            except ValueError:
                pass

        candidates = [
            subject for subject in self._subjects.list_active(user_id=user_id, day=day)
            if subject.name.lower() == name.lower()
        ]
        if not candidates:
            return None, f"❌ Subject '{capitalize_words(name)}' not found. Type /list to see your subjects."
        if len(candidates) > 1:
            days = ", ".join(subject.day for subject in candidates)
            return None, (
                f"You have {candidates[0].name} on several days ({days}).\n"
                f"Add the day, e.g. {command} {candidates[0].name} on {candidates[0].day}"
            )
        return candidates[0], ""

    @staticmethod
    def _no_subjects_text() -> str:
        return (
            "📚 No subjects yet.\n\n"
            "Use /add to add your first subject, or /upload to import a timetable photo."
        )

    async def _fallback(self, user: User, text: str) -> None:
        for phrase, response in _GREETINGS:
            if matches(text, (phrase,)):
                await self._reply(user.user_id, response)
                return

        if is_attendance_response(text):
            await self._reply(user.user_id, "🤔 I don't have any pending attendance questions for you.")
            return

        await self._reply(
            user.user_id,
            "🤔 I didn't understand that.\n\n"
            "Type /help to see available commands, or /add to add a subject.",
        )
