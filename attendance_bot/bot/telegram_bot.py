"""
Attendance Bot — Telegram Bot.

Telegram is the only user interface. Every update (commands, plain text
replies, timetable photos) is turned into an InboundMessage and handed to the
ConversationCoordinator; proactive messages (reminders, confirmations,
alerts) come from the periodic passes registered on the JobQueue.

Security: when ALLOWED_USER_IDS is set, everyone else is silently ignored.
"""

from __future__ import annotations

import logging
from datetime import time as dt_time
from datetime import timedelta, timezone
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    ContextTypes,
    MessageHandler,
    filters,
)

from attendance_bot.config import settings
from attendance_bot.core.conversation import ConversationCoordinator, InboundMessage

if TYPE_CHECKING:
    from attendance_bot.core.scheduler import AttendanceScheduler
    from attendance_bot.ports.notification_port import NotificationPort
    from attendance_bot.ports.timetable_port import TimetableParserPort

logger = logging.getLogger(__name__)

# Cadences of the periodic passes.
REMINDER_INTERVAL = timedelta(minutes=1)
CONFIRMATION_INTERVAL = timedelta(minutes=1)
OVERDUE_INTERVAL = timedelta(minutes=30)
SESSION_SWEEP_INTERVAL = timedelta(minutes=5)

# A tick that fires while the previous one is still running is dropped.
_JOB_KWARGS = {"max_instances": 1, "coalesce": True}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    An empty ALLOWED_USER_IDS means the bot is open to everyone. Strangers
    never get a response, so the bot does not reveal its existence to them.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        allowed = settings.ALLOWED_USER_IDS
        if user is None or (allowed and user.id not in allowed):
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Update → InboundMessage
# ---------------------------------------------------------------------------


async def _download_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bytes | None:
    """Fetch the largest size of an attached photo (or image document)."""
    message = update.effective_message
    file_id: str | None = None
    if message.photo:
        file_id = message.photo[-1].file_id
    elif message.document and (message.document.mime_type or "").startswith("image/"):
        file_id = message.document.file_id
    if file_id is None:
        return None

    telegram_file = await context.bot.get_file(file_id)
    return bytes(await telegram_file.download_as_bytearray())


@authorized_only
async def handle_update(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle every incoming message: commands, text and photos."""
    coordinator: ConversationCoordinator = context.bot_data["coordinator"]
    message = update.effective_message
    user = update.effective_user
    if message is None:
        return

    try:
        attachment = await _download_photo(update, context)
    except TelegramError as exc:
        logger.error("Photo download failed for user %d: %s", user.id, exc)
        await message.reply_text("Sorry, I couldn't download that image. Please try again.")
        return

    inbound = InboundMessage(
        user_id=user.id,
        text=message.text or message.caption or "",
        received_at=message.date.astimezone(timezone.utc),
        display_name=user.full_name,
        attachment=attachment,
    )
    await coordinator.handle(inbound)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    notifier: NotificationPort | None = None,
    timetable_parser: TimetableParserPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers and jobs.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        timetable_parser: Timetable port implementation. Defaults to the
                  vision-LLM parser configured through settings.
    """
    from attendance_bot.core.attendance import AttendanceStateMachine
    from attendance_bot.core.scheduler import AttendanceScheduler
    from attendance_bot.core.sessions import SessionStore
    from attendance_bot.data.db import AttendanceDB, SubjectDB, UserDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from attendance_bot.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    if timetable_parser is None:
        from attendance_bot.core.timetable_parser import LLMTimetableParser
        timetable_parser = LLMTimetableParser()

    users = UserDB(settings.DATABASE_PATH)
    subjects = SubjectDB(settings.DATABASE_PATH)
    state_machine = AttendanceStateMachine(
        AttendanceDB(settings.DATABASE_PATH),
        confirmation_delay=timedelta(minutes=settings.CONFIRMATION_MINUTES_AFTER),
        auto_absent_after=timedelta(hours=settings.AUTO_ABSENT_HOURS),
    )
    sessions = SessionStore()

    coordinator = ConversationCoordinator(
        notifier=notifier,
        users=users,
        subjects=subjects,
        state_machine=state_machine,
        sessions=sessions,
        timetable_parser=timetable_parser,
        default_timezone=settings.DEFAULT_TIMEZONE,
        low_attendance_threshold=settings.LOW_ATTENDANCE_THRESHOLD,
    )
    scheduler = AttendanceScheduler(
        notifier=notifier,
        users=users,
        subjects=subjects,
        state_machine=state_machine,
        sessions=sessions,
        reminder_lead=timedelta(minutes=settings.REMINDER_MINUTES_BEFORE),
        low_attendance_threshold=settings.LOW_ATTENDANCE_THRESHOLD,
    )

    # Store collaborators in bot_data for handler access
    app.bot_data["notifier"] = notifier
    app.bot_data["coordinator"] = coordinator
    app.bot_data["scheduler"] = scheduler

    app.add_handler(
        MessageHandler(
            filters.UpdateType.MESSAGE
            & (filters.TEXT | filters.COMMAND | filters.PHOTO | filters.Document.IMAGE),
            handle_update,
        )
    )

    _setup_jobs(app, scheduler)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_jobs(app: Application, scheduler: AttendanceScheduler) -> None:
    """Register the periodic attendance passes on the JobQueue."""

    async def _reminder_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.run_reminder_pass()

    async def _confirmation_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.run_confirmation_pass()

    async def _overdue_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.run_overdue_pass()

    async def _low_attendance_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.run_low_attendance_pass()

    async def _session_sweep_job(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.run_session_sweep()

    jobs = app.job_queue
    jobs.run_repeating(
        _reminder_job, interval=REMINDER_INTERVAL, first=1,
        name="class_reminders", job_kwargs=_JOB_KWARGS,
    )
    jobs.run_repeating(
        _confirmation_job, interval=CONFIRMATION_INTERVAL, first=1,
        name="attendance_confirmations", job_kwargs=_JOB_KWARGS,
    )
    jobs.run_repeating(
        _overdue_job, interval=OVERDUE_INTERVAL, first=10,
        name="overdue_attendance", job_kwargs=_JOB_KWARGS,
    )
    jobs.run_repeating(
        _session_sweep_job, interval=SESSION_SWEEP_INTERVAL, first=SESSION_SWEEP_INTERVAL,
        name="session_sweep", job_kwargs=_JOB_KWARGS,
    )

    alert_time = dt_time(hour=settings.LOW_ATTENDANCE_ALERT_HOUR, minute=0, tzinfo=timezone.utc)
    jobs.run_daily(
        _low_attendance_job, time=alert_time,
        name="low_attendance_alerts", job_kwargs=_JOB_KWARGS,
    )

    logger.info(
        "Scheduled passes: reminders/confirmations every minute, overdue every 30 min, "
        "session sweep every 5 min, low attendance daily at %02d:00 UTC",
        settings.LOW_ATTENDANCE_ALERT_HOUR,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Attendance Bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
