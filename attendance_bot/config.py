"""
Attendance Bot — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from attendance_bot/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # LLM vision for timetable images — provider-agnostic (gemini, anthropic, openai)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str = ""        # empty → image import disabled

    # SQLite
    DATABASE_PATH: str = "data/attendance.db"

    # Security (empty → anyone may register)
    ALLOWED_USER_IDS: list[int] = []

    # Users
    DEFAULT_TIMEZONE: str = "Asia/Kolkata"

    # Attendance lifecycle timing
    REMINDER_MINUTES_BEFORE: int = 10
    CONFIRMATION_MINUTES_AFTER: int = 10
    AUTO_ABSENT_HOURS: int = 2

    # Low attendance alerts
    LOW_ATTENDANCE_THRESHOLD: int = 75
    LOW_ATTENDANCE_ALERT_HOUR: int = 18   # UTC

    # Logging
    LOG_LEVEL: str = "INFO"

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "REMINDER_MINUTES_BEFORE",
        "CONFIRMATION_MINUTES_AFTER",
        "AUTO_ABSENT_HOURS",
        mode="before",
    )
    @classmethod
    def parse_non_negative(cls, v: str | int) -> int:
        value = int(v)
        if value < 0:
            raise ValueError("timing settings must be non-negative")
        return value

    @field_validator("LOW_ATTENDANCE_THRESHOLD", mode="before")
    @classmethod
    def parse_threshold(cls, v: str | int) -> int:
        value = int(v)
        if not 0 < value < 100:
            raise ValueError("LOW_ATTENDANCE_THRESHOLD must be between 1 and 99")
        return value

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def parse_log_level(cls, v: str) -> str:
        level = str(v).strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {v!r}")
        return level

    @field_validator("LOW_ATTENDANCE_ALERT_HOUR", mode="before")
    @classmethod
    def parse_hour(cls, v: str | int) -> int:
        value = int(v)
        if not 0 <= value <= 23:
            raise ValueError("LOW_ATTENDANCE_ALERT_HOUR must be 0-23")
        return value


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=os.getenv("LLM_API_KEY", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/attendance.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        DEFAULT_TIMEZONE=os.getenv("DEFAULT_TIMEZONE", "Asia/Kolkata"),
        REMINDER_MINUTES_BEFORE=os.getenv("REMINDER_MINUTES_BEFORE", "10"),
        CONFIRMATION_MINUTES_AFTER=os.getenv("CONFIRMATION_MINUTES_AFTER", "10"),
        AUTO_ABSENT_HOURS=os.getenv("AUTO_ABSENT_HOURS", "2"),
        LOW_ATTENDANCE_THRESHOLD=os.getenv("LOW_ATTENDANCE_THRESHOLD", "75"),
        LOW_ATTENDANCE_ALERT_HOUR=os.getenv("LOW_ATTENDANCE_ALERT_HOUR", "18"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )


# Singleton — imported by all other modules as:
#   from attendance_bot.config import settings
settings = _load_settings()
