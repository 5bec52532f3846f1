"""Timetable port — abstract interface for extracting classes from an image.

Core modules depend on this protocol, never on a specific vision provider.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from attendance_bot.core.timetable_parser import ParsedClass


class TimetableParseError(Exception):
    """Raised when a timetable image could not be turned into classes."""


class TimetableParserPort(Protocol):
    """Abstract timetable extraction interface used by core modules."""

    def is_available(self) -> bool: ...

    async def parse(self, image: bytes) -> list[ParsedClass]: ...
