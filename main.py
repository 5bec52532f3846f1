"""
Attendance Bot — Entry Point.

`python main.py` (or the `attendance-bot` console script) starts polling
Telegram together with the periodic attendance passes. Log verbosity comes
from LOG_LEVEL in .env.
"""

from attendance_bot.bot.telegram_bot import main

if __name__ == "__main__":
    main()
