"""
Logging setup.

Every module logs through the shared loguru ``logger``; entry points call
``configure_logging`` once to choose sinks and level.
"""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from config import Settings

CONSOLE_FORMAT = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def configure_logging(settings: Settings, level: str | None = None) -> None:
    """
    Replace the default loguru sink with a stderr sink and an optional file sink.

    Args:
        settings: Provides ``log_level`` and ``log_file``
        level: Overrides ``settings.log_level`` for the console sink
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level or settings.log_level,
        format=CONSOLE_FORMAT,
    )

    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.log_file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )
