"""Logging setup using loguru: human-readable console + JSON file output.

Every stream session logs through a logger bound with its ``session`` id so
that interleaved reconnect chatter from several cameras stays attributable.
"""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

_DEFAULT_SESSION = "-"


def setup_logging(level: str | None = None, log_file: str | None = "logs/camfeed.log") -> None:
    """Configure loguru with console and optional file sinks.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR). None falls back
            to the configured ``log_level``.
        log_file: Path for JSON log file. None to disable file logging.
    """
    if level is None:
        from src.config import get_settings

        level = get_settings().log_level

    logger.remove()
    logger.configure(extra={"session": _DEFAULT_SESSION})

    # Console: human-readable with color
    console_fmt = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level:<8}</level> | "
        "<magenta>{extra[session]}</magenta> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )
    logger.add(sys.stderr, level=level, format=console_fmt)

    # File: JSON for machine parsing
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format="{message}",
            serialize=True,
            rotation="50 MB",
            retention="7 days",
        )


def session_logger(session_id: str):
    """Return a logger bound to a stream session id."""
    return logger.bind(session=session_id)
