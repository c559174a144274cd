from __future__ import annotations
import os
import sys
from typing import Optional
from loguru import logger

_CONFIGURED = False

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None, *, force: bool = False, enqueue: bool = True) -> None:
    """Configure loguru logger once based on arguments and environment variables.

    Env vars:
    - PUMPKINSCAN_LOG_LEVEL: log level (DEBUG/INFO/WARNING/ERROR), default INFO
    - PUMPKINSCAN_LOG_FILE: optional path to write logs in addition to stderr
    - PUMPKINSCAN_LOG_FORMAT: optional log format string for loguru

    Output goes to stderr: worker processes use stdout for their message stream.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    level = (level or os.getenv("PUMPKINSCAN_LOG_LEVEL", "INFO")).upper()
    fmt = os.getenv("PUMPKINSCAN_LOG_FORMAT", DEFAULT_FORMAT)
    # Remove default handler then add our sink(s)
    logger.remove()
    logger.add(sys.stderr, level=level, format=fmt, enqueue=enqueue)

    log_file = log_file or os.getenv("PUMPKINSCAN_LOG_FILE")
    if log_file:
        # Rotation daily by default
        logger.add(log_file, level=level, format=fmt, rotation="00:00", retention="7 days", enqueue=enqueue)

    _CONFIGURED = True


__all__ = ["setup_logging", "logger"]
