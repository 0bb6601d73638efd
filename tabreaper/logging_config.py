from __future__ import annotations

import logging
import os
import sys
from typing import Optional, TextIO

from loguru import logger


LOG_LEVEL_ENV = "TABREAPER_LOG_LEVEL"
DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

_configured = False


class _InterceptHandler(logging.Handler):
    """Forward standard logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    *,
    level: Optional[str] = None,
    force: bool = False,
    sink: TextIO = sys.stderr,
    fmt: Optional[str] = None,
) -> None:
    """
    Configure a single global loguru sink for the whole project.

    - level: minimum level; falls back to $TABREAPER_LOG_LEVEL, then INFO.
    - force: reconfigure even if already configured.
    - sink: stream to write to.
    - fmt: optional custom format.
    """
    global _configured

    if _configured and not force:
        return

    resolved = (level or os.getenv(LOG_LEVEL_ENV) or "INFO").upper()

    logger.remove()
    logger.add(
        sink,
        level=resolved,
        colorize=sink.isatty() if hasattr(sink, "isatty") else False,
        format=fmt or DEFAULT_FORMAT,
    )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    _configured = True
