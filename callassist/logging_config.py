"""
Logging setup for the call-assist server.

- Console: everything at LOG_LEVEL.
- File: optional (LOG_FILE), same level, full timestamps.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

from callassist.config import Settings

_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> Path | None:
    """
    Install console (and optional file) handlers on the root logger.

    Returns the log file path, or None when logging to console only.
    """
    level = logging.getLevelName((settings.LOG_LEVEL or "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    root.addHandler(console_handler)

    log_path: Path | None = None
    if (settings.LOG_FILE or "").strip():
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        root.addHandler(file_handler)

    # aiohttp/httpx are chatty at DEBUG; keep them at WARNING unless asked
    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("aiohttp").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured (level=%s, file=%s)", logging.getLevelName(level), log_path or "-"
    )
    return log_path
