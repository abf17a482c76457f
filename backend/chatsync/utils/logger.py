"""
Logging utilities.

WHAT: Centralized logging configuration
WHY: Disconnects, dropped frames and retry attempts must be visible in one place
HOW: Python logging with console and optional file handler, chatty client libraries capped
"""

import logging
import sys
from pathlib import Path

from ..core.config import settings

# HTTP/WebSocket client libraries log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "aiohttp.access", "aiohttp.client")


def setup_logging(level: str | None = None, log_file: str | None = None):
    """
    Configure application logging.

    Args:
        level: Root level name; defaults to settings.LOG_LEVEL
        log_file: Log file path; defaults to settings.LOG_FILE, empty disables the file handler
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_path = settings.LOG_FILE if log_file is None else log_file

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(console_handler)

    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(pathname)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root_logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized (level={level_name}, file={log_path or 'disabled'})")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
