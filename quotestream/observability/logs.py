"""
Logging setup for quotestream components.
Console output plus an optional daily-rotated file.
"""

import os
import logging
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from quotestream.config import settings

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Log level name, defaults to QS_LOG_LEVEL
        log_file: Optional path of a daily-rotated log file (kept 7 days)

    Returns:
        The root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel((level or settings.QS_LOG_LEVEL).upper())
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(getattr(h, "_quotestream", False) for h in root_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._quotestream = True
        root_logger.addHandler(console)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)

        handler = TimedRotatingFileHandler(
            filename=log_file,
            when="midnight",
            interval=1,
            backupCount=7,
            encoding="utf-8"
        )
        handler.setFormatter(formatter)
        handler._quotestream = True
        root_logger.addHandler(handler)

        logger.info(f"Log rotation configured for {log_file} (daily, keep 7 days)")

    return root_logger
