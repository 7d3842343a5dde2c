"""Logging configuration for the service process."""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Attach a stdout handler to the package logger.

    Calling this more than once (one call per ``create_app``) replaces the
    handler instead of stacking duplicates.

    Args:
        level: Logging level name, e.g. ``"INFO"`` or ``"DEBUG"``

    Returns:
        The configured ``filedrop`` logger
    """
    logger = logging.getLogger("filedrop")
    logger.setLevel(level.upper())
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return logger
