"""Shared logger for the scriptorium package."""

import logging
import sys

LOGGER_NAME = "scriptorium"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(LOGGER_NAME)


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Attach a stream handler to the package logger.

    Calling this more than once only updates the level.
    """
    logger.setLevel(level.upper())
    if not any(getattr(h, "_scriptorium", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._scriptorium = True
        logger.addHandler(handler)
    return logger
