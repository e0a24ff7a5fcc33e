"""Logging configuration for applications embedding bridgecast.

Library modules only ever call ``logging.getLogger("bridgecast.<module>")``
or use the logger injected into them; configuring handlers is left to the
host or companion application, which calls ``configure_logging()`` once at
startup.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Configure root logging and return the ``bridgecast`` logger.

    Args:
        level: Log level name or number. Defaults to ``Settings.log_level``.

    Returns:
        The package logger.
    """
    if level is None:
        from bridgecast.config import get_settings

        level = get_settings().log_level

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
    )
    logger = logging.getLogger("bridgecast")
    logger.setLevel(level)
    return logger
