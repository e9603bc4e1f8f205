"""
Shared logger for the gateway service.

Every module does ``from logger import logger`` so there is exactly one
handler on stderr (stdout is left alone for the agent transport).
"""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logger: logging.Logger = logging.getLogger("mongo_gateway")

if not logger.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(_handler)
    logger.propagate = False

logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())


def set_log_level(level) -> None:
    """Accepts ``logging.DEBUG`` style ints or names like ``"debug"``."""
    if isinstance(level, str):
        level = level.upper()
    logger.setLevel(level)
