"""
Logging setup. stdout carries protocol traffic, so logs go to stderr.
"""

import logging
import sys
from typing import Optional, TextIO

LOGGER_NAME = "mcp_filter_proxy"
DEFAULT_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def setup_logging(
    level: str = "INFO",
    format_string: str = DEFAULT_FORMAT,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Configure the root handler and return the package logger.

    Unknown level names fall back to INFO.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=format_string,
        stream=stream or sys.stderr,
        force=True,
    )

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric_level)
    return logger


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    return logging.getLogger(name)
