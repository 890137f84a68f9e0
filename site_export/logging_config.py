"""Logging utilities with structured logging, masking and the per-session run log"""

import logging
import re
import sys
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from typing import Iterator, Optional

from pythonjsonlogger import jsonlogger


PACKAGE_LOGGER = "site_export"
RUN_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_URL_PASSWORD = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.\-]*://[^:/@\s]+):[^@\s]+@")
_BEARER = re.compile(r"Bearer [A-Za-z0-9._\-]+")


def mask_sensitive_data(text: str) -> str:
    """Mask credentials embedded in URLs and bearer tokens"""
    text = _URL_PASSWORD.sub(r"\g<scheme>:****@", text)
    text = _BEARER.sub("Bearer ****", text)
    return text


class MaskingFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that masks sensitive data"""

    def format(self, record):
        record.msg = mask_sensitive_data(str(record.msg))
        return super().format(record)


class RunLogFormatter(logging.Formatter):
    """Human-readable formatter for the run log artifact"""

    def format(self, record):
        return mask_sensitive_data(super().format(record))


def setup_logging(level=logging.INFO, json_format: bool = True):
    """Set up console logging with masking"""

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if json_format:
        formatter = MaskingFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    else:
        formatter = RunLogFormatter(RUN_LOG_FORMAT)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str):
    """Get a logger instance"""
    return logging.getLogger(name)


@contextmanager
def session_log(path: Optional[str], max_bytes: int = 10 * 1024 * 1024) -> Iterator[Optional[logging.Handler]]:
    """
    Attach the session's run log to the package logger for one slice.

    The handler appends, so the run log accumulates across slices until it
    reaches ``max_bytes`` and rotates once.

    Args:
        path: Run log file; nothing is attached when None
        max_bytes: Rotation threshold
    """
    if not path:
        yield None
        return

    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=1, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(RunLogFormatter(RUN_LOG_FORMAT))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    previous_level = package_logger.level
    if package_logger.getEffectiveLevel() > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.addHandler(handler)
    try:
        yield handler
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous_level)
        handler.close()
