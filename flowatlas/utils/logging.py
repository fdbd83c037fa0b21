"""
Migration Flow Atlas - Logging Configuration

One named logger per entry point (flow_build, api). Its handlers are also
installed on the root logger, so module loggers from get_logger(__name__)
write to the same stream and file.

Production lines are JSON (python-json-logger); other environments get
readable single-line output.
"""

import logging
import os
import sys
from datetime import datetime
from typing import List

from pythonjsonlogger import jsonlogger

from config.settings import get_settings

settings = get_settings()

# Chatty at INFO during artifact fetches and boundary reads
QUIET_LOGGERS = ("urllib3", "pyogrio", "fiona")


def _formatter() -> logging.Formatter:
    if settings.ENVIRONMENT == "production":
        return jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    return logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    )


def _handlers(name: str) -> List[logging.Handler]:
    formatter = _formatter()

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    handlers: List[logging.Handler] = [stream]

    if settings.LOG_DIR:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d")
        file_handler = logging.FileHandler(os.path.join(settings.LOG_DIR, f"{name}_{stamp}.log"))
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    return handlers


def setup_logging(name: str = "flow_atlas") -> logging.Logger:
    """
    Configure logging for one entry point.

    Args:
        name: Logger name, also the log file prefix

    Returns:
        Configured logger
    """
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    handlers = _handlers(name)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers = list(handlers)
    logger.propagate = False

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = list(handlers)

    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(logging.WARNING, level))

    return logger


def get_logger(module_name: str) -> logging.Logger:
    return logging.getLogger(module_name)
