"""
Logging configuration for the Map Scraper service.

Console output is colored; a rotating service log and a separate rotating
error log are written under ``config.LOG_DIR``.
"""

import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from api.config import config

LOG_DIR = Path(config.LOG_DIR)
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_LEVEL = config.LOG_LEVEL

CONSOLE_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
FILE_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Copy so file handlers sharing the record see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def _rotating_file(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(name: str = "map_scraper") -> logging.Logger:
    """
    Configure and return the service logger.

    Handlers are attached once; later calls with the same name return the
    already configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    logger.addHandler(_rotating_file(LOG_DIR / f"{name}.log", logging.DEBUG))
    logger.addHandler(_rotating_file(LOG_DIR / f"{name}_errors.log", logging.ERROR))

    return logger


# Create default logger
logger = setup_logging()


def attach_package_loggers(*packages: str):
    """Route module loggers (``logging.getLogger(__name__)``) through the service handlers."""
    for package in packages:
        package_logger = logging.getLogger(package)
        package_logger.setLevel(logger.level)
        for handler in logger.handlers:
            if handler not in package_logger.handlers:
                package_logger.addHandler(handler)
        package_logger.propagate = False


def log_request(method: str, path: str, status_code: int = None, duration_ms: float = None):
    """Log an HTTP request."""
    if duration_ms is None:
        logger.info(f"HTTP {method} {path} -> {status_code}")
    else:
        logger.info(f"HTTP {method} {path} -> {status_code} ({duration_ms:.2f}ms)")


def log_job_event(job_id: str, event: str, message: str, level: str = "INFO"):
    """Log a scrape job lifecycle event."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.log(log_level, f"Job [{job_id}] {event}: {message}")


def log_browser_event(session_id: str, event: str, details: str = None):
    """Log a browser automation event."""
    logger.debug(f"Browser [{session_id}] {event}: {details}" if details else f"Browser [{session_id}] {event}")
