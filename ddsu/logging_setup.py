"""Logging configuration for the DDSU Modbus monitor"""

import logging
from logging.handlers import RotatingFileHandler
import sys
from typing import Optional

LOGGER_NAME = "ddsu_modbus_monitor"

_logger: Optional[logging.Logger] = None


def setup_logging(log_level: str = "INFO", log_file: str = None,
                  console: bool = True) -> logging.Logger:
    """
    Setup and configure logging for the monitor.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for logging output
        console: Log to stderr; off when only the file should receive records

    Returns:
        Configured logger instance
    """
    global _logger

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Reconfiguring replaces previous handlers
    logger.handlers = []

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # stdout is reserved for --print output, diagnostics go to stderr
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    # 5MB per file, 3 backups
    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=3
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """Return the monitor logger, configuring a default one on first use."""
    global _logger

    if _logger is None:
        _logger = setup_logging()

    return _logger
