"""Rotating logger setup for the upgrade agent."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Client libraries that log every request at DEBUG/INFO
NOISY_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore")


def setup_logger(
    name: str = "ibu",
    log_file: str = "./logs/ibu.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int = logging.INFO,
) -> logging.Logger:
    """Setup rotating file logger with ISO 8601 timestamps.

    Child loggers (``ibu.stage_controller``, ``ibu.cluster_config`` ...)
    propagate to the logger configured here.

    Args:
        name: Logger name
        log_file: Path to log file (created if doesn't exist)
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level

    Returns:
        Configured logger instance
    """
    # Create logs directory if it doesn't exist
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Create logger
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers if already configured
    if logger.handlers:
        return logger

    # Rotating file handler, survives agent restarts across reboots
    file_handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)

    # Console handler, picked up by journald when run as a unit
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    # ISO 8601 timestamp format
    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    # Add handlers
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    # Kube and HTTP clients stay quiet unless debugging
    if level > logging.DEBUG:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
