"""Rotating logger setup for the bootstrap services."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logger(
    name: str = "booter",
    log_file: str = "/var/log/booter/booter.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int = logging.INFO,
) -> logging.Logger:
    """Setup rotating file logger plus console output with ISO 8601 timestamps.

    The console handler matters more than usual here: in Bootstrap the
    console is the only place an operator sees pivot/return progress.

    Args:
        name: Logger name (module loggers are children, e.g. "booter.pivot")
        log_file: Path to log file (created if doesn't exist)
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level

    Returns:
        Configured logger instance
    """
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers if already configured (serve re-enters after a return)
    if logger.handlers:
        return logger

    file_handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


def rebind_log_file(log_file: str, name: str = "booter") -> None:
    """Point the rotating file handler of logger name at log_file.

    After pivot_root the configured path names a file in the other root,
    so rotation would rename the wrong file. The stream is closed and
    reopened lazily at log_file on the next record.
    """
    for handler in logging.getLogger(name).handlers:
        if not isinstance(handler, RotatingFileHandler):
            continue
        handler.acquire()
        try:
            if handler.stream is not None:
                handler.stream.close()
                handler.stream = None
            handler.baseFilename = str(Path(log_file).absolute())
        finally:
            handler.release()
