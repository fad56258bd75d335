"""Logging configuration for the offlinectl package."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

NOISY_LOGGERS = ('paramiko', 'urllib3', 'kubernetes', 'ansible_runner')


def setup_logging(
    debug_mode: bool = False,
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 100,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the root logger for a CLI run.

    Args:
        debug_mode: Force DEBUG level and keep library loggers verbose
        level: Log level name used when not in debug mode
        log_file: Optional path of a rotating log file
        max_size_mb: Maximum log file size in MB before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The root logger
    """
    log_level = logging.DEBUG if debug_mode else getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    # Called again once the config file is read; add each handler only once
    ours = [h for h in root.handlers if getattr(h, '_offlinectl', False)]
    if not any(not isinstance(h, RotatingFileHandler) for h in ours):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        handler._offlinectl = True
        root.addHandler(handler)

    if log_file and not any(isinstance(h, RotatingFileHandler) for h in ours):
        path = Path(log_file).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        file_handler._offlinectl = True
        root.addHandler(file_handler)

    # Disable debug logging for noisy libraries
    if not debug_mode:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return root
