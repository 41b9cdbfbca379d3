"""
Logging Configuration Module
Root logger setup shared by the API process and the command-line scripts.
"""

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from activity_sync.config_manager import ConfigManager

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Chatty at INFO: HTTP pools, SQL echo, APScheduler job runs, Flask dev server
NOISY_LOGGERS = ('urllib3', 'requests', 'sqlalchemy.engine', 'apscheduler', 'werkzeug')

_setup_lock = threading.Lock()
_configured = False


def _resolve_level(level) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level or 'INFO').upper(), logging.INFO)


def setup_logging(level: Optional[str] = None, force: bool = False) -> None:
    """
    Configure the root logger from the 'logging' config section.

    Runs once per process; later calls are no-ops unless ``force`` is set.

    Args:
        level: Level name overriding the configured one (e.g. 'DEBUG' from a CLI flag)
        force: Replace handlers installed by an earlier call
    """
    global _configured

    with _setup_lock:
        if _configured and not force:
            return

        log_config = ConfigManager().get_logging_config()
        log_level = _resolve_level(level or log_config.get('level'))
        formatter = logging.Formatter(log_config.get('format') or DEFAULT_FORMAT)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        # An empty 'file' disables file output
        log_file = log_config.get('file')
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=int(log_config.get('max_bytes', 10485760)),
                backupCount=int(log_config.get('backup_count', 5))
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

        _configured = True

    get_logger(__name__).debug(f"Logging configured at {logging.getLevelName(log_level)}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the specified module.

    Args:
        name: Module name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
