"""
Centralized logging configuration.

Modules obtain loggers through ``get_logger(__name__)``; entry points (API
startup, CLI) call ``setup_logging`` once.
"""
import logging
import sys
from pathlib import Path
from typing import Optional


_configured = False


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    include_timestamp: bool = True,
    force: bool = False
) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Logging level name. Falls back to settings.log_level.
        log_file: Optional log file path. Falls back to settings.log_file.
        include_timestamp: Whether to include timestamps in records
        force: Reconfigure even if logging was already set up
    """
    global _configured
    if _configured and not force:
        return

    from config.settings import settings

    level_str = (log_level or settings.log_level or "INFO").upper()
    level = getattr(logging, level_str, logging.INFO)
    log_file = log_file or settings.log_file

    if include_timestamp:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter('%(name)s - %(levelname)s - %(message)s')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Third-party chatter
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)
    logging.getLogger('PIL').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name, usually ``__name__``

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
