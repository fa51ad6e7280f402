# Logger - Centralized Logging System
# Singleton registry so every component gets exactly one set of handlers

"""
Logger Module

Responsibilities:
- Setup centralized logging with singleton pattern
- Configure log levels
- Configure log handlers (file, console)
- Log formatting
- Prevent duplicate handler registration
"""

import logging
import sys
import atexit
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

# Global registry to track configured loggers
_configured_loggers = {}

# Process-wide overrides applied by configure_logging() (set from main.py)
_default_level: Optional[str] = None
_default_log_file: Optional[str] = None

def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """
    Set process-wide level and log file for loggers created afterwards.

    Already configured loggers get their level updated; a file handler is
    attached to them if they don't have one yet.
    """
    global _default_level, _default_log_file
    _default_level = level
    _default_log_file = log_file

    for logger in _configured_loggers.values():
        logger.setLevel(getattr(logging, level.upper()))
        if log_file and not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
            logger.addHandler(_build_file_handler(log_file))

def _formatter() -> logging.Formatter:
    return logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

def _build_file_handler(log_file: str) -> RotatingFileHandler:
    # Ensure log directory exists
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10485760,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(_formatter())
    file_handler.setLevel(logging.DEBUG)  # File gets all levels
    return file_handler

def setup_logger(name: str = "botlogin", level: str = "INFO", log_file: str = None):
    """
    Setup logger with console and file handlers (singleton pattern)

    Returns the existing logger if one was already configured under this name,
    so components can call it from __init__ without stacking handlers.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path

    Returns:
        Configured logger instance (existing or new)
    """
    if name in _configured_loggers:
        return _configured_loggers[name]

    logger = logging.getLogger(name)

    if logger.handlers:
        _configured_loggers[name] = logger
        return logger

    level = _default_level or level
    log_file = log_file or _default_log_file

    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False  # Prevent propagation to root logger

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(_formatter())
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    # File handler with rotation (if specified)
    if log_file:
        logger.addHandler(_build_file_handler(log_file))

    def cleanup_handlers():
        """Close all handlers properly to prevent resource leaks."""
        for handler in logger.handlers[:]:
            try:
                handler.close()
                logger.removeHandler(handler)
            except Exception:
                pass  # Ignore errors during interpreter shutdown

    atexit.register(cleanup_handlers)

    _configured_loggers[name] = logger

    return logger

def get_logger(name: str = "botlogin"):
    """
    Get existing logger or create new one if not exists.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    if name in _configured_loggers:
        return _configured_loggers[name]
    return setup_logger(name)
