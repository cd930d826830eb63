#!/usr/bin/env python3
"""
Safe Logger Wrapper for L4Proxy
Provides logging with graceful error handling so a broken log sink
never takes a relay down with it
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class SafeLogger:
    """
    Safe logger wrapper that prevents logging errors from crashing the proxy.
    Output is gated on the process-wide switch flipped by setup_safe_logging(),
    so loggers created at import time follow later configuration.
    """

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    @property
    def enabled(self) -> bool:
        return _logging_enabled

    def _safe_log(self, level: int, msg: Any, *args, **kwargs):
        """Safely log a message, ignoring any errors"""
        if not _logging_enabled:
            return

        try:
            self._logger.log(level, msg, *args, **kwargs)
        except Exception:
            # A failing handler must not break the caller
            pass

    def debug(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: Any, *args, exc_info=True, **kwargs):
        """Log exception safely"""
        self._safe_log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: Any, *args, **kwargs):
        self._safe_log(logging.CRITICAL, msg, *args, **kwargs)

# Global logging state
_logging_enabled = False
_loggers = {}

def check_log_writability(log_file: str) -> bool:
    """
    Check that the log file (or its directory) can be written.

    Returns:
        True if the file can be opened for append, False otherwise
    """
    try:
        directory = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(directory, exist_ok=True)
        with open(log_file, 'a'):
            pass
        return True
    except OSError:
        return False

def parse_size(size: str) -> int:
    """Parse a size such as '10MB' into bytes"""
    size = str(size).strip().upper()
    for suffix, factor in (('GB', 1024 ** 3), ('MB', 1024 ** 2), ('KB', 1024)):
        if size.endswith(suffix):
            return int(size[:-len(suffix)]) * factor
    return int(size)

def setup_safe_logging(enabled: bool = True, level: int = logging.INFO,
                       fmt: str = DEFAULT_FORMAT,
                       log_file: Optional[str] = None,
                       max_bytes: int = 10 * 1024 * 1024,
                       backup_count: int = 5) -> bool:
    """
    Setup safe logging system.

    Args:
        enabled: Whether to enable logging at all
        level: Root logging level
        fmt: Record format for every handler
        log_file: Optional rotating log file, skipped if not writable
        max_bytes: Rotation size for the log file
        backup_count: Number of rotated files kept

    Returns:
        True if logging was successfully enabled, False otherwise
    """
    global _logging_enabled
    _logging_enabled = False  # Start disabled

    if not enabled:
        return False

    root = logging.getLogger()
    try:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter(fmt)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

        if log_file:
            if check_log_writability(log_file):
                file_handler = RotatingFileHandler(
                    log_file,
                    maxBytes=max_bytes,
                    backupCount=backup_count
                )
                file_handler.setFormatter(formatter)
                root.addHandler(file_handler)
            else:
                print(f"Warning: Cannot write to {log_file} - file logging disabled")

        root.setLevel(level)
        _logging_enabled = True
        return True
    except Exception as e:
        print(f"Warning: Logging setup failed ({e}) - logging disabled")
        return False

def disable_safe_logging():
    """Turn all SafeLogger output off"""
    global _logging_enabled
    _logging_enabled = False

def get_safe_logger(name: str) -> SafeLogger:
    """
    Get a safe logger instance.

    Args:
        name: Logger name

    Returns:
        SafeLogger instance
    """
    if name not in _loggers:
        _loggers[name] = SafeLogger(name)
    return _loggers[name]

def is_logging_enabled() -> bool:
    """Check if logging is currently enabled"""
    return _logging_enabled
