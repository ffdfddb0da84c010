"""
Logging configuration for System Updater.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import logging
import os
import re
import sys
import threading
from datetime import datetime
from typing import Optional, Dict, Any


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'      # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        log_color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset_color = self.COLORS['RESET']

        # Work on a copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{log_color}{record.levelname}{reset_color}"

        return super().format(record)


# Global configuration for logging with thread synchronization
_global_config: Optional[Dict[str, Any]] = None
_log_file_path: Optional[str] = None
_logger_instances: Dict[str, logging.Logger] = {}
_global_state_lock = threading.RLock()

# Rate limiting for security events
_security_event_counts: Dict[str, Dict[str, Any]] = {}
_security_rate_limit_window = 60  # seconds
_security_rate_limit_max = 10  # max events per window

# Patterns redacted from every message before it reaches a handler
_SENSITIVE_PATTERNS = [
    (r'/home/[^/\s]+', '/home/[USER]'),
    (r'https?://[^:/\s]+:[^@\s]+@', 'https://[CREDENTIALS]@'),
    (r'\bgh[pousr]_[A-Za-z0-9]{20,}\b', '[GITHUB_TOKEN]'),
    (r'\bgithub_pat_[A-Za-z0-9_]{20,}\b', '[GITHUB_TOKEN]'),
    (r'(?i)(token|password|secret|api_?key)(["\s]*[:=]["\s]*)[^\s"\']+', r'\1\2[REDACTED]'),
    (r'(?i)bearer\s+[^\s"\']+', 'bearer [REDACTED]'),
]


def _level_from_config() -> int:
    if not _global_config:
        return logging.INFO
    debug = _global_config.get('verbose_logging', False) or _global_config.get('debug_mode', False)
    return logging.DEBUG if debug else logging.INFO


def _console_level_from_config() -> int:
    # The CLI may raise the console threshold without touching the file log
    if _global_config and _global_config.get("console_level") is not None:
        return max(int(_global_config["console_level"]), _level_from_config())
    return _level_from_config()


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    return handler


def set_global_config(config: Dict[str, Any]) -> None:
    """
    Set global configuration for logging with thread safety.

    File logging is enabled when either ``verbose_logging`` or ``debug_mode``
    is set; logs go to a timestamped file under the config directory.

    Args:
        config: Configuration dictionary
    """
    global _global_config, _log_file_path
    with _global_state_lock:
        _global_config = dict(config)
        _log_file_path = None

        if config.get('verbose_logging') or config.get('debug_mode'):
            from ..constants import get_config_dir
            log_dir = get_config_dir() / 'logs'
            try:
                log_dir.mkdir(parents=True, exist_ok=True)
                os.chmod(log_dir, 0o700)
                timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
                _log_file_path = str(log_dir / f'system_updater_{timestamp}.log')
            except OSError:
                # Console logging still works without a log directory
                _log_file_path = None

        _reconfigure_all_loggers()


def _reconfigure_all_loggers() -> None:
    """Reconfigure all existing loggers with new settings."""
    # Called from set_global_config with the lock held
    level = _level_from_config()
    for logger in _logger_instances.values():
        logger.setLevel(level)
        for handler in list(logger.handlers):
            if isinstance(handler, logging.FileHandler):
                logger.removeHandler(handler)
                handler.close()
            else:
                handler.setLevel(_console_level_from_config())
        if _log_file_path:
            try:
                logger.addHandler(_file_handler(_log_file_path, level))
            except OSError:
                pass


def get_logger(name: str) -> logging.Logger:
    """
    Get or create a logger instance with thread safety.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    with _global_state_lock:
        if name in _logger_instances:
            return _logger_instances[name]

        level = _level_from_config()

        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.handlers.clear()

        # Console handler (use stderr for logs)
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(_console_level_from_config())
        console_handler.setFormatter(ColoredFormatter('%(levelname)s - %(name)s - %(message)s'))
        logger.addHandler(console_handler)

        if _log_file_path:
            try:
                logger.addHandler(_file_handler(_log_file_path, level))
            except OSError:
                # Don't log this error to avoid recursion
                pass

        # Prevent propagation to avoid duplicate messages
        logger.propagate = False

        _logger_instances[name] = logger
        return logger


def sanitize_log_message(message: Any, max_length: int = 1000) -> str:
    """
    Sanitize a log message to prevent information disclosure.

    Home directories, URL credentials and API tokens are redacted, control
    characters are replaced and overly long messages are truncated.

    Args:
        message: Original log message
        max_length: Maximum length of the returned message

    Returns:
        Sanitized log message
    """
    sanitized = str(message)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, replacement, sanitized)

    sanitized = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]', '[CTRL]', sanitized)
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + '... [TRUNCATED]'
    return sanitized


def log_security_event(event_type: str, details: Optional[Dict[str, Any]] = None,
                       severity: str = "warning") -> None:
    """
    Log a security event with rate limiting.

    Args:
        event_type: Type of security event
        details: Event details (will be sanitized)
        severity: Log severity level
    """
    with _global_state_lock:
        now = datetime.now()
        event_info = _security_event_counts.get(event_type)
        if not event_info or (now - event_info['first_time']).total_seconds() > _security_rate_limit_window:
            event_info = {'count': 0, 'first_time': now, 'rate_limit_logged': False}
        if event_info['count'] >= _security_rate_limit_max:
            if not event_info['rate_limit_logged']:
                get_logger("security").warning(
                    f"RATE_LIMIT: Suppressing further {event_type} events for {_security_rate_limit_window}s"
                )
                event_info['rate_limit_logged'] = True
            _security_event_counts[event_type] = event_info
            return
        event_info['count'] += 1
        _security_event_counts[event_type] = event_info

    security_logger = get_logger("security")

    log_msg = f"SECURITY_EVENT: {event_type}"
    if details:
        detail_str = ", ".join(
            f"{sanitize_log_message(k)}={sanitize_log_message(v)}" for k, v in details.items()
        )
        log_msg += f" - {detail_str}"
    log_msg += f" [pid={os.getpid()}, uid={os.getuid() if hasattr(os, 'getuid') else 'N/A'}]"

    if severity == "critical":
        security_logger.critical(log_msg)
    elif severity == "error":
        security_logger.error(log_msg)
    elif severity == "warning":
        security_logger.warning(log_msg)
    else:
        security_logger.info(log_msg)
