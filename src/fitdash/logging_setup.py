"""
Logging configuration for the dashboard process.
Rotating log file (50MB x 3 files = 150MB max) plus console output.
"""

import os
import logging
from logging.handlers import RotatingFileHandler

from fitdash import config

TRACE = 5

LOG_LEVEL_MAP = {
    'CRITICAL': logging.CRITICAL,  # 50 - Fatal errors, app will crash
    'FATAL': logging.CRITICAL,     # Alias for CRITICAL
    'ERROR': logging.ERROR,        # 40 - Errors that don't crash the app
    'WARN': logging.WARNING,       # 30 - Warnings, potential issues
    'WARNING': logging.WARNING,    # Alias for WARN
    'INFO': logging.INFO,          # 20 - Normal operational messages
    'DEBUG': logging.DEBUG,        # 10 - Detailed diagnostic info
    'TRACE': TRACE                 # 5 - Most verbose, per-request detail
}


def _install_trace_level():
    if hasattr(logging, 'TRACE'):
        return
    logging.TRACE = TRACE
    logging.addLevelName(TRACE, 'TRACE')

    def trace(self, message, *args, **kwargs):
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs)
    logging.Logger.trace = trace


def resolve_level(level_str: str) -> int:
    return LOG_LEVEL_MAP.get((level_str or '').upper(), logging.INFO)


def configure_logging(level_str: str = None, log_dir: str = None) -> int:
    """
    Configure the root logger with a rotating file handler and a console handler.
    Safe to call more than once; handlers are only attached the first time.

    Returns:
        The numeric log level in effect
    """
    _install_trace_level()
    level_str = level_str or config.LOG_LEVEL
    log_dir = log_dir or config.LOG_DIR
    log_level = resolve_level(level_str)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    if getattr(root_logger, '_fitdash_configured', False):
        return log_level

    formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    os.makedirs(log_dir, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'fitdash.log'),
        maxBytes=50 * 1024 * 1024,  # 50MB
        backupCount=3
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger._fitdash_configured = True

    logging.getLogger(__name__).info(f"🔧 Log level set to: {level_str} ({log_level})")
    return log_level
