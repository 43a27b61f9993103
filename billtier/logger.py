"""
Centralized logging for BillTier.

All component loggers are children of the "billtier" package logger, which
owns the handlers: one timestamped file per process run and, optionally,
WARNING+ on stderr for cron jobs. Records still propagate to the root logger
so an embedding application's own handlers see them too.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

PACKAGE_LOGGER = "billtier"

FILE_FORMAT = logging.Formatter(
    '%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
CONSOLE_FORMAT = logging.Formatter('%(asctime)s | %(levelname)s | %(message)s', datefmt='%H:%M:%S')


def _parse_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


class TierLogger:
    """Process-wide logging setup for tiering components."""

    _initialized = False
    _log_file: Optional[Path] = None
    _level = logging.INFO

    @classmethod
    def _build_handlers(cls, log_file: Path, console_output: bool) -> List[logging.Handler]:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(cls._level)
        file_handler.setFormatter(FILE_FORMAT)
        handlers: List[logging.Handler] = [file_handler]

        if console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(logging.WARNING)
            console_handler.setFormatter(CONSOLE_FORMAT)
            handlers.append(console_handler)
        return handlers

    @classmethod
    def setup(cls, log_dir: str = "./logs", log_level: str = "INFO", console_output: bool = False):
        """Attach handlers to the package logger. Later calls are no-ops until reset()."""
        if cls._initialized:
            return

        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        cls._level = _parse_level(log_level)
        cls._log_file = log_path / f"billtier_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.setLevel(cls._level)
        for handler in cls._build_handlers(cls._log_file, console_output):
            package_logger.addHandler(handler)
        cls._initialized = True

        cls.get_logger("TierLogger").info(
            f"Logging initialized - Level: {logging.getLevelName(cls._level)}, File: {cls._log_file}"
            + (", console WARNING+" if console_output else "")
        )

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Component logger named billtier.<name>. Sets up default logging on first use."""
        if not cls._initialized:
            cls.setup()
        return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")

    @classmethod
    def set_level(cls, level: str):
        """Change the level of the package logger and its file handler."""
        cls._level = _parse_level(level)
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.setLevel(cls._level)
        for handler in package_logger.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.setLevel(cls._level)

    @classmethod
    def get_log_file(cls) -> Optional[Path]:
        return cls._log_file if cls._initialized else None

    @classmethod
    def reset(cls):
        """Close and detach handlers so setup() can run again (tests, CLI re-entry)."""
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        for handler in list(package_logger.handlers):
            handler.close()
            package_logger.removeHandler(handler)
        package_logger.setLevel(logging.NOTSET)
        cls._initialized = False
        cls._log_file = None
        cls._level = logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Convenience function to get a logger."""
    return TierLogger.get_logger(name)
