"""
Logging configuration for nwcat.

Console output always goes to stderr: stdout carries relayed payload.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


class StructuredFormatter(logging.Formatter):
    """Structured formatter for easier log parsing."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with structured data."""
        if not hasattr(record, 'module_name'):
            record.module_name = record.module
        if not hasattr(record, 'function_name'):
            record.function_name = record.funcName

        return super().format(record)


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_dir: str | None = None,
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    enable_file: bool = False,
) -> logging.Logger:
    """
    Set up logging for nwcat.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Custom log file path (overrides log_dir)
        log_dir: Directory for log files (defaults to ~/.nwcat/logs)
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup log files to keep
        enable_console: Enable console logging
        enable_file: Enable file logging

    Returns:
        Configured package logger
    """
    logger = logging.getLogger("nwcat")
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    console_fmt = logging.Formatter(
        fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_fmt = StructuredFormatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)-20s | %(module_name)-15s | '
            '%(function_name)-20s | %(lineno)-4d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logger.level)
        console_handler.setFormatter(console_fmt)
        logger.addHandler(console_handler)

    # File handler with rotation
    if enable_file:
        if log_file:
            log_path = Path(log_file)
        elif log_dir:
            log_path = Path(log_dir) / "nwcat.log"
        else:
            log_path = Path.home() / ".nwcat" / "logs" / "nwcat.log"

        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_fmt)
        logger.addHandler(file_handler)
        logger.setLevel(logging.DEBUG)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def configure_logging(verbose: bool = False, log_file: str | None = None) -> logging.Logger:
    """
    Quick logging configuration used by the CLI.

    Args:
        verbose: Enable debug logging on the console
        log_file: Also log everything to this rotating file
    """
    return setup_logging(
        level="DEBUG" if verbose else "WARNING",
        log_file=log_file,
        enable_console=True,
        enable_file=log_file is not None,
    )
