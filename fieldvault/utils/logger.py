"""
Logging configuration for structured text logging.
"""
import logging
import sys
from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from fieldvault.config import Settings


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured text logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with structured key-value pairs."""
        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        base_msg = f"{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}"

        # Add extra fields if present
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in StructuredLogger.RESERVED_FIELDS
        }

        if extra_fields:
            extra_str = " | " + " ".join(f"{k}={v}" for k, v in extra_fields.items())
            base_msg += extra_str

        return base_msg


def setup_logging(settings: Optional["Settings"] = None) -> logging.Logger:
    """
    Configure and return the application logger.

    Supports per-module log level configuration via settings:
    - APP_LOG_LEVEL: Application logs (default: LOG_LEVEL)
    - PYMONGO_LOG_LEVEL: PyMongo logs (default: WARNING)

    Args:
        settings: Loaded settings, or None for defaults

    Returns:
        Configured logger instance
    """
    level_name = "INFO"
    if settings is not None:
        level_name = (settings.APP_LOG_LEVEL or settings.LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger("fieldvault")
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(StructuredFormatter())
    logger.addHandler(console_handler)

    logger.propagate = False

    log_config = _configure_third_party_loggers(settings)
    logger.debug(
        "Logging configured | "
        + " ".join(f"{name}={lib_level}" for name, lib_level in log_config.items())
    )

    return logger


def _configure_third_party_loggers(settings: Optional["Settings"]) -> Dict[str, str]:
    """
    Configure log levels for third-party libraries.

    Returns:
        Dictionary mapping logger names to configured levels
    """
    config = {}

    pymongo_level = "WARNING"
    if settings is not None and settings.PYMONGO_LOG_LEVEL:
        pymongo_level = settings.PYMONGO_LOG_LEVEL.upper()
    for name in ("pymongo", "pymongo.command", "pymongo.connection", "pymongo.serverSelection"):
        logging.getLogger(name).setLevel(getattr(logging, pymongo_level, logging.WARNING))
    config["pymongo"] = pymongo_level

    return config


class StructuredLogger:
    """Wrapper around logging.Logger that supports keyword arguments for structured logging."""

    # Reserved field names in LogRecord that should be prefixed
    RESERVED_FIELDS = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName',
        'levelname', 'levelno', 'lineno', 'module', 'msecs',
        'message', 'pathname', 'process', 'processName', 'relativeCreated',
        'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
        'taskName'
    }

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _log(self, level: int, msg: str, *args, **kwargs):
        """Log with structured extra fields."""
        # Prefix reserved field names to avoid conflicts
        extra = {}
        for key, value in kwargs.items():
            if key in self.RESERVED_FIELDS:
                extra[f'ctx_{key}'] = value
            else:
                extra[key] = value

        self._logger.log(level, msg, *args, extra=extra, stacklevel=3)

    def debug(self, msg: str, *args, **kwargs):
        """Log debug message with extra fields."""
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        """Log info message with extra fields."""
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        """Log warning message with extra fields."""
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        """Log error message with extra fields."""
        self._log(logging.ERROR, msg, *args, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger with the specified name under the fieldvault namespace.

    Args:
        name: Logger name (will be prefixed with 'fieldvault.')

    Returns:
        StructuredLogger instance
    """
    logger = logging.getLogger(f"fieldvault.{name}")
    return StructuredLogger(logger)
