"""Structured logging utility for the credential rotator.

Provides JSON-formatted logging with context, the rotator's exception
hierarchy, and tolerant converters used when reading configuration.
"""
import logging
import json
import os
import sys
import traceback
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
from datetime import datetime, timezone

# Configure root logger with LOG_LEVEL from environment
_log_level_str = os.environ.get("LOG_LEVEL", "INFO").upper()
_log_level = getattr(logging, _log_level_str, logging.INFO)
logging.basicConfig(
    level=_log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)

# Cache loggers to avoid repeated lookups
_logger_cache: Dict[str, logging.Logger] = {}


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    __slots__ = ()

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info and record.exc_info[0] is not None:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        # Add extra fields
        extra = getattr(record, 'extra_fields', None)
        if extra:
            log_data.update(extra)

        return json.dumps(log_data, default=str)


def get_logger(name: str, json_format: bool = False) -> logging.Logger:
    """Get a logger instance with optional JSON formatting.

    Args:
        name: Logger name (typically __name__)
        json_format: If True, use JSON formatter; otherwise use default

    Returns:
        Configured logger instance
    """
    cache_key = f"{name}:{json_format}"
    if cache_key in _logger_cache:
        return _logger_cache[cache_key]

    logger = logging.getLogger(name)
    logger.setLevel(_log_level)

    if json_format and not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
        logger.propagate = False

    _logger_cache[cache_key] = logger
    return logger


def configure_logging(
    level: Optional[str] = None,
    json_format: bool = False,
    log_file: Optional[Union[str, Path]] = None,
    retain_days: int = 7,
) -> None:
    """Set up the process-wide log sinks.

    Replaces the root handlers with a stdout handler (text or JSON) and, when
    ``log_file`` is given, a file handler rolled over at midnight keeping
    ``retain_days`` old files.
    """
    global _log_level
    if level:
        _log_level = getattr(logging, str(level).upper(), logging.INFO)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(_log_level)

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            str(path), when="midnight", backupCount=retain_days, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for cached in _logger_cache.values():
        cached.setLevel(_log_level)


class ContextLogger:
    """Logger wrapper that adds context fields to all log messages."""

    __slots__ = ('logger', 'context')

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self.context = context

    def bind(self, **context) -> "ContextLogger":
        """Return a new ContextLogger with additional context fields."""
        return ContextLogger(self.logger, **{**self.context, **context})

    def _log(self, level: int, msg: str, exc_info: Any = None, **extra):
        """Internal log method that merges context."""
        if not self.logger.isEnabledFor(level):
            return
        merged = {**self.context, **extra} if extra else self.context
        record = self.logger.makeRecord(
            self.logger.name,
            level,
            "(unknown file)",
            0,
            msg,
            (),
            exc_info,
        )
        record.extra_fields = merged
        self.logger.handle(record)

    def debug(self, msg: str, **extra):
        self._log(logging.DEBUG, msg, **extra)

    def info(self, msg: str, **extra):
        self._log(logging.INFO, msg, **extra)

    def warning(self, msg: str, **extra):
        self._log(logging.WARNING, msg, **extra)

    def error(self, msg: str, exc_info: Any = None, **extra):
        self._log(logging.ERROR, msg, exc_info=exc_info, **extra)

    def exception(self, msg: str, **extra):
        """Log an exception with traceback."""
        self._log(logging.ERROR, msg, exc_info=sys.exc_info(), **extra)

    def critical(self, msg: str, exc_info: Any = None, **extra):
        self._log(logging.CRITICAL, msg, exc_info=exc_info, **extra)

    def isEnabledFor(self, level: int) -> bool:
        """Check if this logger is enabled for the given level."""
        return self.logger.isEnabledFor(level)


# Custom exceptions for the credential rotator
class RotatorError(Exception):
    """Base exception for all credential rotator errors."""
    pass


class FatalStartupError(RotatorError):
    """Startup could not complete; the process must exit non-zero."""
    pass


class ConfigurationError(FatalStartupError):
    """Error in configuration or environment setup."""
    pass


class WatchError(RotatorError):
    """The change source (file watch) malfunctioned."""
    pass


class RecordParseError(RotatorError):
    """The credentials record exists but could not be read or parsed."""
    pass


class ApplyFailure(RotatorError):
    """Apply kept failing; ``attempt`` is the number of the last attempt made."""

    def __init__(self, message: str, attempt: int = 0):
        super().__init__(message)
        self.attempt = attempt


class CycleCancelled(RotatorError):
    """An in-flight update was interrupted by shutdown."""
    pass


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _convert(
    value: Any,
    default: Any,
    convert: Callable[[Any], Any],
    kind: str,
    logger: Optional[logging.Logger],
    context: str,
) -> Any:
    if _blank(value):
        return default
    try:
        return convert(value)
    except (ValueError, TypeError) as e:
        if logger:
            logger.warning(f"Failed to convert {context} to {kind}: {value}", exc_info=e)
        return default


def safe_int(value: Any, default: int, logger: Optional[logging.Logger] = None, context: str = "") -> int:
    """Convert ``value`` to int; blank or invalid input yields ``default`` (logged when a logger is given)."""
    return _convert(value, default, int, "int", logger, context)


def safe_float(value: Any, default: float, logger: Optional[logging.Logger] = None, context: str = "") -> float:
    return _convert(value, default, float, "float", logger, context)


_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def safe_bool(value: Any, default: bool, logger: Optional[logging.Logger] = None, context: str = "") -> bool:
    """Like safe_int, for the usual on/off spellings."""
    if _blank(value):
        return default
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    if logger:
        logger.warning(f"Failed to convert {context} to bool: {value}")
    return default
