"""
Structured Logging Service
==========================
Formatters and root-logger setup. Modules log through the standard
``logging.getLogger(__name__)``; ``configure_logging`` decides how records
are rendered and where they go.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from io import StringIO
from typing import Any, Optional

from ..config import LoggingConfig

# Attributes every LogRecord carries; anything else came in through ``extra``
RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
})

MASK = "***MASKED***"


def _format_traceback(exc_info) -> str:
    if not exc_info or not exc_info[2]:
        return ""
    sio = StringIO()
    traceback.print_exception(exc_info[0], exc_info[1], exc_info[2], file=sio)
    return sio.getvalue()


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


# =============================================================================
# Log Formatters
# =============================================================================

class JSONFormatter(logging.Formatter):
    """JSON log formatter."""

    def __init__(
        self,
        include_timestamp: bool = True,
        include_level: bool = True,
        include_logger: bool = True,
        include_caller: bool = False,
        mask_fields: Optional[list[str]] = None,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_level = include_level
        self.include_logger = include_logger
        self.include_caller = include_caller
        self.mask_fields = set(f.lower() for f in (mask_fields or []))

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_dict: dict[str, Any] = {}

        if self.include_timestamp:
            log_dict["timestamp"] = _timestamp(record).isoformat().replace("+00:00", "Z")
        if self.include_level:
            log_dict["level"] = record.levelname.lower()
        if self.include_logger:
            log_dict["logger"] = record.name

        log_dict["message"] = record.getMessage()

        if self.include_caller:
            log_dict["caller"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        for key, value in record.__dict__.items():
            if key in RESERVED_ATTRS:
                continue
            log_dict[key] = self._mask(key, value)

        if record.exc_info:
            log_dict["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": _format_traceback(record.exc_info) or None,
            }

        return json.dumps(log_dict, default=str)

    def _mask(self, key: str, value: Any) -> Any:
        if key.lower() in self.mask_fields:
            return MASK
        if isinstance(value, dict):
            return {k: self._mask(str(k), v) for k, v in value.items()}
        return value


class ConsoleFormatter(logging.Formatter):
    """Console-friendly log formatter with colors."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self.use_colors else ""
        reset = self.RESET if color else ""

        timestamp = _timestamp(record).strftime("%H:%M:%S")
        level = record.levelname.ljust(8)
        formatted = f"{timestamp} {color}{level}{reset} {record.name}: {record.getMessage()}"

        if record.exc_info:
            formatted += "\n" + _format_traceback(record.exc_info)
        return formatted


class TextFormatter(logging.Formatter):
    """Plain text log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = _timestamp(record).strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname.ljust(8)
        formatted = f"{timestamp} {level} {record.name} - {record.getMessage()}"

        if record.exc_info:
            formatted += "\n" + _format_traceback(record.exc_info)
        return formatted


# =============================================================================
# Setup
# =============================================================================

_installed_handlers: list[logging.Handler] = []


def create_formatter(config: LoggingConfig) -> logging.Formatter:
    if config.format == "json":
        return JSONFormatter(
            include_timestamp=config.include_timestamp,
            include_level=config.include_level,
            include_logger=config.include_logger,
            include_caller=config.include_caller,
            mask_fields=config.mask_fields,
        )
    if config.format == "text":
        return TextFormatter()
    return ConsoleFormatter(use_colors=sys.stderr.isatty())


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Configure the root logger.

    Calling it again replaces the handlers installed by the previous call
    and leaves handlers installed by anyone else alone.
    """
    config = config or LoggingConfig()
    root = logging.getLogger()

    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    if not config.enabled:
        null_handler = logging.NullHandler()
        _installed_handlers.append(null_handler)
        root.addHandler(null_handler)
        return

    level = logging.getLevelName(config.level.upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)

    formatter = create_formatter(config)

    if config.console_enabled:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        _installed_handlers.append(console)

    if config.file_enabled:
        file_handler = logging.handlers.RotatingFileHandler(
            config.file_path,
            maxBytes=config.file_max_size_mb * 1024 * 1024,
            backupCount=config.file_backup_count,
        )
        file_handler.setFormatter(
            formatter if isinstance(formatter, JSONFormatter) else TextFormatter()
        )
        _installed_handlers.append(file_handler)

    for handler in _installed_handlers:
        root.addHandler(handler)

    quiet_level = logging.DEBUG if root.level <= logging.DEBUG else logging.WARNING
    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(quiet_level)
