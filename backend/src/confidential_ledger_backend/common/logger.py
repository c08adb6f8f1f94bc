"""Implements the Logger interface, the LogMessage dataclass and the StandardLogger class."""

from __future__ import annotations

import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
import datetime as dt
import json
import logging
import logging.config
from typing import Any, overload


LOGGER_NAME = "confidential_ledger_backend"


class LogLevel(Enum):
    """Enum for log levels. The lower the value, the more verbose the log message."""

    TRACE = -1
    """Trace log level. Should be used for development purposes only."""
    DEBUG = 0
    """Debug log level. Protocol steps of every ledger operation are logged here."""
    INFO = 1
    """Info log level. Startup and shutdown of the service."""
    WARNING = 2
    """Warning log level. Should be used for non-critical issues."""
    ERROR = 3
    """Error log level. Failed ledger operations."""
    CRITICAL = 4
    """Critical log level. Should be used for errors that cannot be recovered from."""
    FATAL = 5
    """Fatal log level. Logged right before the process exits."""


# stdlib levels for each LogLevel, TRACE sits below DEBUG
_STDLIB_LEVELS = {
    LogLevel.TRACE: 5,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
    LogLevel.FATAL: logging.CRITICAL,
}


@dataclass(slots=True)
class LogMessage:
    """Dataclass for log messages.

    Attributes:
        message:
            The message to log.
        level:
            The log level. Ignored when a level specific method (like error) is called.
        structured_log_message_data:
            Structured log data, passed to the handlers as record attributes.
        error:
            The exception that caused the message, if any.
        stacklevel:
            The stack frame to attribute the record to.
    """

    message: str
    level: LogLevel = LogLevel.INFO
    structured_log_message_data: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
    stacklevel: int = 1


class LoggingError(Exception):
    """Raised when an error occurs during logging."""

    pass


class Logger(ABC):
    """Abstract base class for loggers.

    The level specific methods tag the message and hand it to _emit, which the
    concrete loggers implement.
    """

    __slots__ = ("_min_level",)
    _min_level: LogLevel

    def __init__(self, min_level: LogLevel = LogLevel.WARNING):
        self._min_level = min_level

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @overload
    def log(self, message: str) -> None: ...
    @overload
    def log(self, message: LogMessage) -> None: ...
    def log(self, message: str | LogMessage) -> None:
        """Log a message at the level it carries.

        Raises:
            LoggingError: If an error occurs during logging.
        """
        if isinstance(message, str):
            message = LogMessage(message=message, level=self._min_level)
        if message.level.value < self._min_level.value:
            return
        message.stacklevel += 1
        self._tag_and_emit(message.level, message)

    def trace(self, message: str | LogMessage) -> None:
        self._tag_and_emit(LogLevel.TRACE, message)

    def debug(self, message: str | LogMessage) -> None:
        self._tag_and_emit(LogLevel.DEBUG, message)

    def info(self, message: str | LogMessage) -> None:
        self._tag_and_emit(LogLevel.INFO, message)

    def warning(self, message: str | LogMessage) -> None:
        self._tag_and_emit(LogLevel.WARNING, message)

    def error(self, message: str | LogMessage) -> None:
        self._tag_and_emit(LogLevel.ERROR, message)

    def critical(self, message: str | LogMessage) -> None:
        self._tag_and_emit(LogLevel.CRITICAL, message)

    def fatal(self, message: str | LogMessage) -> None:
        """Log a fatal message and exit the process.

        The exit code is read from the structured data key "exit_code", defaulting to 1.
        """
        if isinstance(message, str):
            message = LogMessage(message=message)
        exit_code = message.structured_log_message_data.get("exit_code", 1)
        self._tag_and_emit(LogLevel.FATAL, message)
        sys.exit(exit_code if isinstance(exit_code, int) else 1)

    def _tag_and_emit(self, level: LogLevel, message: str | LogMessage) -> None:
        if isinstance(message, str):
            message = LogMessage(message=message)
        message.level = level
        # one frame for the public method, one for this helper
        message.stacklevel += 2
        message.structured_log_message_data["log_level"] = level.name
        self._emit(message)

    @abstractmethod
    def _emit(self, message: LogMessage) -> None:
        """Write the message to the underlying sink.

        Raises:
            LoggingError: If an error occurs during logging.
        """
        pass


LOG_RECORD_BUILTIN_ATTRS = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "thread",
    "threadName",
    "taskName",
}


class JSONFormatter(logging.Formatter):
    """Renders each record as a single JSON object.

    fmt_keys maps output keys to LogRecord attribute names. Structured data
    passed through `extra` is copied into the output as is.
    """

    def __init__(
        self,
        *,
        fmt_keys: dict[str, str] | None = None,
    ):
        super().__init__()
        self.fmt_keys = fmt_keys if fmt_keys is not None else {}

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self._prepare_log_dict(record), default=str)

    def _prepare_log_dict(self, record: logging.LogRecord) -> dict[str, Any]:
        always_fields = {
            "message": record.getMessage(),
            "timestamp": dt.datetime.fromtimestamp(
                record.created, tz=dt.timezone.utc
            ).isoformat(),
        }
        if record.exc_info is not None:
            always_fields["exc_info"] = self.formatException(record.exc_info)

        if record.stack_info is not None:
            always_fields["stack_info"] = self.formatStack(record.stack_info)

        message = {
            key: (
                msg_val
                if (msg_val := always_fields.pop(val, None)) is not None
                else getattr(record, val)
            )
            for key, val in self.fmt_keys.items()
        }
        message.update(always_fields)

        for key, val in record.__dict__.items():
            if key not in LOG_RECORD_BUILTIN_ATTRS:
                message[key] = val

        return message


class StandardLogger(Logger):
    """Logger backed by the stdlib logging module."""

    __slots__ = ("_logger",)

    def __init__(self, config_path: str | None = None):
        """Initialize the logger.

        Args:
            config_path:
                Path to a logging.config.dictConfig file in json format. When
                omitted the stdlib logging configuration is left untouched.

        Raises:
            FileNotFoundError: If the config file is not found.
            JSONDecodeError: If the config file is not in json format.
        """
        if config_path is not None:
            with open(config_path, "r", encoding="utf-8") as file:
                logging.config.dictConfig(json.load(file))
        logging.addLevelName(_STDLIB_LEVELS[LogLevel.TRACE], "TRACE")
        self._logger = logging.getLogger(LOGGER_NAME)
        super().__init__(_level_from_stdlib(self._logger.getEffectiveLevel()))

    def _emit(self, message: LogMessage) -> None:
        try:
            self._logger.log(
                _STDLIB_LEVELS[message.level],
                message.message,
                extra=message.structured_log_message_data,
                stacklevel=message.stacklevel,
                exc_info=message.error,
            )
        except (KeyError, TypeError) as e:
            # extra may not shadow LogRecord attributes
            raise LoggingError(f"Unable to log message: {message.message}") from e


def _level_from_stdlib(level: int) -> LogLevel:
    for log_level in sorted(_STDLIB_LEVELS, key=lambda lvl: lvl.value):
        if _STDLIB_LEVELS[log_level] >= level:
            return log_level
    return LogLevel.FATAL
