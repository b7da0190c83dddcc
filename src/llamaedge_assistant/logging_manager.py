"""Diagnostic logging setup for the LlamaEdge server assistant.

Configures the ``llamaedge_assistant`` logger with a human-readable console
handler and, optionally, a rotating JSON diagnostic log. Notification
records are written separately by the notifier, never through logging.
"""

import json
import logging
import logging.handlers
from pathlib import Path

PACKAGE_LOGGER = "llamaedge_assistant"

# LogRecord attributes that are not user-supplied extras
_STANDARD_ATTRS = frozenset(
    [
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "taskName",
    ]
)


class JsonLineFormatter(logging.Formatter):
    """Formats each record as a single JSON object."""

    def format(self, record):
        log_obj = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                try:
                    json.dumps(value)
                    log_obj[key] = value
                except (TypeError, ValueError):
                    log_obj[key] = str(value)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


class LoggingManager:
    """Manages diagnostic logging for the assistant."""

    def __init__(self, log_level: str = "INFO", diagnostic_log: str | Path | None = None):
        """Initialize logging manager.

        Args:
            log_level: Console log level name.
            diagnostic_log: Optional file receiving JSON lines at DEBUG level.
        """
        self.log_level = getattr(logging, log_level.upper())
        self.diagnostic_log = Path(diagnostic_log) if diagnostic_log else None

        self._setup_package_logger()

        # Route existing llamaedge_assistant.* loggers through the package logger
        for name in list(logging.Logger.manager.loggerDict.keys()):
            if name.startswith(f"{PACKAGE_LOGGER}."):
                child_logger = logging.getLogger(name)
                if isinstance(child_logger, logging.Logger):  # Skip PlaceHolders
                    child_logger.setLevel(logging.NOTSET)
                    child_logger.propagate = True
                    child_logger.handlers.clear()

    def _setup_package_logger(self):
        """Setup package logger with console and optional file handlers."""
        file_handler = None
        if self.diagnostic_log:
            self.diagnostic_log.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                self.diagnostic_log,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(JsonLineFormatter())

        logger = logging.getLogger(PACKAGE_LOGGER)
        logger.setLevel(logging.DEBUG if self.diagnostic_log else self.log_level)
        logger.propagate = False

        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.log_level)
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

        if file_handler is not None:
            logger.addHandler(file_handler)

        self.logger = logger

    def shutdown(self):
        """Flush and close all handlers owned by the package logger."""
        for handler in list(self.logger.handlers):
            handler.flush()
            handler.close()
            self.logger.removeHandler(handler)
