"""
FeedKeeper Logging Configuration
================================

Console and rotating-file logging for fetch runs. Component loggers carry
the component name and, inside a feed pipeline, the feed URL; both are
promoted to top-level fields in JSON output and shown as a suffix on the
console so interleaved concurrent pipelines stay readable.
"""

import logging
import logging.handlers
import sys
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

ROOT_LOGGER_NAME = "feedkeeper"

# Context promoted out of "extra" in structured output.
CONTEXT_FIELDS = ("component", "feed_url")

# Attributes every LogRecord has; anything else came in through ``extra``.
_RECORD_ATTRIBUTES = set(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

# Chatty third-party loggers capped at WARNING.
_QUIET_LOGGERS = ("aiohttp", "asyncio", "feedparser")


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRIBUTES}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; component and feed URL are top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        extras = _record_extras(record)

        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            if key in extras:
                log_data[key] = extras.pop(key)

        log_data["location"] = f"{record.module}:{record.funcName}:{record.lineno}"

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if extras:
            log_data["extra"] = extras

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Human-readable console lines, colored by level."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:8}"
        feed_url = getattr(record, "feed_url", None)
        suffix = f" [{feed_url}]" if feed_url else ""

        if self.use_color:
            color = self.COLORS.get(record.levelname, self.RESET)
            level = f"{color}{level}{self.RESET}"
            suffix = f"{self.DIM}{suffix}{self.RESET}" if suffix else ""

        formatted = f"[{timestamp}] {level} {record.name} - {record.getMessage()}{suffix}"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def _console_handler(structured: bool) -> logging.Handler:
    # stderr keeps stdout free for --json summaries
    handler = logging.StreamHandler(sys.stderr)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(ColoredConsoleFormatter(use_color=sys.stderr.isatty()))
    return handler


def _file_handler(log_file: str, max_file_size: int, backup_count: int) -> logging.Handler:
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_file_size, backupCount=backup_count, encoding="utf-8"
    )
    # Files are always JSON so runs can be grepped per feed
    handler.setFormatter(StructuredFormatter())
    return handler


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: str = "INFO",
    log_file: Optional[str] = None,
    console: bool = True,
    structured: bool = False,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Attach console and/or rotating file handlers to a logger.

    Existing handlers are replaced, so calling this again reconfigures
    rather than duplicates output.

    Args:
        name: Logger name
        level: Logging level name
        log_file: Rotating JSON log file (optional)
        console: Log to stderr
        structured: JSON instead of colored text on the console
        max_file_size: Rotate the file after this many bytes
        backup_count: Rotated files to keep

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console:
        logger.addHandler(_console_handler(structured))
    if log_file:
        logger.addHandler(_file_handler(log_file, max_file_size, backup_count))

    return logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter merging fixed component/feed context into each record."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def for_feed(self, feed_url: str) -> "LoggerAdapter":
        """Same component logger, tagged with a feed URL."""
        return LoggerAdapter(self.logger, {**self.extra, "feed_url": feed_url})


def get_logger_for_component(
    component_name: str,
    feed_url: Optional[str] = None,
) -> LoggerAdapter:
    """Get a logger adapter with component-specific context.

    Args:
        component_name: Name of the component (e.g., 'scheduler', 'archival_store')
        feed_url: Feed being processed (optional)

    Returns:
        Logger adapter with context
    """
    base_logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component_name}")

    extra_context = {"component": component_name}
    if feed_url:
        extra_context["feed_url"] = feed_url

    return LoggerAdapter(base_logger, extra_context)


def configure_application_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = "logs/feedkeeper.log",
    enable_console: bool = True,
    structured_logging: bool = False,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """Configure the ``feedkeeper`` logger tree for a CLI invocation."""
    setup_logger(
        name=ROOT_LOGGER_NAME,
        level=log_level,
        log_file=log_file,
        console=enable_console,
        structured=structured_logging,
        max_file_size=max_file_size_mb * 1024 * 1024,
        backup_count=backup_count,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class PerformanceLogger:
    """Context manager logging how long an operation took."""

    def __init__(self, logger: logging.Logger, operation: str, **kwargs):
        """Initialize performance logger.

        Args:
            logger: Logger instance
            operation: Operation being timed
            **kwargs: Additional context for the operation
        """
        self.logger = logger
        self.operation = operation
        self.context = kwargs
        self.duration_seconds = 0.0
        self._started: Optional[float] = None

    def __enter__(self) -> "PerformanceLogger":
        self._started = time.perf_counter()
        self.logger.debug(f"Starting {self.operation}", extra=dict(self.context))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_seconds = time.perf_counter() - self._started
        context = {**self.context, "duration_seconds": round(self.duration_seconds, 3)}

        if exc_type is None:
            self.logger.info(
                f"Completed {self.operation} in {self.duration_seconds:.3f}s", extra=context
            )
        elif issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
            self.logger.warning(f"Interrupted {self.operation}", extra=context)
        else:
            self.logger.error(
                f"Failed {self.operation} after {self.duration_seconds:.3f}s: {exc_val}",
                extra=context,
            )
