"""
FeedKeeper Custom Exceptions
============================

Exception hierarchy for the feed synchronization engine. Every error
carries an ErrorCode, a context dict for structured logs and a short
message suitable for the CLI.

Feed-level errors (network, HTTP, parse) and storage errors become
per-feed outcomes in the scheduler. Configuration errors stop a run
before any fetch starts.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes for categorizing exceptions."""

    # Configuration (C0xx)
    CONFIG_INVALID = "C001"

    # Storage (D0xx)
    DATABASE_TRANSACTION = "D004"
    DATABASE_ERROR = "D006"

    # Feed fetch and parse (F0xx)
    FEED_INVALID_URL = "F001"
    FEED_FETCH_TIMEOUT = "F002"
    FEED_PARSE_ERROR = "F003"
    FEED_NETWORK_ERROR = "F004"
    FEED_ACCESS_DENIED = "F005"
    FEED_NOT_FOUND = "F006"
    FEED_HTTP_ERROR = "F007"
    FEED_CANCELLED = "F008"

    # System (S0xx)
    SYSTEM_PERMISSION_DENIED = "S002"
    SYSTEM_MEMORY_ERROR = "S004"
    UNEXPECTED = "S999"


class FeedKeeperError(Exception):
    """Base exception for all FeedKeeper errors.

    Subclasses set ``default_code``, ``default_recoverable`` and
    ``user_message_template``; any of them can be overridden per instance.
    """

    default_code: Optional[ErrorCode] = None
    default_recoverable = False
    user_message_template = "{message}"

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ):
        """Initialize FeedKeeper error.

        Args:
            message: Technical error message for logging
            error_code: Categorized error code (class default if omitted)
            context: Additional context information
            user_message: Short message for CLI output
            recoverable: Whether a later run may succeed
        """
        super().__init__(message)
        self.error_code = error_code or self.default_code
        self.context = context or {}
        self.user_message = user_message or self.user_message_template.format(message=message)
        self.recoverable = self.default_recoverable if recoverable is None else recoverable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": str(self),
            "user_message": self.user_message,
            "context": self.context,
            "recoverable": self.recoverable,
        }

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code.value}] {super().__str__()}"
        return super().__str__()


def _add_context(kwargs: Dict[str, Any], **fields) -> Dict[str, Any]:
    """Merge non-None fields into the ``context`` keyword argument."""
    context = dict(kwargs.pop("context", None) or {})
    context.update({k: v for k, v in fields.items() if v is not None})
    kwargs["context"] = context
    return kwargs


class ConfigurationError(FeedKeeperError):
    """Invalid or missing configuration; fails the whole invocation."""

    default_code = ErrorCode.CONFIG_INVALID
    user_message_template = "Configuration error: {message}"

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        self.config_key = config_key
        super().__init__(message, **_add_context(kwargs, config_key=config_key))


class StorageError(FeedKeeperError):
    """Database and transaction errors. The failed transaction was rolled back."""

    default_code = ErrorCode.DATABASE_ERROR
    default_recoverable = True
    user_message_template = "Database operation failed"

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        super().__init__(message, **_add_context(kwargs, query=query))


class FeedError(FeedKeeperError):
    """Base class for errors tied to a single feed."""

    default_code = ErrorCode.FEED_NETWORK_ERROR
    default_recoverable = True
    user_message_template = "Feed processing failed: {message}"

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        self.feed_url = feed_url
        super().__init__(message, **_add_context(kwargs, feed_url=feed_url))


class NetworkError(FeedError):
    """Connection failures and timeouts. Retried on the next scheduled run."""

    default_code = ErrorCode.FEED_NETWORK_ERROR


class HTTPError(FeedError):
    """Upstream answered with a status other than 2xx or 304."""

    default_code = ErrorCode.FEED_HTTP_ERROR

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        self.status = status
        super().__init__(message, **_add_context(kwargs, status=status))


class ParseError(FeedError):
    """Feed body could not be parsed. Stored items are left untouched."""

    default_code = ErrorCode.FEED_PARSE_ERROR


class FetchCancelledError(FeedError):
    """Feed job was still running when the run deadline or cancel signal hit."""

    default_code = ErrorCode.FEED_CANCELLED


def handle_exception(
    exception: Exception,
    logger,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
) -> FeedKeeperError:
    """Log an exception and return it as a FeedKeeperError.

    FeedKeeper errors are returned unchanged; anything else is wrapped with
    an error code chosen from its type.

    Args:
        exception: Original exception
        logger: Logger (or adapter) to report through
        operation: What was being done, for the message
        context: Additional context information

    Returns:
        The categorized error
    """
    if isinstance(exception, FeedKeeperError):
        logger.error(f"Operation '{operation}' failed: {exception}", extra=exception.to_dict())
        return exception

    context = {
        **(context or {}),
        "operation": operation,
        "original_exception_type": type(exception).__name__,
    }
    message = f"{type(exception).__name__} during {operation}: {exception}"

    if isinstance(exception, (ConnectionError, TimeoutError)):
        error = NetworkError(message, context=context, user_message="Network connection failed")
    elif isinstance(exception, PermissionError):
        error = FeedKeeperError(
            message,
            error_code=ErrorCode.SYSTEM_PERMISSION_DENIED,
            context=context,
            user_message="Access denied",
        )
    elif isinstance(exception, MemoryError):
        error = FeedKeeperError(
            message,
            error_code=ErrorCode.SYSTEM_MEMORY_ERROR,
            context=context,
            user_message="System resources exhausted",
            recoverable=True,
        )
    else:
        error = FeedKeeperError(
            message,
            error_code=ErrorCode.UNEXPECTED,
            context=context,
            user_message="An unexpected error occurred",
            recoverable=True,
        )

    logger.error(f"Operation '{operation}' failed: {error}", extra=error.to_dict(), exc_info=exception)
    return error


def get_user_friendly_message(exception: Exception) -> str:
    """Get user-friendly error message for any exception."""
    if isinstance(exception, FeedKeeperError):
        return exception.user_message

    return "An unexpected error occurred. Please try again later."
