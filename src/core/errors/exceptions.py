"""
Unified exception hierarchy for the staging engine.

Provides typed exceptions with retry classification so the delivery loop can
decide between "retry later" and "dead-letter now" without string matching
on every call site.
"""


# Import ErrorCategory from canonical source to avoid duplicate enum issues
# (comparing enums from different classes always returns False)
from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all staging errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Transient Errors (Retry)
# =============================================================================


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class AdapterError(TransientError):
    """Destination or source adapter failed in a way that may recover."""

    def __init__(
        self,
        message: str,
        adapter_name: str | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        context = dict(context or {})
        if adapter_name:
            context.setdefault("adapter_name", adapter_name)
        super().__init__(message, cause, context)
        self.adapter_name = adapter_name


class StoreUnavailableError(TransientError):
    """Staging store could not be reached."""

    pass


class LeaseError(TransientError):
    """Lease operation on a message that is not currently leased."""

    def __init__(self, message_id: str, status: str, cause: Exception | None = None):
        super().__init__(
            f"Message {message_id} is not leased (status={status})",
            cause,
            {"message_id": message_id, "status": status},
        )
        self.message_id = message_id
        self.status = status


# =============================================================================
# Permanent Errors (Don't Retry)
# =============================================================================


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class NonRetriableAdapterError(PermanentError):
    """Adapter rejected the record outright (validation, schema mismatch)."""

    pass


class ConfigurationError(PermanentError):
    """Invalid or missing configuration."""

    pass


class MessageNotFoundError(PermanentError):
    """Operation referenced a message id the store does not hold."""

    def __init__(self, message_id: str, cause: Exception | None = None):
        super().__init__(
            f"Message not found: {message_id}",
            cause,
            {"message_id": message_id},
        )
        self.message_id = message_id


class CsvParseError(PermanentError):
    """
    Malformed or inconsistent delimited text.

    Raised before anything is staged; the whole batch is rejected.

    Attributes:
        invalid_rows: (line_number, actual_column_count) for every offending row
        expected_columns: Header column count, when known
    """

    def __init__(
        self,
        message: str,
        invalid_rows: list[tuple[int, int]] | None = None,
        expected_columns: int | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, cause, {"expected_columns": expected_columns})
        self.invalid_rows = invalid_rows or []
        self.expected_columns = expected_columns


# =============================================================================
# Error Classification Utilities
# =============================================================================

TRANSIENT_ERROR_MARKERS = frozenset(
    {
        "429",
        "503",
        "502",
        "504",
        "timeout",
        "timed out",
        "connection",
        "throttl",
        "rate limit",
        "temporarily unavailable",
        "service unavailable",
        "database is locked",
        "deadlock",
    }
)

PERMANENT_ERROR_MARKERS = frozenset(
    {
        "400",
        "403",
        "404",
        "forbidden",
        "not found",
        "access denied",
        "invalid",
    }
)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if exception is transient (retriable).

    Returns True if this is a transient error that may succeed on retry.
    """
    return classify_exception(exc) == ErrorCategory.TRANSIENT


def is_retryable_error(exc: Exception) -> bool:
    """
    Check if exception should be retried.

    Retryable errors include:
    - Transient errors (connection, timeout, 5xx)
    - Unknown errors (conservative retry)

    Non-retryable:
    - Permanent errors (validation, parse, configuration)
    """
    if isinstance(exc, PipelineError):
        return exc.is_retryable

    return classify_exception(exc) in (
        ErrorCategory.TRANSIENT,
        ErrorCategory.UNKNOWN,
    )


def classify_os_error(error: OSError) -> ErrorCategory:
    """
    Classify OSError by errno into error category.

    Conservative classification: only mark as PERMANENT if certain.
    Disk full (ENOSPC), read-only filesystem (EROFS), permission denied (EACCES/EPERM).
    """
    import errno

    permanent_errnos = (errno.ENOSPC, errno.EROFS, errno.EACCES, errno.EPERM)
    return ErrorCategory.PERMANENT if error.errno in permanent_errnos else ErrorCategory.TRANSIENT


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    # Already classified
    if isinstance(exc, PipelineError):
        return exc.category

    # asyncio/builtin timeouts and dropped connections
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    if isinstance(exc, OSError) and exc.errno is not None:
        return classify_os_error(exc)

    # Bad input never improves on retry
    if isinstance(exc, (ValueError, TypeError, KeyError, UnicodeError)):
        return ErrorCategory.PERMANENT

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    if any(m in exc_type or m in exc_str for m in TRANSIENT_ERROR_MARKERS):
        return ErrorCategory.TRANSIENT

    if any(m in exc_str for m in PERMANENT_ERROR_MARKERS):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: Exception,
    default_class: type = PipelineError,
    context: dict | None = None,
) -> PipelineError:
    """Wrap a generic exception in appropriate PipelineError subclass."""
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    context = dict(context or {})
    context.setdefault("error_type", type(exc).__name__)

    if category == ErrorCategory.TRANSIENT:
        return TransientError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        return PermanentError(str(exc), cause=exc, context=context)

    return default_class(str(exc), cause=exc, context=context)


def truncate_error_message(error: Exception | str, max_length: int = 2000) -> str:
    """
    Truncate error text before it is persisted on a message.

    Args:
        error: Exception (or text) to extract message from
        max_length: Maximum length of error message

    Returns:
        Truncated error message with ellipsis if needed
    """
    error_message = str(error)
    if len(error_message) > max_length:
        return error_message[: max_length - 3] + "..."
    return error_message


class DefaultErrorClassifier:
    """ErrorClassifier backed by classify_exception()."""

    def classify_error(self, error: Exception) -> ErrorCategory:
        return classify_exception(error)

    def is_transient(self, error: Exception) -> bool:
        return self.classify_error(error) == ErrorCategory.TRANSIENT
