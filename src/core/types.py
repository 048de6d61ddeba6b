"""
Core types and protocols used across modules.

This module provides base types, enums, and protocol definitions that are
shared across the core library to ensure consistency and type safety.
"""

from enum import Enum
from typing import Protocol


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Used by the delivery loop to decide whether a failed delivery consumes a
    retry or escalates straight to the dead-letter state.

    Categories:
        TRANSIENT: Temporary failures that should retry after a delay
                   (e.g., destination unreachable, timeouts)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., malformed CSV, validation errors, bad configuration)
        UNKNOWN: Unclassified errors, retried conservatively
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class ErrorClassifier(Protocol):
    """
    Protocol for error classification implementations.

    Destination adapters may ship their own classifier to map
    driver-specific exceptions into standard categories.
    """

    def classify_error(self, error: Exception) -> ErrorCategory:
        """
        Classify an exception into an error category.

        Args:
            error: Exception to classify

        Returns:
            ErrorCategory indicating how to handle this error
        """
        ...

    def is_transient(self, error: Exception) -> bool:
        """
        Check if error is transient (retriable).

        Args:
            error: Exception to check

        Returns:
            True if error may succeed on retry
        """
        ...


__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
]
