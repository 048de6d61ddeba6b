"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    AdapterError,
    ConfigurationError,
    CsvParseError,
    DefaultErrorClassifier,
    LeaseError,
    # Enums
    ErrorCategory,
    MessageNotFoundError,
    NonRetriableAdapterError,
    PermanentError,
    # Base classes
    PipelineError,
    StoreUnavailableError,
    TransientError,
    # Classification utilities
    classify_exception,
    is_retryable_error,
    is_transient_error,
    truncate_error_message,
    wrap_exception,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "TransientError",
    "PermanentError",
    # Transient errors
    "AdapterError",
    "StoreUnavailableError",
    "LeaseError",
    # Permanent errors
    "NonRetriableAdapterError",
    "ConfigurationError",
    "MessageNotFoundError",
    "CsvParseError",
    # Classification utilities
    "is_transient_error",
    "is_retryable_error",
    "classify_exception",
    "wrap_exception",
    "truncate_error_message",
    "DefaultErrorClassifier",
]
