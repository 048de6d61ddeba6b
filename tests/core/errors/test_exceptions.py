"""
Tests for exception hierarchy and error classification.
"""

import errno

from core.errors import (
    AdapterError,
    ConfigurationError,
    CsvParseError,
    DefaultErrorClassifier,
    ErrorCategory,
    LeaseError,
    MessageNotFoundError,
    NonRetriableAdapterError,
    PermanentError,
    PipelineError,
    StoreUnavailableError,
    TransientError,
    classify_exception,
    is_retryable_error,
    is_transient_error,
    truncate_error_message,
    wrap_exception,
)


class TestErrorCategory:
    """Test ErrorCategory enum."""

    def test_all_categories_exist(self):
        assert ErrorCategory.TRANSIENT.value == "transient"
        assert ErrorCategory.PERMANENT.value == "permanent"
        assert ErrorCategory.UNKNOWN.value == "unknown"

    def test_core_types_is_same_enum(self):
        from core.types import ErrorCategory as TypesErrorCategory

        assert TypesErrorCategory is ErrorCategory


class TestPipelineError:
    """Test base PipelineError class."""

    def test_basic_creation(self):
        error = PipelineError("Something went wrong")
        assert error.message == "Something went wrong"
        assert error.cause is None
        assert error.context == {}
        assert error.category == ErrorCategory.UNKNOWN

    def test_str_includes_cause(self):
        cause = RuntimeError("disk on fire")
        error = PipelineError("Write failed", cause=cause)
        assert str(error) == "Write failed | Caused by: disk on fire"

    def test_unknown_is_retryable(self):
        assert PipelineError("x").is_retryable is True


class TestHierarchy:
    """Category and retryability of each concrete error."""

    def test_transient_errors_are_retryable(self):
        for error in (
            TransientError("t"),
            AdapterError("down", adapter_name="erp"),
            StoreUnavailableError("db gone"),
            LeaseError("m-1", "Pending"),
        ):
            assert error.category == ErrorCategory.TRANSIENT
            assert error.is_retryable is True

    def test_permanent_errors_are_not_retryable(self):
        for error in (
            PermanentError("p"),
            NonRetriableAdapterError("bad record"),
            ConfigurationError("bad config"),
            MessageNotFoundError("m-1"),
            CsvParseError("bad csv"),
        ):
            assert error.category == ErrorCategory.PERMANENT
            assert error.is_retryable is False

    def test_adapter_error_records_adapter_name(self):
        error = AdapterError("down", adapter_name="erp", context={"attempt": 2})
        assert error.adapter_name == "erp"
        assert error.context == {"attempt": 2, "adapter_name": "erp"}

    def test_lease_error_fields(self):
        error = LeaseError("m-1", "Processed")
        assert error.message_id == "m-1"
        assert error.status == "Processed"
        assert "m-1" in str(error)

    def test_message_not_found(self):
        error = MessageNotFoundError("abc")
        assert error.message_id == "abc"
        assert error.context == {"message_id": "abc"}
        assert str(error) == "Message not found: abc"

    def test_csv_parse_error_lists_invalid_rows(self):
        error = CsvParseError(
            "Inconsistent column count",
            invalid_rows=[(3, 2), (7, 5)],
            expected_columns=3,
        )
        assert error.invalid_rows == [(3, 2), (7, 5)]
        assert error.expected_columns == 3
        assert CsvParseError("x").invalid_rows == []


class TestClassifyException:
    """Test classify_exception for foreign exceptions."""

    def test_pipeline_error_keeps_category(self):
        assert classify_exception(AdapterError("x")) == ErrorCategory.TRANSIENT
        assert classify_exception(ConfigurationError("x")) == ErrorCategory.PERMANENT

    def test_timeouts_and_connections_are_transient(self):
        assert classify_exception(TimeoutError()) == ErrorCategory.TRANSIENT
        assert classify_exception(ConnectionResetError()) == ErrorCategory.TRANSIENT

    def test_os_error_by_errno(self):
        assert classify_exception(OSError(errno.ENOSPC, "full")) == ErrorCategory.PERMANENT
        assert classify_exception(OSError(errno.EACCES, "denied")) == ErrorCategory.PERMANENT
        assert classify_exception(OSError(errno.EIO, "io")) == ErrorCategory.TRANSIENT

    def test_bad_input_is_permanent(self):
        assert classify_exception(ValueError("nope")) == ErrorCategory.PERMANENT
        assert classify_exception(KeyError("col")) == ErrorCategory.PERMANENT

    def test_message_markers(self):
        assert classify_exception(RuntimeError("HTTP 503 from ERP")) == ErrorCategory.TRANSIENT
        assert classify_exception(RuntimeError("database is locked")) == ErrorCategory.TRANSIENT
        assert classify_exception(RuntimeError("403 Forbidden")) == ErrorCategory.PERMANENT

    def test_unrecognized_is_unknown(self):
        assert classify_exception(RuntimeError("weird")) == ErrorCategory.UNKNOWN

    def test_helpers(self):
        assert is_transient_error(TimeoutError()) is True
        assert is_transient_error(ValueError()) is False
        assert is_retryable_error(RuntimeError("weird")) is True
        assert is_retryable_error(ValueError()) is False
        assert is_retryable_error(NonRetriableAdapterError("x")) is False


class TestWrapException:
    def test_pipeline_error_returned_with_context_merged(self):
        original = AdapterError("down")
        wrapped = wrap_exception(original, context={"message_id": "m-1"})
        assert wrapped is original
        assert wrapped.context["message_id"] == "m-1"

    def test_transient_foreign_exception(self):
        cause = TimeoutError("slow")
        wrapped = wrap_exception(cause)
        assert isinstance(wrapped, TransientError)
        assert wrapped.cause is cause
        assert wrapped.context["error_type"] == "TimeoutError"

    def test_permanent_foreign_exception(self):
        wrapped = wrap_exception(ValueError("bad"))
        assert isinstance(wrapped, PermanentError)

    def test_unknown_uses_default_class(self):
        wrapped = wrap_exception(RuntimeError("weird"), default_class=AdapterError)
        assert isinstance(wrapped, AdapterError)


class TestTruncateErrorMessage:
    def test_short_message_unchanged(self):
        assert truncate_error_message(ValueError("short")) == "short"

    def test_long_message_truncated_with_ellipsis(self):
        result = truncate_error_message("x" * 50, max_length=10)
        assert result == "xxxxxxx..."
        assert len(result) == 10


class TestDefaultErrorClassifier:
    def test_delegates_to_classify_exception(self):
        classifier = DefaultErrorClassifier()
        assert classifier.classify_error(TimeoutError()) == ErrorCategory.TRANSIENT
        assert classifier.is_transient(TimeoutError()) is True
        assert classifier.is_transient(ValueError()) is False
