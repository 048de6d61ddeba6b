"""Log formatters for JSON and console output."""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from core.logging.context import get_log_context
from core.utils.json_serializers import json_serializer


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    Redacts credentials embedded in connection URLs before logging.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        "duration_ms",
        "operation",
        # Errors
        "error_category",
        "error_message",
        "error_type",
        "error",
        # Message lifecycle
        "status",
        "previous_status",
        "retry_count",
        "max_retries",
        "lease_until",
        "next_retry_at",
        "delay_seconds",
        "data_hash",
        # Subscribers / adapters
        "subscriber",
        "adapter_name",
        "adapter_type",
        "destination",
        # Batches and parsing
        "batch_size",
        "record_count",
        "records_staged",
        "records_failed",
        "records_skipped",
        "columns",
        "line_number",
        "invalid_row_count",
        "input_chars",
        "file_path",
        # Worker cycle stats
        "cycle",
        "leased",
        "delivered",
        "failed",
        "dead_lettered",
        "released",
        "reaped",
        "purged",
        "contended",
        "interval_seconds",
        "dead_letters",
        "threshold",
        # Transport locks
        "lock_token",
        "renewed",
        "renewal_count",
        "locks_renewed",
        "locks_expired",
        "locks_completed",
        "locks_abandoned",
        # Store
        "backend",
        "store_url",
    ]

    # Numeric fields are coerced so they never serialize as strings
    NUMERIC_FIELDS = {
        "duration_ms": float,
        "delay_seconds": float,
        "retry_count": int,
        "max_retries": int,
        "batch_size": int,
        "record_count": int,
        "records_staged": int,
        "records_failed": int,
        "records_skipped": int,
        "line_number": int,
        "invalid_row_count": int,
        "input_chars": int,
        "cycle": int,
        "leased": int,
        "delivered": int,
        "failed": int,
        "dead_lettered": int,
        "released": int,
        "reaped": int,
        "purged": int,
        "contended": int,
        "interval_seconds": float,
        "dead_letters": int,
        "threshold": int,
        "renewed": int,
        "renewal_count": int,
        "locks_renewed": int,
        "locks_expired": int,
        "locks_completed": int,
        "locks_abandoned": int,
    }

    # Fields that contain URLs and should be sanitized
    URL_FIELDS = ["store_url", "destination", "file_path"]

    # user:password@ in database URLs, plus secret-ish query parameters
    SENSITIVE_PARAMS_PATTERN = re.compile(
        r"([?&])(sig|token|key|secret|password|auth)=[^&]*",
        re.IGNORECASE,
    )
    CREDENTIALS_PATTERN = re.compile(r"(://[^:/@]+):[^@]*@")

    def _sanitize_url(self, url: str) -> str:
        url = self.CREDENTIALS_PATTERN.sub(r"\1:[REDACTED]@", url)
        return self.SENSITIVE_PARAMS_PATTERN.sub(r"\1\2=[REDACTED]", url)

    def _sanitize_value(self, key: str, value: Any) -> Any:
        if key in self.URL_FIELDS and isinstance(value, str):
            return self._sanitize_url(value)
        return value

    def _ensure_type(self, field: str, value: Any) -> Any:
        """
        Coerce numeric fields to their declared type.

        Returns None when conversion fails so a bad value never breaks
        downstream aggregation.
        """
        if field not in self.NUMERIC_FIELDS or value is None:
            return value

        expected_type = self.NUMERIC_FIELDS[field]
        try:
            return expected_type(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _base_log_entry(record: logging.LogRecord) -> dict[str, Any]:
        return {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

    @staticmethod
    def _inject_context(
        log_entry: dict[str, Any], log_context: dict[str, Any], record: logging.LogRecord
    ) -> None:
        for field, value in log_context.items():
            # Explicit extra= wins over ambient context
            explicit = getattr(record, field, None)
            if explicit:
                log_entry[field] = explicit
            elif value:
                log_entry[field] = value

    @staticmethod
    def _should_include_source_location(record: logging.LogRecord) -> bool:
        return record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL)

    def _inject_extra_fields(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                typed_value = self._ensure_type(field, value)
                log_entry[field] = self._sanitize_value(field, typed_value)

    def _inject_exception(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        if not record.exc_info:
            return

        exc_type, exc_value, _ = record.exc_info
        log_entry["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
            "stacktrace": self.formatException(record.exc_info),
        }

    def format(self, record: logging.LogRecord) -> str:
        log_entry = self._base_log_entry(record)

        self._inject_context(log_entry, get_log_context(), record)

        if self._should_include_source_location(record):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        self._inject_extra_fields(log_entry, record)
        self._inject_exception(log_entry, record)

        return json.dumps(log_entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter with color-coded log levels.

    Colors are auto-disabled when output is not a TTY (pipes, files).
    """

    # ANSI color codes
    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def _format_level_name(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        if not self._use_colors:
            return level_name

        color = self.COLORS.get(record.levelno, "")
        if not color:
            return level_name

        return f"{color}{level_name}{self.RESET}"

    @staticmethod
    def _build_prefix(level_name: str, log_context: dict[str, Any]) -> str:
        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            level_name,
        ]

        if log_context["stage"]:
            parts.append(f"[{log_context['stage']}]")
        if log_context["interface"]:
            parts.append(f"[{log_context['interface']}]")

        return " - ".join(parts)

    @staticmethod
    def _build_tags(record: logging.LogRecord, log_context: dict[str, Any]) -> list[str]:
        message_id = getattr(record, "message_id", None) or log_context.get("message_id")
        subscriber = getattr(record, "subscriber", None)

        tags = []
        if message_id:
            tags.append(f"[msg:{str(message_id)[:8]}]")
        if subscriber:
            tags.append(f"[sub:{subscriber}]")
        return tags

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console output with optional color coding."""
        log_context = get_log_context()

        level_name = self._format_level_name(record)
        prefix = self._build_prefix(level_name, log_context)
        tags = self._build_tags(record, log_context)

        message = record.getMessage()
        if tags:
            message = f"{' '.join(tags)} {message}"

        line = f"{prefix} - {message}"
        if record.exc_info and record.levelno >= logging.ERROR:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line
