"""Context managers for structured logging."""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from core.logging.context import CONTEXT_FIELDS, get_log_context, set_log_context
from core.logging.utilities import log_exception, log_with_context


class LogContext:
    """
    Context manager for temporary log context.

    Usage:
        with LogContext(stage="delivery", message_id=message.id):
            # All logs in this block will have stage and message_id
            deliver(message)
    """

    def __init__(
        self,
        cycle_id: Optional[str] = None,
        stage: Optional[str] = None,
        worker_id: Optional[str] = None,
        interface: Optional[str] = None,
        message_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ):
        self.new_context = {
            "cycle_id": cycle_id,
            "stage": stage,
            "worker_id": worker_id,
            "interface": interface,
            "message_id": message_id,
            "instance_id": instance_id,
        }
        self.old_context: Dict[str, str] = {}

    def __enter__(self) -> "LogContext":
        self.old_context = get_log_context()
        set_log_context(**{k: v for k, v in self.new_context.items() if v is not None})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        # Restore old context
        set_log_context(**{k: self.old_context.get(k, "") for k in CONTEXT_FIELDS})
        return False


class OperationContext:
    """Context manager for timed operations with automatic logging."""

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        level: int = logging.DEBUG,
        slow_threshold_ms: Optional[float] = 1000.0,
        log_start: bool = False,
        **context: Any,
    ):
        self.logger = logger
        self.operation = operation
        # Convert string level names to integers
        if isinstance(level, str):
            self.level = getattr(logging, level.upper(), logging.DEBUG)
        else:
            self.level = level
        self.slow_threshold_ms = slow_threshold_ms
        self.log_start = log_start
        self.context = context
        self._start_time: Optional[float] = None

    def __enter__(self) -> "OperationContext":
        self._start_time = time.perf_counter()
        if self.log_start:
            log_with_context(
                self.logger,
                logging.DEBUG,
                f"Starting: {self.operation}",
                operation=self.operation,
                **self.context,
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self._start_time) * 1000

        # Slow operations are promoted to INFO
        effective_level = self.level
        if self.slow_threshold_ms and duration_ms > self.slow_threshold_ms:
            effective_level = max(self.level, logging.INFO)

        if exc_val is not None:
            log_exception(
                self.logger,
                exc_val,
                f"Failed: {self.operation}",
                duration_ms=round(duration_ms, 2),
                operation=self.operation,
                **self.context,
            )
        else:
            log_with_context(
                self.logger,
                effective_level,
                f"Completed: {self.operation}",
                duration_ms=round(duration_ms, 2),
                operation=self.operation,
                **self.context,
            )
        return False

    def add_context(self, **kwargs: Any) -> None:
        """Add context mid-operation (record counts, etc)."""
        self.context.update(kwargs)


@contextmanager
def log_operation(
    logger: logging.Logger,
    operation: str,
    level: int = logging.DEBUG,
    slow_threshold_ms: Optional[float] = 1000.0,
    **context: Any,
):
    """Convenience context manager for ad-hoc operation logging."""
    with OperationContext(
        logger, operation, level=level, slow_threshold_ms=slow_threshold_ms, **context
    ) as ctx:
        yield ctx
