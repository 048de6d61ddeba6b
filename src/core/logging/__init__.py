"""
Structured logging module.

Provides JSON logging with context propagation (worker, stage, interface,
message) via contextvars.
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.context_managers import (
    LogContext,
    OperationContext,
    log_operation,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.periodic_logger import PeriodicStatsLogger
from core.logging.setup import (
    generate_cycle_id,
    get_log_file_path,
    get_logger,
    log_worker_startup,
    setup_logging,
    setup_multi_worker_logging,
)
from core.logging.utilities import format_cycle_output, log_exception, log_with_context

__all__ = [
    # Setup
    "setup_logging",
    "setup_multi_worker_logging",
    "get_logger",
    "generate_cycle_id",
    "get_log_file_path",
    "log_worker_startup",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    # Context Managers
    "LogContext",
    "OperationContext",
    "log_operation",
    # Utilities
    "log_with_context",
    "log_exception",
    "format_cycle_output",
    "PeriodicStatsLogger",
]
