"""Logging utility functions."""

import logging
from typing import Any

# Reserved LogRecord attribute names that cannot be used in extra dict
_RESERVED_LOG_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "asctime",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (message_id, duration_ms, etc.)
                  Note: exc_info=True is supported and handled specially.

    Example:
        log_with_context(
            logger, logging.INFO, "Delivered",
            message_id=message.id,
            subscriber="erp",
            duration_ms=elapsed,
        )
    """
    # exc_info is a direct parameter to log(), not extra
    exc_info = kwargs.pop("exc_info", None)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}

    logger.log(level, msg, exc_info=exc_info, extra=extra)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from PipelineError subclasses.

    Args:
        logger: Logger instance
        exc: Exception to log
        msg: Context message
        level: Log level (default: ERROR)
        include_traceback: Include full traceback (default: True)
        **kwargs: Additional context fields

    Example:
        try:
            await adapter.write(payload)
        except Exception as e:
            log_exception(logger, e, "Delivery failed", subscriber=name)
    """
    error_category = kwargs.get("error_category")
    if error_category is None and hasattr(exc, "category"):
        cat = exc.category
        error_category = cat.value if hasattr(cat, "value") else str(cat)
        kwargs["error_category"] = error_category

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg
    kwargs.setdefault("error_type", type(exc).__name__)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}
    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=extra)
    else:
        logger.log(level, msg, extra=extra)


def format_cycle_output(
    cycle_count: int,
    delivered: int,
    failed: int,
    dead_lettered: int = 0,
    released: int = 0,
    since_last: dict[str, int] | None = None,
    interval_seconds: int = 30,
) -> str:
    """
    Format standardized cycle output for workers with delta tracking.

    Args:
        cycle_count: Current cycle number
        delivered: Total messages fully delivered
        failed: Total failed delivery attempts
        dead_lettered: Total messages moved to the dead letter state
        released: Total leases handed back with subscribers still pending
        since_last: Optional delta counts since last cycle (same keys)
        interval_seconds: Cycle interval in seconds (default: 30)

    Example:
        >>> format_cycle_output(1, 120, 3)
        'Cycle 1: processed=123 (delivered=120, failed=3)'
        >>> format_cycle_output(5, 120, 3, 0, 0, {"delivered": 24, "failed": 0}, 30)
        'Cycle 5: +24 this cycle | total: 120 delivered, 3 failed | 0.8 msg/s'
    """
    if since_last is not None:
        delta_total = sum(
            since_last.get(k, 0) for k in ("delivered", "failed", "dead_lettered", "released")
        )
        rate = delta_total / interval_seconds if interval_seconds > 0 else 0

        total_parts = [f"{delivered} delivered"]
        if failed > 0:
            total_parts.append(f"{failed} failed")
        if dead_lettered > 0:
            total_parts.append(f"{dead_lettered} dead-lettered")
        if released > 0:
            total_parts.append(f"{released} released")

        parts = [
            f"+{delta_total} this cycle",
            f"total: {', '.join(total_parts)}",
            f"{rate:.1f} msg/s",
        ]
        return f"Cycle {cycle_count}: {' | '.join(parts)}"

    total = delivered + failed + dead_lettered + released
    parts = [f"delivered={delivered}", f"failed={failed}"]
    if dead_lettered > 0:
        parts.append(f"dead_lettered={dead_lettered}")
    if released > 0:
        parts.append(f"released={released}")

    return f"Cycle {cycle_count}: processed={total} ({', '.join(parts)})"


def detect_log_output_mode() -> str:
    """
    Detect current log output mode by inspecting active logging handlers.

    Returns:
        "file+stdout", "stdout", or "console" (no handlers configured)
    """
    handlers = logging.getLogger().handlers
    has_file = any(isinstance(h, logging.FileHandler) for h in handlers)
    if has_file:
        return "file+stdout"
    return "stdout" if handlers else "console"
