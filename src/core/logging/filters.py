"""Log filters for context-based routing."""

import logging

from .context import get_log_context


class StageContextFilter(logging.Filter):
    """
    Pass only records logged while the context stage matches.

    Used to route logs to worker-specific file handlers when several
    workers share one process.

    Usage:
        handler = RotatingFileHandler("delivery.log")
        handler.addFilter(StageContextFilter("delivery"))
    """

    def __init__(self, stage: str):
        super().__init__()
        self.stage = stage

    def filter(self, record: logging.LogRecord) -> bool:
        stage = getattr(record, "stage", None) or get_log_context().get("stage")
        return stage == self.stage
