"""Logging setup and configuration."""

import io
import logging
import secrets
import shutil
import sys
import threading
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.filters import StageContextFilter
from core.logging.formatters import ConsoleFormatter, JSONFormatter

# Default settings
DEFAULT_LOG_DIR = Path("logs")
DEFAULT_ROTATION_WHEN = "H"
DEFAULT_ROTATION_INTERVAL = 1
DEFAULT_BACKUP_COUNT = 24
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG
DEFAULT_LOG_SUBDIR = "staging"

# Ordinal suffix for log files when several processes share a log directory
_instance_counter = 0
_instance_counter_lock = threading.Lock()


def _get_next_instance_id() -> str:
    """Get next instance ID as ordinal number (thread-safe)."""
    global _instance_counter
    with _instance_counter_lock:
        instance_id = str(_instance_counter)
        _instance_counter += 1
        return instance_id


# Noisy loggers to suppress
NOISY_LOGGERS = [
    "aiohttp",
    "aiohttp.access",
    "aiosqlite",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "urllib3",
]


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    TimedRotatingFileHandler that moves rotated files into an archive folder.

    Example:
        Before rotation:
            logs/staging/2026-01-05/staging_delivery_0105_1430_0.log

        After rotation:
            logs/staging/2026-01-05/staging_delivery_0105_1430_0.log (new file)
            logs/archive/staging/2026-01-05/staging_delivery_0105_1430_0.log.2026-01-05_14
    """

    def __init__(
        self,
        filename,
        when="midnight",
        interval=1,
        backupCount=0,
        encoding=None,
        delay=False,
        utc=False,
        archive_dir=None,
    ):
        super().__init__(filename, when, interval, backupCount, encoding, delay, utc)
        if archive_dir:
            self.archive_dir = Path(archive_dir)
        else:
            self.archive_dir = Path(self.baseFilename).parent / "archive"

        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def doRollover(self):
        super().doRollover()

        log_path = Path(self.baseFilename)
        for rotated_file in log_path.parent.glob(f"{log_path.name}.*"):
            if rotated_file == log_path:
                continue

            try:
                shutil.move(str(rotated_file), str(self.archive_dir / rotated_file.name))
            except OSError as e:
                # stderr, not the logger: we are inside a handler
                print(f"Warning: Failed to archive {rotated_file}: {e}", file=sys.stderr)


def _archive_dir_for(log_dir: Path, log_file: Path) -> Path:
    try:
        return log_dir / "archive" / log_file.relative_to(log_dir).parent
    except ValueError:
        return log_file.parent / "archive"


def get_log_file_path(
    log_dir: Path,
    subdir: str | None = DEFAULT_LOG_SUBDIR,
    stage: str | None = None,
    instance_id: str | None = None,
) -> Path:
    """
    Build log file path with a subdir/date folder structure.

    Structure: {log_dir}/{subdir}/{YYYY-MM-DD}/{subdir}_{stage}_{MMDD}_{HHMM}_{instance}.log

    Examples:
        logs/staging/2026-01-05/staging_delivery_0105_1430_0.log
        logs/staging/2026-01-05/staging_reaper_0105_0930_1.log

    Args:
        log_dir: Base log directory
        subdir: Folder (and filename prefix) under log_dir
        stage: Worker stage name (delivery, reaper, lock-renewal, ...)
        instance_id: Suffix keeping concurrent processes out of each other's files

    Returns:
        Full path to log file
    """
    now = datetime.now()
    date_folder = now.strftime("%Y-%m-%d")
    stamp = now.strftime("%m%d_%H%M")

    prefix = "_".join(p for p in (subdir, stage) if p) or "staging"
    filename = f"{prefix}_{stamp}_{instance_id or _get_next_instance_id()}.log"

    if subdir:
        return log_dir / subdir / date_folder / filename
    return log_dir / date_folder / filename


def _stdout_handler() -> logging.StreamHandler:
    if sys.platform == "win32":
        safe_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
        return logging.StreamHandler(safe_stdout)
    return logging.StreamHandler(sys.stdout)


def _file_handler(
    log_dir: Path,
    log_file: Path,
    json_format: bool,
    level: int,
    rotation_when: str,
    rotation_interval: int,
    backup_count: int,
) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = ArchivingTimedRotatingFileHandler(
        log_file,
        when=rotation_when,
        interval=rotation_interval,
        backupCount=backup_count,
        encoding="utf-8",
        archive_dir=_archive_dir_for(log_dir, log_file),
    )
    handler.setLevel(level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
        )
    return handler


def setup_logging(
    name: str = "staging",
    stage: str | None = None,
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    rotation_when: str = DEFAULT_ROTATION_WHEN,
    rotation_interval: int = DEFAULT_ROTATION_INTERVAL,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: str | None = None,
    use_instance_id: bool = True,
    log_to_stdout: bool = False,
) -> logging.Logger:
    """
    Configure logging with a console handler and an archiving rotating file handler.

    Args:
        name: Logger name to return
        stage: Stage name used in the log file name and log context
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        rotation_when: When to rotate logs - 'midnight', 'H' (hourly), 'M' (minutes)
        rotation_interval: Interval for rotation (default: 1)
        backup_count: Number of backup files to keep
        suppress_noisy: Quiet down HTTP client and database driver loggers
        worker_id: Worker identifier for context
        use_instance_id: Add an ordinal suffix to the log filename (default: True)
        log_to_stdout: Send all log output to stdout only, skipping file handlers.
            Useful for containerized deployments where logs are captured from stdout.

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR

    if worker_id:
        set_log_context(worker_id=worker_id)
    if stage:
        set_log_context(stage=stage)

    console_handler = _stdout_handler()
    console_handler.setFormatter(ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()

    log_file = None
    if log_to_stdout:
        console_handler.setLevel(file_level)
        root_logger.addHandler(console_handler)
    else:
        console_handler.setLevel(console_level)

        instance_id = _get_next_instance_id() if use_instance_id else None
        log_file = get_log_file_path(log_dir, stage=stage, instance_id=instance_id)

        root_logger.addHandler(
            _file_handler(
                log_dir,
                log_file,
                json_format,
                file_level,
                rotation_when,
                rotation_interval,
                backup_count,
            )
        )
        root_logger.addHandler(console_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    if log_file is None:
        logger.debug("Logging initialized: stdout-only mode")
    else:
        logger.debug(f"Logging initialized: file={log_file}, json={json_format}")

    return logger


def setup_multi_worker_logging(
    workers: list[str],
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    rotation_when: str = DEFAULT_ROTATION_WHEN,
    rotation_interval: int = DEFAULT_ROTATION_INTERVAL,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    use_instance_id: bool = True,
    log_to_stdout: bool = False,
) -> logging.Logger:
    """
    Configure logging with one file per worker plus a combined file.

    Each per-worker handler is filtered on the "stage" log context, so a
    process running every worker still gets separate delivery/reaper files.

    Args:
        workers: Worker stage names (e.g., ["delivery", "reaper"])
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        rotation_when: When to rotate logs
        rotation_interval: Interval for rotation
        backup_count: Number of backup files to keep
        suppress_noisy: Quiet down HTTP client and database driver loggers
        use_instance_id: Add an ordinal suffix to log filenames
        log_to_stdout: Send all log output to stdout only, skipping file handlers

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = _stdout_handler()
    console_handler.setFormatter(ConsoleFormatter())

    if log_to_stdout:
        console_handler.setLevel(file_level)
        root_logger.addHandler(console_handler)
    else:
        console_handler.setLevel(console_level)
        root_logger.addHandler(console_handler)

        instance_id = _get_next_instance_id() if use_instance_id else None

        for worker in workers:
            handler = _file_handler(
                log_dir,
                get_log_file_path(log_dir, stage=worker, instance_id=instance_id),
                json_format,
                file_level,
                rotation_when,
                rotation_interval,
                backup_count,
            )
            handler.addFilter(StageContextFilter(worker))
            root_logger.addHandler(handler)

        # Combined file receives everything
        root_logger.addHandler(
            _file_handler(
                log_dir,
                get_log_file_path(log_dir, stage=None, instance_id=instance_id),
                json_format,
                file_level,
                rotation_when,
                rotation_interval,
                backup_count,
            )
        )

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger("staging")
    logger.debug(
        f"Multi-worker logging initialized: workers={workers}, stdout_only={log_to_stdout}"
    )
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Use this instead of logging.getLogger() to ensure consistent naming.
    """
    return logging.getLogger(name)


def log_worker_startup(
    logger: logging.Logger,
    worker_name: str,
    store_backend: str | None = None,
    instance_id: str | None = None,
    interfaces: list[str] | None = None,
    extra_config: dict | None = None,
) -> None:
    """
    Log standard worker startup information.

    Args:
        logger: Logger instance to use
        worker_name: Name of the worker starting up
        store_backend: Staging store backend ("json" or "sql")
        instance_id: Hosting instance the worker delivers for
        interfaces: Interfaces with a hosted destination adapter
        extra_config: Additional configuration to log
    """
    logger.info("=" * 70)
    logger.info("Starting %s", worker_name)
    logger.info("=" * 70)

    if store_backend:
        logger.info("Store backend: %s", store_backend)
    if instance_id:
        logger.info("Instance: %s", instance_id)
    if interfaces:
        logger.info("Interfaces: %s", ", ".join(interfaces))

    if extra_config:
        for key, value in extra_config.items():
            logger.info("%s: %s", key, value)

    logger.info("=" * 70)


def generate_cycle_id() -> str:
    """
    Generate unique cycle identifier.

    Format: c-YYYYMMDD-HHMMSS-XXXX where XXXX is random hex.
    """
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = secrets.token_hex(2)
    return f"c-{ts}-{suffix}"
