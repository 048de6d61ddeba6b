"""Staging engine worker orchestration. Use --help for usage."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv
from prometheus_client import start_http_server

from config.config import StagingConfig, load_config
from core.logging import setup_logging, setup_multi_worker_logging
from core.logging.utilities import detect_log_output_mode
from core.utils import generate_worker_id
from staging.health import HealthCheckServer
from staging.runners import (
    WORKER_REGISTRY,
    delivery_interfaces,
    run_all_workers,
    run_worker_from_registry,
    stage_file,
)
from staging.store import create_backend

# __main__.py is at src/staging/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

WORKER_STAGES = list(WORKER_REGISTRY.keys())

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)

# Set by signal handlers, checked by workers to finish the current message before exiting
_shutdown_event: asyncio.Event | None = None


def get_shutdown_event() -> asyncio.Event:
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run staging engine workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run the reaper plus one delivery worker per configured interface
    python -m staging

    # Run only the delivery workers, three competing instances each
    python -m staging --worker delivery --count 3

    # Deliver a single interface
    python -m staging --worker delivery --interface orders

    # Debatch one file into the staging store and exit
    python -m staging --stage data/inbox/orders.csv --interface orders

    # Use a different config file and metrics port
    python -m staging --config /etc/staging/config.yaml --metrics-port 9090
        """,
    )

    parser.add_argument(
        "--worker",
        choices=WORKER_STAGES + ["all"],
        default="all",
        help="Which worker(s) to run (default: all)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: src/config/config.yaml)",
    )

    parser.add_argument(
        "--interface",
        type=str,
        default=None,
        help="Interface to deliver (delivery worker) or to stage into (--stage)",
    )

    parser.add_argument(
        "--stage",
        type=Path,
        default=None,
        metavar="FILE",
        help="Debatch FILE into the staging store for --interface, then exit",
    )

    parser.add_argument(
        "--count",
        "-c",
        type=int,
        default=1,
        help="Delivery worker instances per interface (default: 1). "
        "Instances compete for leases on the same messages.",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server (default: 8000)",
    )

    parser.add_argument(
        "--health-port",
        type=int,
        default=int(os.getenv("HEALTH_PORT", "8080")),
        help="Port for /health/live and /health/ready (default: 8080, 0 for dynamic)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Console logging level (default: from config, else INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or config)",
    )

    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )

    args = parser.parse_args(argv)
    if args.stage is not None and not args.interface:
        parser.error("--stage requires --interface")
    if args.count < 1:
        parser.error("--count must be >= 1")
    return args


def start_metrics_server(preferred_port: int) -> int:
    """Start Prometheus metrics server with automatic port fallback.
    Returns actual port number that the server is listening on."""
    import socket

    try:
        start_http_server(preferred_port)
        return preferred_port
    except OSError as e:
        if e.errno == 98:
            logger.info(
                "Port already in use, finding available port",
                extra={"preferred_port": preferred_port},
            )

            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind(("", 0))
                s.listen(1)
                available_port = s.getsockname()[1]

            start_http_server(available_port)
            return available_port
        else:
            raise


def setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown.

    First signal: sets the shutdown event; workers finish the message in hand.
    Second signal: cancels all tasks; unresolved leases are left to the reaper.
    Signal handlers are not supported on Windows, KeyboardInterrupt is used there."""

    def handle_signal(sig):
        logger.info("Received signal, initiating graceful shutdown", extra={"signal": sig.name})
        shutdown_event = get_shutdown_event()
        if not shutdown_event.is_set():
            shutdown_event.set()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    if sys.platform == "win32":
        logger.debug("Signal handlers not supported on Windows, using KeyboardInterrupt")
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() in ("true", "1", "yes")


def _setup_environment(argv: list[str] | None = None):
    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)
    worker_name = "stage" if args.stage is not None else args.worker
    worker_id = os.getenv("WORKER_ID") or generate_worker_id(worker_name)
    return args, worker_id


def _setup_logging(args, config: StagingConfig, worker_id: str) -> None:
    log_level = getattr(logging, args.log_level or config.logging.level.upper(), logging.INFO)
    log_dir = Path(args.log_dir or os.getenv("LOG_DIR") or config.logging.log_dir)
    log_to_stdout = args.log_to_stdout or _env_flag("LOG_TO_STDOUT") or config.logging.log_to_stdout

    if args.worker == "all" and args.stage is None:
        setup_multi_worker_logging(
            workers=WORKER_STAGES,
            log_dir=log_dir,
            json_format=config.logging.json_format,
            console_level=log_level,
            log_to_stdout=log_to_stdout,
        )
    else:
        setup_logging(
            name="staging",
            stage="stage" if args.stage is not None else args.worker,
            log_dir=log_dir,
            json_format=config.logging.json_format,
            console_level=log_level,
            worker_id=worker_id,
            log_to_stdout=log_to_stdout,
        )


async def _run_stage(args, config: StagingConfig) -> int:
    backend = create_backend(config)
    try:
        await backend.ensure_schema()
        result = await stage_file(config, backend, args.stage, args.interface)
    finally:
        await backend.close()

    print(
        f"Staged {result.staged} messages from {args.stage} "
        f"({result.dropped} dropped) for interface '{args.interface}'"
    )
    return 0


async def _run_workers(args, config: StagingConfig, health_server: HealthCheckServer) -> None:
    shutdown_event = get_shutdown_event()
    backend = create_backend(config)
    try:
        await backend.ensure_schema()
        health_server.set_ready(store_reachable=await backend.ping())

        if args.worker == "all":
            await run_all_workers(
                config, backend, shutdown_event, count=args.count, health_server=health_server
            )
        else:
            await run_worker_from_registry(
                args.worker,
                config,
                backend,
                shutdown_event,
                interface_name=args.interface,
                count=args.count,
                health_server=health_server,
            )
    finally:
        await backend.close()


def main(argv: list[str] | None = None) -> int:
    global logger

    args, worker_id = _setup_environment(argv)

    try:
        config = load_config(config_path=args.config)
    except (ValueError, FileNotFoundError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    _setup_logging(args, config, worker_id)
    logger = logging.getLogger(__name__)

    print(f"[STARTUP] Log output mode: {detect_log_output_mode()}", flush=True)
    print(f"[STARTUP] Worker ID: {worker_id}", flush=True)

    if args.interface and args.interface not in config.interfaces:
        logger.error(
            "Unknown interface",
            extra={"interface": args.interface, "available": sorted(config.interfaces)},
        )
        return 1

    if args.stage is not None:
        return asyncio.run(_run_stage(args, config))

    logger.info(
        "Starting staging workers",
        extra={
            "worker_id": worker_id,
            "worker": args.worker,
            "interfaces": delivery_interfaces(config),
        },
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    setup_signal_handlers(loop)

    health_server = HealthCheckServer(
        port=args.health_port,
        worker_name=args.worker if args.worker != "all" else "all-workers",
    )
    loop.run_until_complete(health_server.start())

    actual_port = start_metrics_server(args.metrics_port)
    if actual_port != args.metrics_port:
        logger.info(
            "Metrics server started on fallback port",
            extra={"actual_port": actual_port, "preferred_port": args.metrics_port},
        )
    else:
        logger.info("Metrics server started", extra={"port": actual_port})

    exit_code = 0
    try:
        loop.run_until_complete(_run_workers(args, config, health_server))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    except Exception as e:
        error_msg = str(e)
        logger.error("Fatal error", extra={"error": error_msg}, exc_info=True)
        health_server.set_error(f"Fatal error: {error_msg}")
        logger.info("Health server set to error state, waiting for shutdown...")
        loop.run_until_complete(get_shutdown_event().wait())
        exit_code = 1
    finally:
        loop.run_until_complete(health_server.stop())
        loop.close()
        logger.info("Staging shutdown complete")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
