"""
Health check endpoints for staging workers.

Provides Kubernetes-compatible health check endpoints:
- /health/live - Liveness probe (is the worker's event loop responsive?)
- /health/ready - Readiness probe (is the staging store reachable?)

Usage:
    health_server = HealthCheckServer(port=8080, worker_name="delivery-orders")
    await health_server.start()
    health_server.set_ready(store_reachable=await backend.ping())
    ...
    await health_server.stop()
"""

import asyncio
import logging
import threading
import time
from datetime import UTC, datetime

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthCheckServer:
    """
    HTTP server for liveness/readiness probes.

    The server runs on its own event loop in a daemon thread so a stalled
    worker loop cannot also stall the probes.

    Readiness:
        200 when the staging store is reachable and no error is set.
        200 with status "error" when set_error() was called, so the error is
        visible in the body while the deployment still completes.
        503 otherwise.

    Liveness:
        200 unless a heartbeat was recorded and has gone stale.
    """

    def __init__(
        self,
        port: int | None = 8080,
        worker_name: str = "worker",
        enabled: bool = True,
        heartbeat_timeout_seconds: float = 60.0,
    ):
        """
        Args:
            port: HTTP port; 0 for dynamic assignment, None disables the server
            worker_name: Name reported in responses and logs
            enabled: If False, start() and stop() are no-ops
            heartbeat_timeout_seconds: Max seconds since the last heartbeat
                before liveness returns 503; 0 disables the check
        """
        self.port = port
        self.worker_name = worker_name
        self._enabled = enabled and port is not None
        self._ready = False
        self._store_reachable = False
        self._started_at = datetime.now(UTC)
        self._actual_port: int | None = None
        self._error_message: str | None = None

        self._heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self._last_heartbeat: float | None = None

        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

        self._thread: threading.Thread | None = None
        self._server_started = threading.Event()
        self._shutdown_event = threading.Event()
        self._state_lock = threading.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def set_ready(self, store_reachable: bool) -> None:
        with self._state_lock:
            self._store_reachable = store_reachable
            old_ready = self._ready
            self._ready = store_reachable and self._error_message is None

            if old_ready != self._ready:
                logger.info(
                    f"Readiness status changed: {old_ready} -> {self._ready}",
                    extra={"worker_id": self.worker_name},
                )

    def set_error(self, error_message: str) -> None:
        """Report a fatal startup/config error; the worker stays alive for inspection."""
        with self._state_lock:
            self._error_message = error_message
            self._ready = False
        logger.error(
            f"Health check error state set: {error_message}",
            extra={"worker_id": self.worker_name, "error": error_message},
        )

    def clear_error(self) -> None:
        with self._state_lock:
            self._error_message = None
            self._ready = self._store_reachable

    @property
    def error_message(self) -> str | None:
        with self._state_lock:
            return self._error_message

    def record_heartbeat(self) -> None:
        with self._state_lock:
            self._last_heartbeat = time.monotonic()

    @property
    def is_ready(self) -> bool:
        with self._state_lock:
            return self._ready

    @property
    def actual_port(self) -> int | None:
        return self._actual_port

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_liveness(self, request: web.Request) -> web.Response:
        with self._state_lock:
            last_hb = self._last_heartbeat
        uptime_seconds = int((datetime.now(UTC) - self._started_at).total_seconds())

        if self._heartbeat_timeout_seconds > 0 and last_hb is not None:
            staleness = time.monotonic() - last_hb
            if staleness > self._heartbeat_timeout_seconds:
                logger.warning(
                    "Liveness check failed: event loop heartbeat stale",
                    extra={"worker_id": self.worker_name},
                )
                return web.json_response(
                    {
                        "status": "unhealthy",
                        "reason": "event_loop_stale",
                        "worker": self.worker_name,
                        "heartbeat_staleness_seconds": round(staleness, 1),
                        "uptime_seconds": uptime_seconds,
                        "timestamp": datetime.now(UTC).isoformat(),
                    },
                    status=503,
                )

        return web.json_response(
            {
                "status": "alive",
                "worker": self.worker_name,
                "uptime_seconds": uptime_seconds,
                "timestamp": datetime.now(UTC).isoformat(),
            },
            status=200,
        )

    async def handle_readiness(self, request: web.Request) -> web.Response:
        with self._state_lock:
            error_message = self._error_message
            ready = self._ready
            store_reachable = self._store_reachable

        if error_message:
            return web.json_response(
                {
                    "status": "error",
                    "worker": self.worker_name,
                    "error": error_message,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
                status=200,
            )

        body = {
            "status": "ready" if ready else "not_ready",
            "worker": self.worker_name,
            "checks": {"store_reachable": store_reachable},
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if not ready:
            body["reasons"] = ["store_unreachable"]
        return web.json_response(body, status=200 if ready else 503)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health/live", self.handle_liveness)
        app.router.add_get("/health/ready", self.handle_readiness)
        return app

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _run_server_thread(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._serve())
        except Exception as e:
            logger.error(
                f"Health server thread error: {e}",
                extra={"worker_id": self.worker_name},
                exc_info=True,
            )
        finally:
            self._server_started.set()
            loop.close()

    async def _serve(self) -> None:
        try:
            if not await self._try_start_on_port(self.port):
                if self.port == 0 or not await self._try_start_on_port(0):
                    logger.warning(
                        "Could not start health check server",
                        extra={"worker_id": self.worker_name},
                    )
                    return
                logger.warning(
                    f"Port {self.port} in use, falling back to dynamic port assignment",
                    extra={"worker_id": self.worker_name},
                )
            logger.info(
                f"Health check server listening on port {self._actual_port}",
                extra={"worker_id": self.worker_name},
            )
            self._server_started.set()

            while not self._shutdown_event.is_set():
                await asyncio.sleep(0.2)
        finally:
            if self._runner:
                await self._runner.cleanup()
                self._runner = None

    async def _try_start_on_port(self, port: int) -> bool:
        try:
            self._runner = web.AppRunner(self.create_app())
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, "0.0.0.0", port, reuse_address=True)
            await self._site.start()

            if self._site._server and self._site._server.sockets:
                self._actual_port = self._site._server.sockets[0].getsockname()[1]
            else:
                self._actual_port = port
            return True
        except OSError as e:
            # Port in use: errno 98 (Linux) or 10048 (Windows)
            if e.errno in (98, 10048):
                await self._runner.cleanup()
                self._runner = None
                self._site = None
                return False
            raise

    async def start(self) -> None:
        if not self._enabled:
            return
        if self._thread is not None and self._thread.is_alive():
            return

        self._thread = threading.Thread(
            target=self._run_server_thread,
            name=f"health-server-{self.worker_name}",
            daemon=True,
        )
        self._thread.start()

        started = await asyncio.to_thread(self._server_started.wait, 5.0)
        if not started or self._actual_port is None:
            logger.error(
                "Health server failed to start listening",
                extra={"worker_id": self.worker_name},
            )
            self._enabled = False

    async def stop(self) -> None:
        if not self._enabled or not self._thread:
            return

        self._shutdown_event.set()
        await asyncio.to_thread(self._thread.join, 5.0)
        if self._thread.is_alive():
            logger.warning(
                "Health server thread did not stop cleanly",
                extra={"worker_id": self.worker_name},
            )
        self._thread = None
        self._actual_port = None
        self._server_started.clear()
        self._shutdown_event.clear()


__all__ = ["HealthCheckServer"]
