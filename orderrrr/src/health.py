from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    caches_synced: Callable[[], bool]
    loop_running: threading.Event

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            synced = self.caches_synced()
            running = self.loop_running.is_set()
            body = f"synced={str(synced).lower()} running={str(running).lower()}".encode()
            self._respond(200 if synced and running else 503, body)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("orderrrr.health").debug(fmt, *args)


def make_health_handler(
    caches_synced: Callable[[], bool], loop_running: threading.Event
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness sources.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    # Plain functions assigned on a class would bind as methods.
    _BoundHealthHandler.caches_synced = staticmethod(caches_synced)  # type: ignore[assignment]
    _BoundHealthHandler.loop_running = loop_running
    return _BoundHealthHandler


def start_health_server(
    caches_synced: Callable[[], bool], loop_running: threading.Event, port: int
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(caches_synced, loop_running)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
