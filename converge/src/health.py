from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from converge.src.supervisor import ControllerManager

LOGGER = logging.getLogger(__name__)


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, leadership and Prometheus metrics endpoints."""

    healthy_fn: Callable[[], bool]
    ready_fn: Callable[[], bool]
    leader_fn: Callable[[], bool]
    status_fn: Callable[[], dict[str, Any]]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            if self.healthy_fn():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"controller failed")
        elif self.path == "/leadz":
            if self.leader_fn():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            if self.ready_fn():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/statusz":
            body = json.dumps(self.status_fn(), sort_keys=True).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("converge.health").debug(fmt, *args)


def make_health_handler(manager: ControllerManager) -> type[_HealthHandler]:
    """Return a handler class bound to *manager*.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        healthy_fn = staticmethod(lambda: manager.healthy)
        ready_fn = staticmethod(lambda: manager.ready)
        leader_fn = staticmethod(lambda: manager.leading)
        status_fn = staticmethod(manager.status)

    return _BoundHealthHandler


def start_health_server(
    manager: ControllerManager, port: int, host: str = "0.0.0.0"  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(manager)
    server = ThreadingHTTPServer((host, port), handler_class)
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
