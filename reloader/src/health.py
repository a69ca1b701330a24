from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/live``, ``/readyz`` and ``/metrics``."""

    ready_events: Sequence[threading.Event] = ()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/live":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            waiting = sum(1 for event in self.ready_events if not event.is_set())
            if waiting == 0:
                self._respond(200, b"ready")
            else:
                self._respond(503, f"waiting for {waiting} watcher(s)".encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("reloader.health").debug(fmt, *args)


def start_health_server(ready: Sequence[threading.Event], port: int) -> ThreadingHTTPServer:
    """Start the health/metrics server in a daemon thread.

    ``/readyz`` turns green once every event in *ready* is set, i.e. once every
    watcher finished its initial list.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_events = tuple(ready)

    server = ThreadingHTTPServer(("0.0.0.0", port), _BoundHealthHandler)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
