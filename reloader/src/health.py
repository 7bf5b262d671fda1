from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest

WatchNames = Callable[[], Iterable[str]]


def _no_watch_names() -> Iterable[str]:
    return ()


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, watch readiness, and Prometheus metrics."""

    ready_event: threading.Event
    watch_names: WatchNames

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness_body(self, ready: bool) -> bytes:
        # e.g. "watches=ready configmap-watch,secret-watch"
        body = "watches=ready" if ready else "watches=not-ready"
        names = ",".join(sorted(self.watch_names()))
        if names:
            body = f"{body} {names}"
        return body.encode()

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready = self.ready_event.is_set()
            self._respond(200 if ready else 503, self._readiness_body(ready))
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("reloader.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event,
    watch_names: WatchNames = _no_watch_names,
) -> type[_HealthHandler]:
    """Return a handler class bound to the watch manager's readiness.

    ``watch_names`` is polled on every ``/readyz`` request and lists the
    watches currently open, so a lost stream shows up by name.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.watch_names = staticmethod(watch_names)  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    watch_names: WatchNames = _no_watch_names,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(  # noqa: S104
        ("0.0.0.0", port), make_health_handler(ready, watch_names)
    )
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True, name="health-server").start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
