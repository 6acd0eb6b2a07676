from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlsplit

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _BaseHandler(BaseHTTPRequestHandler):
    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body and self.command != "HEAD":
            self.wfile.write(body)

    @property
    def request_path(self) -> str:
        """Request path without the query string."""
        return urlsplit(self.path).path

    def _not_implemented(self) -> None:
        self._respond(501, b"method is not implemented", "text/plain; charset=utf-8")

    do_HEAD = _not_implemented
    do_POST = _not_implemented
    do_PUT = _not_implemented
    do_PATCH = _not_implemented
    do_DELETE = _not_implemented
    do_OPTIONS = _not_implemented

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("ebs_tagger.health").debug(fmt, *args)


class _HealthHandler(_BaseHandler):
    """Liveness endpoint: ``GET /healthz`` answers ``OK`` while the process runs.

    Standby replicas answer too; leadership is not part of liveness.
    """

    def do_GET(self) -> None:
        if self.request_path == "/healthz":
            self._respond(200, b"OK", "text/plain; charset=utf-8")
        else:
            self._respond(404)


class _MetricsHandler(_BaseHandler):
    """Prometheus exposition on ``GET /metrics``."""

    def do_GET(self) -> None:
        if self.request_path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)


def _serve(
    handler_class: type[BaseHTTPRequestHandler], port: int, name: str
) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name=name, daemon=True).start()
    logging.getLogger(__name__).info(
        "%s server listening on :%d", name, server.server_address[1]
    )
    return server


def start_health_server(port: int) -> ThreadingHTTPServer:
    """Start the liveness server in a daemon thread and return it."""
    return _serve(_HealthHandler, port, "health")


def start_metrics_server(port: int) -> ThreadingHTTPServer:
    """Start the Prometheus metrics server in a daemon thread and return it."""
    return _serve(_MetricsHandler, port, "metrics")
