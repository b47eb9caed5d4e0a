"""Health route server that keeps itself awake through a HealthChecker."""

import json
import logging
import threading
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, Optional

from .checker import HealthChecker
from .config import ServerConfig, self_endpoint
from .models import CheckerStatus, CheckResult
from .reporter import format_timestamp

logger = logging.getLogger(__name__)


class ServerError(Exception):
    """Raised when the health route server cannot start."""
    pass


def _result_to_dict(result: CheckResult) -> Dict[str, Any]:
    """Convert a CheckResult to a JSON-serializable dictionary."""
    return {
        "endpoint": result.endpoint,
        "status": result.status,
        "is_up": result.is_up,
        "response_time_ms": result.response_time_ms,
        "timestamp": format_timestamp(result.timestamp),
        "error": result.error,
        "attempts": result.attempts,
    }


def _status_to_dict(status: CheckerStatus) -> Dict[str, Any]:
    """Convert a CheckerStatus snapshot to a JSON-serializable dictionary."""
    last_ping = status.last_ping_timestamp
    return {
        "is_active": status.is_active,
        "endpoints": status.endpoints,
        "interval_ms": status.interval_ms,
        "last_ping": format_timestamp(last_ping) if last_ping else None,
        "results": {endpoint: _result_to_dict(r) for endpoint, r in status.last_results.items()},
    }


class PingHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the ping route."""

    # Class-level references set by factory
    route: str = "/ping"
    message: str = ""
    checker: Optional[HealthChecker] = None

    def log_message(self, format: str, *args: Any) -> None:
        """Route access logs through logging instead of stderr."""
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Dict[str, Any], include_body: bool = True) -> None:
        """Send a JSON response."""
        body = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-cache")
        self.end_headers()
        if include_body:
            self.wfile.write(body)

    def _route(self, include_body: bool) -> None:
        path = self.path.split("?", 1)[0]
        if path == self.route:
            self._send_json(200, self._ping_response(), include_body)
        elif path == f"{self.route.rstrip('/')}/status" and self.checker is not None:
            self._send_json(200, _status_to_dict(self.checker.status()), include_body)
        else:
            self._send_json(404, {"error": "Not found"}, include_body)

    def _ping_response(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "message": self.message,
            "timestamp": format_timestamp(datetime.now(UTC)),
        }

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._route(include_body=True)

    def do_HEAD(self) -> None:
        """Handle HEAD requests."""
        self._route(include_body=False)


def _create_handler_class(
    route: str,
    message: str,
    checker: Optional[HealthChecker] = None,
) -> type:
    """Create a handler class with the route and checker bound."""

    class BoundPingHandler(PingHandler):
        pass

    BoundPingHandler.route = route
    BoundPingHandler.message = message
    BoundPingHandler.checker = checker
    return BoundPingHandler


class PingServer:
    """Threaded server exposing a ping route and driving a HealthChecker.

    On start the server registers its own ping URL with the checker (when
    register_self is set) and starts the checker; stop() stops both.
    """

    def __init__(
        self,
        config: ServerConfig,
        checker: Optional[HealthChecker] = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Server configuration.
            checker: Checker whose lifecycle follows the server's.
        """
        self.config = config
        self.checker = checker
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.port

    @property
    def self_url(self) -> str:
        """URL other processes (and the checker) use to reach the ping route."""
        return self_endpoint(
            self.config.route,
            port=self.port,
            host="localhost",
            public_url=self.config.public_url,
        )

    def start(self) -> None:
        """Start serving in a background thread, then start the checker.

        Raises:
            ServerError: If the server fails to bind.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Ping server is already running")
            return

        try:
            handler_class = _create_handler_class(self.config.route, self.config.message, self.checker)
            self._server = HTTPServer((self.config.host, self.config.port), handler_class)
            self._server.timeout = 0.5  # Allow periodic shutdown checks
        except OSError as e:
            if e.errno in (98, 48):  # EADDRINUSE (Linux=98, macOS=48)
                raise ServerError(f"Port {self.config.port} is already in use")
            elif e.errno == 13:  # EACCES
                raise ServerError(
                    f"Permission denied for port {self.config.port}. Ports below 1024 require root privileges."
                )
            raise ServerError(f"Failed to start ping server on port {self.config.port}: {e}")

        self._shutdown_event.clear()
        self._thread = threading.Thread(target=self._serve_forever, name="pingme-server", daemon=True)
        self._thread.start()
        logger.info("Ping server listening on port %d (route %s)", self.port, self.config.route)

        if self.checker is not None:
            if self.config.register_self:
                self.checker.register(self.self_url)
            self.checker.start()

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the checker, then the server."""
        if self.checker is not None:
            self.checker.stop()

        if self._thread is None:
            return

        logger.info("Stopping ping server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("Ping server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
