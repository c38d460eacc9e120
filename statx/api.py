"""HTTP API server exposing uptime queries, targets and stats."""

import errno
import json
import logging
import threading
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .config import ApiConfig, Config, format_duration
from .query import parse_time_range, query_status
from .store import SampleStore, StoreError

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised when an API operation fails."""

    pass


def _targets_response(config: Config) -> list[dict[str, Any]]:
    """Build the /api/targets payload."""
    return [
        {"url": target.url, "interval": format_duration_seconds(target.interval)}
        for target in config.targets
    ]


def _stats_response(config: Config, store: SampleStore) -> dict[str, Any]:
    """Build the /api/stats payload."""
    storage = config.storage
    return {
        "targets_count": len(config.targets),
        "retention_period": format_duration_seconds(storage.retention_period),
        "block_duration": format_duration_seconds(storage.block_duration),
        "max_blocks": storage.max_blocks_to_read,
        "max_samples_daily": storage.max_samples_per_day,
        "series_count": store.series_count(),
        "sample_count": store.sample_count(),
        "last_purge": store.last_purge(),
    }


def format_duration_seconds(seconds: float) -> str:
    """Render a number of seconds as a duration string, e.g. 90 -> "1m30s"."""
    return format_duration(timedelta(seconds=seconds))


class StatusHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the JSON API."""

    # Bound per server by _create_handler_class.
    store: SampleStore
    app_config: Config

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Any) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"success": False, "message": message})

    def do_GET(self) -> None:
        """Handle GET requests."""
        try:
            parts = urlsplit(self.path)
            path = parts.path.rstrip("/") or "/"
            params = {name: values[0] for name, values in parse_qs(parts.query).items()}

            if path == "/health":
                self._send_json(200, {"status": "ok"})
            elif path == "/api/status":
                self._handle_status(params)
            elif path == "/api/targets":
                self._handle_targets()
            elif path == "/api/stats":
                self._handle_stats()
            else:
                self._send_error_json(404, "Not found")
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _handle_status(self, params: dict[str, str]) -> None:
        """Handle GET /api/status?url=...&start=...&end=... | &duration=..."""
        url = params.get("url", "")
        if not url:
            self._send_error_json(400, "url parameter is required")
            return

        try:
            time_range = parse_time_range(
                start=params.get("start"),
                end=params.get("end"),
                duration=params.get("duration"),
            )
        except ValueError as e:
            self._send_error_json(400, f"invalid time range: {e}")
            return

        try:
            results = query_status(self.store, url, time_range)
        except StoreError as e:
            logger.error("Store error in /api/status: %s", e)
            self._send_error_json(500, str(e))
            return

        self._send_json(200, [result.to_dict() for result in results])

    def _handle_targets(self) -> None:
        """Handle GET /api/targets endpoint."""
        self._send_json(200, _targets_response(self.app_config))

    def _handle_stats(self) -> None:
        """Handle GET /api/stats endpoint."""
        try:
            self._send_json(200, _stats_response(self.app_config, self.store))
        except StoreError as e:
            logger.error("Store error in /api/stats: %s", e)
            self._send_error_json(500, str(e))


def _create_handler_class(store: SampleStore, app_config: Config) -> type:
    """Create a handler class with the store and configuration bound."""

    class BoundStatusHandler(StatusHandler):
        pass

    BoundStatusHandler.store = store
    BoundStatusHandler.app_config = app_config
    return BoundStatusHandler


_BIND_ERRORS = {
    errno.EADDRINUSE: "Port {port} is already in use. Another process may be using it, or statx is already running.",
    errno.EACCES: "Permission denied for port {port}. Ports below 1024 require elevated privileges.",
}


class ApiServer:
    """Serves the JSON API from a background thread.

    Requests are handled one at a time on the serving thread, so the API
    reads the store through a single connection.
    """

    def __init__(
        self,
        config: ApiConfig,
        store: SampleStore,
        app_config: Config,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            store: Sample store to query.
            app_config: Full configuration, for the targets and stats endpoints.
        """
        self.config = config
        self.store = store
        self.app_config = app_config
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Bind the configured port and begin serving.

        Raises:
            ApiError: If the port cannot be bound.
        """
        if self.is_running:
            logger.warning("API server is already running")
            return

        handler_class = _create_handler_class(self.store, self.app_config)
        try:
            server = HTTPServer(("", self.config.port), handler_class)
        except OSError as e:
            template = _BIND_ERRORS.get(e.errno, "Failed to start API server on port {port}: {error}")
            raise ApiError(template.format(port=self.config.port, error=e)) from e

        self._server = server
        self._thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.5},
            name="api-server",
            daemon=True,
        )
        self._thread.start()
        logger.info("API server listening on port %d", self.config.port)

    def stop(self) -> None:
        """Stop serving and release the port."""
        server, thread = self._server, self._thread
        if server is None:
            return

        logger.info("Stopping API server...")
        # Returns once serve_forever has exited.
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
