"""Local HTTP proxy that routes application requests through the cache host."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from ._pwa import render_service_worker
from .config import Config
from .host import CacheHost
from .models import CachedResponse, FetchMode, Request
from .network import NetworkError, OfflineError

logger = logging.getLogger(__name__)

# Paths answered by the proxy itself rather than the application origin.
SERVICE_WORKER_PATH = "/sw.js"
HEALTH_PATH = "/__shellcache/health"
STATUS_PATH = "/__shellcache/status"

# Response headers managed by the proxy when writing back to the client.
_HOP_BY_HOP_HEADERS = frozenset(
    {"connection", "keep-alive", "transfer-encoding", "content-length", "content-encoding", "upgrade"}
)


class ProxyError(Exception):
    """Raised when the proxy server fails."""

    pass


def _is_navigation(method: str, headers: Any) -> bool:
    """Decide whether a request is a full document load.

    Browsers send Sec-Fetch-Mode: navigate. Clients that don't are treated
    as navigating when they ask for HTML as a document.
    """
    fetch_mode = headers.get("Sec-Fetch-Mode")
    if fetch_mode is not None:
        return fetch_mode.lower() == "navigate"
    if method != "GET":
        return False
    dest = headers.get("Sec-Fetch-Dest")
    accept = headers.get("Accept", "")
    return "text/html" in accept and dest in (None, "document")


class CacheProxyHandler(BaseHTTPRequestHandler):
    """HTTP request handler that delivers each request to the cache host as a fetch event."""

    # Class-level references set by factory
    host: CacheHost | None = None
    config: Config | None = None

    protocol_version = "HTTP/1.0"

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: dict[str, Any]) -> None:
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
        self._send_json(code, {"error": message})

    def _send_cached_response(self, response: CachedResponse, include_body: bool = True) -> None:
        """Write a fetched or cached response back to the client."""
        content_length = str(len(response.body))
        self.send_response(response.status, response.reason or None)
        for name, value in response.headers.items():
            if name.lower() not in _HOP_BY_HOP_HEADERS:
                self.send_header(name, value)
            elif name.lower() == "content-length" and not include_body:
                # HEAD: report the upstream entity size, not the empty body
                content_length = value
        self.send_header("Content-Length", content_length)
        self.send_header("Connection", "close")
        self.end_headers()
        if include_body:
            self.wfile.write(response.body)

    def _read_body(self) -> bytes | None:
        length = self.headers.get("Content-Length")
        if not length:
            return None
        return self.rfile.read(int(length))

    def _build_request(self, config: Config, method: str) -> Request:
        """Turn the incoming HTTP request into an intercepted Request."""
        url = config.cache.origin.rstrip("/") + self.path
        mode = FetchMode.NAVIGATE if _is_navigation(method, self.headers) else FetchMode.NO_CORS
        return Request(
            url=url,
            method=method,
            headers={name: value for name, value in self.headers.items()},
            mode=mode,
            body=self._read_body() if method not in ("GET", "HEAD") else None,
        )

    def _handle_fetch(self, method: str) -> None:
        """Deliver a fetch event to the host and write back the result."""
        if self.host is None or self.config is None:
            self._send_error_json(503, "Cache host not available")
            return

        try:
            request = self._build_request(self.config, method)
            response = self.host.handle_fetch(request)
            self._send_cached_response(response, include_body=method != "HEAD")
        except OfflineError as e:
            logger.info("Failed load: %s", e)
            self._send_error_json(504, "Offline")
        except NetworkError as e:
            logger.warning("Upstream request failed: %s", e)
            self._send_error_json(502, "Bad gateway")
        except Exception as e:
            logger.exception("Error handling %s request: %s", method, e)
            self._send_error_json(500, "Internal server error")

    def do_GET(self) -> None:
        """Handle GET requests."""
        path = self.path.split("?", 1)[0]
        if path == SERVICE_WORKER_PATH:
            self._handle_service_worker()
        elif path == HEALTH_PATH:
            self._send_json(200, {"status": "ok"})
        elif path == STATUS_PATH:
            self._handle_status()
        else:
            self._handle_fetch("GET")

    def do_HEAD(self) -> None:
        self._handle_fetch("HEAD")

    def do_POST(self) -> None:
        self._handle_fetch("POST")

    def do_PUT(self) -> None:
        self._handle_fetch("PUT")

    def do_PATCH(self) -> None:
        self._handle_fetch("PATCH")

    def do_DELETE(self) -> None:
        self._handle_fetch("DELETE")

    def do_OPTIONS(self) -> None:
        self._handle_fetch("OPTIONS")

    def _handle_service_worker(self) -> None:
        """Handle GET /sw.js - serve the rendered browser worker."""
        if self.config is None:
            self._send_error_json(503, "Configuration not available")
            return

        body = render_service_worker(self.config.cache).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/javascript; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        # Browsers must re-check the worker script on every navigation
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _handle_status(self) -> None:
        """Handle GET /__shellcache/status - report the current generation."""
        manager = self.host.current if self.host is not None else None
        if manager is None:
            self._send_json(200, {"cache_name": None, "state": "absent", "claimed": False, "entries": 0})
            return

        try:
            entries = len(manager.keys())
        except Exception as e:
            logger.error("Could not count entries of %s: %s", manager.cache_name, e)
            self._send_error_json(500, "Store error")
            return

        self._send_json(
            200,
            {
                "cache_name": manager.cache_name,
                "state": manager.state.value,
                "claimed": manager.claimed,
                "entries": entries,
                "failed_assets": list(manager.generation.failed),
            },
        )


def _create_handler_class(host: CacheHost, config: Config) -> type:
    """Create a handler class with the host and config bound."""

    class BoundCacheProxyHandler(CacheProxyHandler):
        pass

    BoundCacheProxyHandler.host = host
    BoundCacheProxyHandler.config = config
    return BoundCacheProxyHandler


class ProxyServer:
    """Threaded HTTP proxy that serves the application through the cache host."""

    def __init__(self, config: Config, host: CacheHost) -> None:
        """Initialize the proxy server.

        Args:
            config: Full configuration (proxy port, cache origin).
            host: Host delivering fetch events to the current manager.
        """
        self.config = config
        self.host = host
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    @property
    def port(self) -> int:
        return self.config.proxy.port

    def start(self) -> None:
        """Start the proxy server in a background thread.

        Raises:
            ProxyError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        try:
            handler_class = _create_handler_class(self.host, self.config)
            self._server = ThreadingHTTPServer(("", self.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="cache-proxy",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server started on port %d for %s", self.port, self.config.cache.origin)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ProxyError(
                    f"Port {self.port} is already in use. "
                    f"Another process may be using this port, or shellcache is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ProxyError(
                    f"Permission denied for port {self.port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ProxyError(f"Failed to start proxy server on port {self.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the proxy server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
