"""Network fetches for pre-caching and cache misses."""

import logging
from collections.abc import Mapping
from urllib.parse import urlparse

import requests

from .models import CachedResponse, FetchMode, Request

logger = logging.getLogger(__name__)

# Hop-by-hop and transport headers that do not describe the stored payload.
# requests has already decoded the body, so the encoding headers no longer apply.
_DROPPED_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "content-encoding",
        "content-length",
    }
)

# Request headers that must not be forwarded upstream.
_UNFORWARDED_REQUEST_HEADERS = frozenset({"host", "connection", "keep-alive", "proxy-connection", "accept-encoding"})


class NetworkError(Exception):
    """Raised when a fetch cannot reach the network or is refused."""

    pass


class OfflineError(NetworkError):
    """Raised when an intercepted request fails and no fallback applies."""

    pass


def _origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def _stored_headers(headers: Mapping[str, str], keep_length: bool = False) -> dict[str, str]:
    """Filter transport headers from a response.

    HEAD responses carry no body, so their Content-Length is the only record
    of the entity size and is kept when keep_length is set.
    """
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in _DROPPED_HEADERS or (keep_length and name.lower() == "content-length")
    }


class Fetcher:
    """Performs network fetches on behalf of the cache lifecycle manager.

    A single requests.Session is shared for connection pooling; requests'
    Session is safe for the concurrent GETs issued by install and by the
    proxy's handler threads.
    """

    def __init__(
        self,
        origin: str,
        user_agent: str = "shellcache/0.1",
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            origin: Origin of the application; same-origin fetches must stay on it.
            user_agent: User-Agent header sent with every fetch.
            timeout: Per-fetch timeout in seconds, or None to wait indefinitely.
            session: Optional pre-configured session.
        """
        self.origin = _origin_of(origin)
        self.user_agent = user_agent
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch(self, url: str, mode: FetchMode = FetchMode.SAME_ORIGIN) -> CachedResponse:
        """Fetch a URL with GET.

        Args:
            url: Absolute URL to fetch.
            mode: SAME_ORIGIN refuses URLs outside the configured origin.
                NO_CORS allows any origin and marks the response opaque.

        Returns:
            The response, whatever its status.

        Raises:
            NetworkError: If the URL is refused or the network is unreachable.
        """
        return self.send(Request(url=url, method="GET", mode=mode))

    def send(self, request: Request) -> CachedResponse:
        """Send an intercepted request to the network, forwarding method, headers and body.

        Raises:
            NetworkError: If the URL is refused or the network is unreachable.
        """
        if request.mode is FetchMode.SAME_ORIGIN and _origin_of(request.url) != self.origin:
            raise NetworkError(f"Refusing cross-origin fetch of {request.url} in same-origin mode")

        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in _UNFORWARDED_REQUEST_HEADERS
        }
        headers["User-Agent"] = self.user_agent

        try:
            response = self._session.request(
                request.method,
                request.url,
                headers=headers,
                data=request.body,
                timeout=self.timeout,
                allow_redirects=True,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Failed to fetch {request.url}: {e}")

        opaque = request.mode is FetchMode.NO_CORS and _origin_of(request.url) != self.origin

        logger.debug("Fetched %s %s -> %d", request.method, request.url, response.status_code)

        return CachedResponse(
            status=response.status_code,
            body=response.content,
            headers=_stored_headers(response.headers, keep_length=request.method.upper() == "HEAD"),
            reason=response.reason or "",
            url=response.url or request.url,
            opaque=opaque,
        )

    def close(self) -> None:
        self._session.close()
