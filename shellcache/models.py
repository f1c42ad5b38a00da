"""Data models for intercepted requests and cached responses."""

from dataclasses import dataclass, field, replace
from enum import Enum

# Only responses with exactly this status are ever written to a cache generation.
CACHEABLE_STATUS = 200


class FetchMode(str, Enum):
    """Request mode used for a network fetch.

    SAME_ORIGIN is the strict mode used for core assets. NO_CORS is the relaxed
    cross-origin mode used for external assets whose bodies are opaque.
    NAVIGATE marks a full document load (only meaningful on intercepted requests).
    """

    SAME_ORIGIN = "same-origin"
    NO_CORS = "no-cors"
    CORS = "cors"
    NAVIGATE = "navigate"


class GenerationState(str, Enum):
    """Lifecycle state of a cache generation."""

    ABSENT = "absent"
    INSTALLING = "installing"
    INSTALLED = "installed"
    CURRENT = "current"
    RETIRED = "retired"


@dataclass(frozen=True)
class Request:
    """An outbound request seen by the interception layer.

    Attributes:
        url: Absolute URL of the request.
        method: HTTP method, upper case.
        headers: Request headers.
        mode: Request mode; NAVIGATE for full-page document loads.
        body: Request body for non-GET requests, forwarded untouched.
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    mode: FetchMode = FetchMode.NO_CORS
    body: bytes | None = None

    @property
    def is_navigation(self) -> bool:
        return self.mode is FetchMode.NAVIGATE

    @property
    def key(self) -> "RequestKey":
        return RequestKey.from_request(self)


@dataclass(frozen=True)
class RequestKey:
    """Lookup key of a stored response: method plus absolute URL."""

    method: str
    url: str

    @classmethod
    def for_url(cls, url: str) -> "RequestKey":
        return cls(method="GET", url=url)

    @classmethod
    def from_request(cls, request: Request) -> "RequestKey":
        return cls(method=request.method.upper(), url=request.url)

    def __str__(self) -> str:
        return f"{self.method} {self.url}"


@dataclass(frozen=True)
class CachedResponse:
    """A response as stored in, or served from, a cache generation.

    Attributes:
        status: HTTP status code.
        body: Raw response payload.
        headers: Response headers (Content-Type among them).
        reason: HTTP reason phrase.
        url: Final URL the response was fetched from.
        opaque: True for responses fetched in relaxed cross-origin mode.
    """

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    reason: str = ""
    url: str = ""
    opaque: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_cacheable(self) -> bool:
        return self.status == CACHEABLE_STATUS

    @property
    def content_type(self) -> str | None:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return None

    def clone(self) -> "CachedResponse":
        """Return an independent copy that can be stored while this one is served."""
        return replace(self, headers=dict(self.headers))

    def with_header(self, name: str, value: str) -> "CachedResponse":
        headers = dict(self.headers)
        headers[name] = value
        return replace(self, headers=headers)


@dataclass
class CacheGeneration:
    """A named, versioned set of stored responses.

    Attributes:
        name: Version label, also the store name of the generation.
        state: Current lifecycle state.
        cached: Asset URLs stored during install.
        failed: Asset URLs that could not be fetched or stored during install.
    """

    name: str
    state: GenerationState = GenerationState.ABSENT
    cached: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
