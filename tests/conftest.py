"""Shared fixtures: a temporary cache store and a scriptable network stub."""

import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from shellcache.config import CacheConfig
from shellcache.models import CachedResponse, FetchMode, Request
from shellcache.network import NetworkError
from shellcache.store import CacheStore, init_store

ORIGIN = "http://app.test"


class StubFetcher:
    """In-memory stand-in for shellcache.network.Fetcher.

    Every URL answers 200 with a body derived from the URL unless scripted
    otherwise with serve(), fail() or by setting offline.
    """

    def __init__(self) -> None:
        self.responses: dict[str, CachedResponse] = {}
        self.failing: set[str] = set()
        self.offline = False
        self.calls: list[tuple[str, str, FetchMode]] = []
        self._lock = threading.Lock()

    def serve(self, url: str, body: bytes = b"", status: int = 200, content_type: str = "text/html") -> None:
        self.responses[url] = CachedResponse(
            status=status,
            body=body,
            headers={"Content-Type": content_type},
            reason="OK" if status == 200 else "Error",
            url=url,
        )

    def fail(self, url: str) -> None:
        self.failing.add(url)

    def fetch(self, url: str, mode: FetchMode = FetchMode.SAME_ORIGIN) -> CachedResponse:
        return self.send(Request(url=url, method="GET", mode=mode))

    def send(self, request: Request) -> CachedResponse:
        with self._lock:
            self.calls.append((request.method, request.url, request.mode))
        if self.offline or request.url in self.failing:
            raise NetworkError(f"Failed to fetch {request.url}: connection refused")
        if request.url in self.responses:
            return self.responses[request.url]
        return CachedResponse(
            status=200,
            body=f"body of {request.url}".encode(),
            headers={"Content-Type": "text/plain"},
            reason="OK",
            url=request.url,
        )

    def fetched_urls(self) -> list[str]:
        with self._lock:
            return [url for _method, url, _mode in self.calls]

    def close(self) -> None:
        pass


@pytest.fixture
def store(tmp_path: Path) -> Iterator[CacheStore]:
    """Create a cache store in a temporary directory."""
    cache_store = init_store(str(tmp_path / "cache.db"))
    yield cache_store
    cache_store.close()


@pytest.fixture
def fetcher() -> StubFetcher:
    """Create a network stub that succeeds for every URL."""
    return StubFetcher()


@pytest.fixture
def cache_config() -> CacheConfig:
    """Create a cache configuration with one core and one external asset."""
    return CacheConfig(
        name="v1",
        origin=ORIGIN,
        core_assets=["/index.html"],
        external_assets=["https://cdn.example.com/logo.png"],
    )
