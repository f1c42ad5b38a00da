"""Cache lifecycle manager: install, activate and request interception."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from typing import Protocol

from .config import CacheConfig
from .models import CachedResponse, CacheGeneration, FetchMode, GenerationState, Request, RequestKey
from .network import NetworkError, OfflineError
from .store import CacheHandle, CacheStore, StoreError

logger = logging.getLogger(__name__)

# Concurrent asset fetches during install. The asset lists are short and the
# origin is usually a single dev or static server.
MAX_WORKERS = 4

# Header added to every response served from a cache generation.
FROM_CACHE_HEADER = "X-From-Cache"


class LifecycleError(Exception):
    """Raised when a lifecycle event arrives in the wrong state."""

    pass


class NetworkFetcher(Protocol):
    """Network side consumed by the manager (see shellcache.network.Fetcher)."""

    def fetch(self, url: str, mode: FetchMode = ...) -> CachedResponse: ...

    def send(self, request: Request) -> CachedResponse: ...


def is_interceptable(request: Request) -> bool:
    """Return True for http(s) GET requests; everything else passes through."""
    return request.method.upper() == "GET" and request.url.startswith(("http://", "https://"))


class CacheLifecycleManager:
    """Keeps one versioned cache generation in sync with an asset manifest.

    Lifecycle: install() pre-caches the configured assets into the generation
    named by the configured version label, activate() deletes every other
    generation and makes this one current, and intercept() serves requests
    cache-first with network fallback and write-through.

    The manager owns a single-thread executor for write-through so a response
    is handed back to the caller before it is persisted. Call
    wait_for_pending_writes() to observe those writes, and close() on shutdown.
    """

    # Activate as soon as install completes, without waiting for consumers of
    # a previous generation to go away.
    skip_waiting = True

    def __init__(
        self,
        config: CacheConfig,
        store: CacheStore,
        fetcher: NetworkFetcher,
        max_workers: int = MAX_WORKERS,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Cache configuration (version label and asset lists).
            store: Durable store holding every cache generation.
            fetcher: Network fetcher used for pre-caching and cache misses.
            max_workers: Concurrent asset fetches during install.
        """
        self.config = config
        self.cache_name = config.cache_name
        self._store = store
        self._fetcher = fetcher
        self._max_workers = max_workers
        self._generation = CacheGeneration(name=self.cache_name)
        self._cache: CacheHandle | None = None
        self._claimed = False
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"cache-write-{self.cache_name}")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    @property
    def generation(self) -> CacheGeneration:
        return self._generation

    @property
    def state(self) -> GenerationState:
        return self._generation.state

    @property
    def is_current(self) -> bool:
        return self._generation.state is GenerationState.CURRENT

    @property
    def claimed(self) -> bool:
        """True once claim() has taken over request interception."""
        return self._claimed

    # ------------------------------------------------------------------
    # install
    # ------------------------------------------------------------------

    def install(self) -> CacheGeneration:
        """Pre-cache the core and external assets into this manager's generation.

        Every asset is fetched and stored independently: a failure is logged
        and recorded in CacheGeneration.failed but never aborts the others.
        Core assets are fetched same-origin, external assets in relaxed no-cors
        mode. Only HTTP 200 responses are stored.

        Returns:
            The installed generation, with per-asset outcome.

        Raises:
            LifecycleError: If the generation is already current or retired.
            StoreError: If the generation itself cannot be opened.
        """
        if self._generation.state in (GenerationState.CURRENT, GenerationState.RETIRED):
            raise LifecycleError(f"Cannot install cache '{self.cache_name}' in state {self.state.value}")

        self._generation = CacheGeneration(name=self.cache_name, state=GenerationState.INSTALLING)
        cache = self._store.open_or_create(self.cache_name)

        assets = [(url, FetchMode.SAME_ORIGIN) for url in self.config.core_urls]
        assets += [(url, FetchMode.NO_CORS) for url in self.config.external_assets]

        logger.info(
            "Pre-caching %d core and %d external assets into %s",
            len(self.config.core_assets),
            len(self.config.external_assets),
            self.cache_name,
        )

        outcome: dict[str, bool] = {}
        if assets:
            with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="precache") as executor:
                futures = {executor.submit(self._precache, cache, url, mode): url for url, mode in assets}

                for future in as_completed(futures):
                    url = futures[future]
                    try:
                        outcome[url] = future.result()
                    except Exception as e:
                        logger.error("Pre-cache task for %s failed: %s", url, e)
                        outcome[url] = False

        # Report in manifest order, not completion order
        for url, _mode in assets:
            if outcome.get(url):
                if url not in self._generation.cached:
                    self._generation.cached.append(url)
            elif url not in self._generation.failed:
                self._generation.failed.append(url)

        self._cache = cache
        self._generation.state = GenerationState.INSTALLED

        if self._generation.failed:
            logger.warning(
                "Installed %s with %d of %d assets cached",
                self.cache_name,
                len(self._generation.cached),
                len(assets),
            )
        else:
            logger.info("Installed %s with all %d assets cached", self.cache_name, len(assets))

        return self._generation

    def _precache(self, cache: CacheHandle, url: str, mode: FetchMode) -> bool:
        """Fetch and store one asset. Returns False instead of raising."""
        try:
            response = self._fetcher.fetch(url, mode)
        except NetworkError as e:
            logger.warning("Could not cache %s: %s", url, e)
            return False

        if not response.is_cacheable:
            logger.warning("Could not cache %s: HTTP %d", url, response.status)
            return False

        try:
            cache.put(RequestKey.for_url(url), response)
        except StoreError as e:
            logger.warning("Could not cache %s: %s", url, e)
            return False

        logger.debug("Pre-cached %s", url)
        return True

    # ------------------------------------------------------------------
    # activate
    # ------------------------------------------------------------------

    def activate(self) -> None:
        """Claim request interception, then delete every other cache generation.

        Equivalent to claim() followed by collect_stale(). A host swapping
        versions calls the two separately so the new manager is current
        before the previous generation's data disappears.

        Raises:
            LifecycleError: If install() has not completed.
            StoreError: If the stored generations cannot be listed.
        """
        self.claim()
        self.collect_stale()

    def claim(self) -> None:
        """Mark this generation current and take over request interception.

        Raises:
            LifecycleError: If install() has not completed.
        """
        if self._generation.state not in (GenerationState.INSTALLED, GenerationState.CURRENT):
            raise LifecycleError(
                f"Cannot activate cache '{self.cache_name}' in state {self.state.value}; install it first"
            )

        self._generation.state = GenerationState.CURRENT
        self._claimed = True
        logger.info("Activated %s", self.cache_name)

    def collect_stale(self) -> list[str]:
        """Delete every stored generation other than this one.

        Each stale generation is deleted independently; a failed deletion is
        logged and left for a future activate().

        Returns:
            Names of the generations that were deleted.

        Raises:
            LifecycleError: If this manager has not been claimed.
            StoreError: If the stored generations cannot be listed.
        """
        if not self.is_current:
            raise LifecycleError(f"Cannot clear legacy caches from '{self.cache_name}' before it is current")

        deleted = []
        for name in self._store.list_names():
            if name == self.cache_name:
                continue
            try:
                self._store.delete(name)
                logger.info("Clearing legacy cache: %s", name)
                deleted.append(name)
            except StoreError as e:
                logger.warning("Could not clear legacy cache %s: %s", name, e)
        return deleted

    def retire(self) -> None:
        """Mark this generation as superseded. Intercept refuses it afterwards."""
        self._generation.state = GenerationState.RETIRED
        self._claimed = False

    # ------------------------------------------------------------------
    # fetch interception
    # ------------------------------------------------------------------

    def intercept(self, request: Request) -> CachedResponse | None:
        """Serve a request cache-first, falling back to the network.

        Returns:
            The response to deliver, or None when the request is not
            interceptable (non-GET or non-http(s)) and must pass through
            untouched.

        Raises:
            LifecycleError: If this manager's generation is not current.
            OfflineError: If the network fails and no fallback applies.
        """
        if not is_interceptable(request):
            return None

        if not self.is_current or self._cache is None:
            raise LifecycleError(f"Cache '{self.cache_name}' is not current ({self.state.value})")

        key = request.key
        cached = self._match(key)
        if cached is not None:
            logger.debug("Cache hit: %s", key)
            return cached.with_header(FROM_CACHE_HEADER, "true")

        logger.debug("Cache miss: %s", key)

        try:
            response = self._fetcher.send(request)
        except NetworkError as e:
            if request.is_navigation:
                shell = self._match(RequestKey.for_url(self.config.shell_url))
                if shell is not None:
                    logger.info("Network unavailable for %s, serving cached shell", request.url)
                    return shell.with_header(FROM_CACHE_HEADER, "true")
            raise OfflineError(f"Network unavailable for {request.url}: {e}") from e

        if response.is_cacheable:
            self._schedule_write(key, response.clone())

        return response

    def _match(self, key: RequestKey) -> CachedResponse | None:
        """Look up a key, treating store failures as a miss."""
        if self._cache is None:
            return None
        try:
            return self._cache.match(key)
        except StoreError as e:
            logger.warning("Cache lookup failed for %s: %s", key, e)
            return None

    def _schedule_write(self, key: RequestKey, response: CachedResponse) -> None:
        """Persist a response in the background; the caller is never blocked."""
        try:
            future = self._writer.submit(self._write_through, key, response)
        except RuntimeError:
            logger.debug("Manager for %s is closed, dropping write for %s", self.cache_name, key)
            return

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _write_through(self, key: RequestKey, response: CachedResponse) -> None:
        if self._cache is None:
            return
        try:
            self._cache.put(key, response)
            logger.debug("Stored %s in %s", key, self.cache_name)
        except StoreError as e:
            logger.warning("Write-through failed for %s: %s", key, e)
        except Exception as e:
            logger.error("Unexpected write-through failure for %s: %s", key, e)

    def keys(self) -> list[RequestKey]:
        """Return the keys stored in this manager's generation."""
        if self._cache is None:
            return []
        return self._cache.keys()

    def wait_for_pending_writes(self, timeout: float | None = None) -> bool:
        """Block until every scheduled write-through has finished.

        Returns:
            True if all writes finished, False if the timeout expired first.
        """
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        """Finish outstanding writes and stop the write-through executor."""
        self._writer.shutdown(wait=True)

    def __repr__(self) -> str:
        return f"CacheLifecycleManager(cache_name={self.cache_name!r}, state={self.state.value!r})"
