"""Host runtime that delivers install, activate and fetch events to a manager."""

import logging
import threading

from .manager import CacheLifecycleManager, LifecycleError, NetworkFetcher
from .models import CachedResponse, CacheGeneration, Request

logger = logging.getLogger(__name__)


class CacheHost:
    """Registers cache lifecycle managers and routes fetch events to the current one.

    Lifecycle transitions (register) are serialized by a lock. Fetch events are
    not: any number may run concurrently, each reading the current manager
    once at dispatch time. While a new manager installs, the previous current
    manager keeps serving.
    """

    def __init__(self, fetcher: NetworkFetcher) -> None:
        """Initialize the host.

        Args:
            fetcher: Network used for requests no manager intercepts.
        """
        self._fetcher = fetcher
        self._current: CacheLifecycleManager | None = None
        self._waiting: CacheLifecycleManager | None = None
        self._lifecycle_lock = threading.Lock()

    @property
    def current(self) -> CacheLifecycleManager | None:
        return self._current

    @property
    def waiting(self) -> CacheLifecycleManager | None:
        """Installed manager waiting for activation (only when it does not skip waiting)."""
        return self._waiting

    def register(self, manager: CacheLifecycleManager) -> CacheGeneration:
        """Install a manager and, if it skips waiting, activate it immediately.

        Returns:
            The generation produced by install.
        """
        with self._lifecycle_lock:
            logger.info("Installing %s", manager.cache_name)
            generation = manager.install()

            if manager.skip_waiting or self._current is None:
                self._activate(manager)
            else:
                self._waiting = manager
                logger.info("%s installed, waiting to activate", manager.cache_name)

            return generation

    def activate_waiting(self) -> bool:
        """Activate a manager left waiting by register(). Returns False if none."""
        with self._lifecycle_lock:
            if self._waiting is None:
                return False
            self._activate(self._waiting)
            return True

    def _activate(self, manager: CacheLifecycleManager) -> None:
        # Claim and swap before collecting, so fetches dispatched during
        # garbage collection never land on a generation being deleted.
        previous = self._current
        manager.claim()
        self._current = manager
        if self._waiting is manager:
            self._waiting = None

        if previous is not None and previous is not manager:
            previous.retire()
            previous.close()
            logger.info("Retired %s in favor of %s", previous.cache_name, manager.cache_name)

        manager.collect_stale()

    def handle_fetch(self, request: Request) -> CachedResponse:
        """Resolve a fetch event.

        The current manager intercepts the request; when it passes the request
        through, or no manager is current yet, the request goes straight to
        the network without any caching.

        Raises:
            OfflineError: If the request fails and no fallback applies.
            NetworkError: If a pass-through request fails.
        """
        manager = self._current
        if manager is not None:
            try:
                response = manager.intercept(request)
            except LifecycleError:
                # Superseded between dispatch and intercept; retry on the new one.
                manager = self._current
                response = manager.intercept(request) if manager is not None else None
            if response is not None:
                return response

        return self._fetcher.send(request)

    def close(self) -> None:
        """Shut down every registered manager."""
        with self._lifecycle_lock:
            for manager in (self._current, self._waiting):
                if manager is not None:
                    manager.close()
