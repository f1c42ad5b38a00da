"""Tests for the cache lifecycle manager."""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from shellcache.config import CacheConfig
from shellcache.manager import FROM_CACHE_HEADER, CacheLifecycleManager, LifecycleError, is_interceptable
from shellcache.models import FetchMode, GenerationState, Request, RequestKey
from shellcache.network import OfflineError
from shellcache.store import CacheHandle, CacheStore, StoreError

ORIGIN = "http://app.test"


@pytest.fixture
def manager(cache_config: CacheConfig, store: CacheStore, fetcher) -> CacheLifecycleManager:
    """Create a manager over the shared store and network stub."""
    mgr = CacheLifecycleManager(cache_config, store, fetcher)
    yield mgr
    mgr.close()


@pytest.fixture
def active_manager(manager: CacheLifecycleManager) -> CacheLifecycleManager:
    """Create a manager that has been installed and activated."""
    manager.install()
    manager.activate()
    return manager


def _shell_only(name: str = "v1") -> CacheConfig:
    return CacheConfig(name=name, origin=ORIGIN, core_assets=["/index.html"], external_assets=[])


class TestIsInterceptable:
    """Tests for the request filter."""

    def test_http_get_is_interceptable(self) -> None:
        assert is_interceptable(Request(url=f"{ORIGIN}/a.css")) is True

    def test_https_get_is_interceptable(self) -> None:
        assert is_interceptable(Request(url="https://cdn.example.com/a.css")) is True

    def test_lowercase_get_is_interceptable(self) -> None:
        assert is_interceptable(Request(url=f"{ORIGIN}/a.css", method="get")) is True

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
    def test_other_methods_pass_through(self, method: str) -> None:
        assert is_interceptable(Request(url=f"{ORIGIN}/api", method=method)) is False

    @pytest.mark.parametrize("url", ["chrome-extension://abc/x.js", "data:text/plain,hi", "ws://app.test/socket"])
    def test_non_http_schemes_pass_through(self, url: str) -> None:
        assert is_interceptable(Request(url=url)) is False


class TestInstall:
    """Tests for install()."""

    def test_caches_core_and_external_assets(self, manager: CacheLifecycleManager, store: CacheStore) -> None:
        """Every asset that fetches with 200 is stored in the named generation."""
        generation = manager.install()

        assert generation.name == "v1"
        assert generation.state is GenerationState.INSTALLED
        assert generation.cached == [f"{ORIGIN}/index.html", "https://cdn.example.com/logo.png"]
        assert generation.failed == []
        assert store.list_names() == ["v1"]

        handle = store.open_or_create("v1")
        assert handle.match(RequestKey.for_url(f"{ORIGIN}/index.html")) is not None
        assert handle.match(RequestKey.for_url("https://cdn.example.com/logo.png")) is not None

    def test_core_assets_fetched_same_origin_external_no_cors(self, manager: CacheLifecycleManager, fetcher) -> None:
        """Core assets use strict mode, external assets relaxed mode."""
        manager.install()

        modes = {url: mode for _method, url, mode in fetcher.calls}
        assert modes[f"{ORIGIN}/index.html"] is FetchMode.SAME_ORIGIN
        assert modes["https://cdn.example.com/logo.png"] is FetchMode.NO_CORS

    def test_core_assets_resolved_against_origin(self, store: CacheStore, fetcher) -> None:
        """Relative core asset paths are resolved against the configured origin."""
        config = CacheConfig(name="v1", origin=ORIGIN, core_assets=["./", "./index.css", "/manifest.json"])
        mgr = CacheLifecycleManager(config, store, fetcher)
        try:
            generation = mgr.install()
        finally:
            mgr.close()

        assert generation.cached == [f"{ORIGIN}/", f"{ORIGIN}/index.css", f"{ORIGIN}/manifest.json"]

    def test_tolerates_partial_failure(self, store: CacheStore, fetcher) -> None:
        """Up to N-1 failing assets leave the remaining ones retrievable."""
        config = CacheConfig(
            name="v1",
            origin=ORIGIN,
            core_assets=["/index.html", "/index.css", "/manifest.json"],
            external_assets=["https://fonts.example.com/inter.css"],
        )
        fetcher.fail(f"{ORIGIN}/index.css")
        fetcher.fail(f"{ORIGIN}/manifest.json")
        fetcher.fail("https://fonts.example.com/inter.css")

        mgr = CacheLifecycleManager(config, store, fetcher)
        try:
            generation = mgr.install()
        finally:
            mgr.close()

        assert generation.cached == [f"{ORIGIN}/index.html"]
        assert generation.failed == [
            f"{ORIGIN}/index.css",
            f"{ORIGIN}/manifest.json",
            "https://fonts.example.com/inter.css",
        ]
        handle = store.open_or_create("v1")
        assert handle.match(RequestKey.for_url(f"{ORIGIN}/index.html")) is not None
        assert handle.match(RequestKey.for_url(f"{ORIGIN}/index.css")) is None

    def test_all_assets_failing_does_not_raise(self, manager: CacheLifecycleManager, fetcher) -> None:
        """Install completes even when nothing could be cached."""
        fetcher.offline = True

        generation = manager.install()

        assert generation.cached == []
        assert len(generation.failed) == 2
        assert generation.state is GenerationState.INSTALLED

    def test_non_200_asset_is_not_stored(self, manager: CacheLifecycleManager, fetcher, store: CacheStore) -> None:
        """Error statuses during install are recorded as failures."""
        fetcher.serve("https://cdn.example.com/logo.png", status=404)

        generation = manager.install()

        assert generation.failed == ["https://cdn.example.com/logo.png"]
        handle = store.open_or_create("v1")
        assert handle.match(RequestKey.for_url("https://cdn.example.com/logo.png")) is None

    def test_store_failure_for_one_asset_is_isolated(self, manager: CacheLifecycleManager) -> None:
        """A failed put for one asset does not stop the others."""
        real_put = CacheHandle.put

        def flaky_put(handle, key, response):
            if key.url.endswith("logo.png"):
                raise StoreError("disk full")
            return real_put(handle, key, response)

        with patch.object(CacheHandle, "put", autospec=True, side_effect=flaky_put):
            generation = manager.install()

        assert generation.cached == [f"{ORIGIN}/index.html"]
        assert generation.failed == ["https://cdn.example.com/logo.png"]

    def test_empty_asset_lists(self, store: CacheStore, fetcher) -> None:
        """A generation with no assets is still created."""
        mgr = CacheLifecycleManager(CacheConfig(name="empty", origin=ORIGIN, core_assets=[]), store, fetcher)
        try:
            generation = mgr.install()
        finally:
            mgr.close()

        assert generation.cached == []
        assert store.list_names() == ["empty"]
        assert fetcher.calls == []

    def test_install_after_activate_is_rejected(self, active_manager: CacheLifecycleManager) -> None:
        with pytest.raises(LifecycleError):
            active_manager.install()

    def test_requests_immediate_activation(self, manager: CacheLifecycleManager) -> None:
        assert manager.skip_waiting is True


class TestActivate:
    """Tests for activate()."""

    def test_deletes_other_generations(self, store: CacheStore, fetcher) -> None:
        """Only the current generation survives activation."""
        store.open_or_create("meraroom-v4")
        store.open_or_create("meraroom-v5")
        mgr = CacheLifecycleManager(_shell_only("meraroom-v6"), store, fetcher)
        try:
            mgr.install()
            mgr.activate()
        finally:
            mgr.close()

        assert store.list_names() == ["meraroom-v6"]

    def test_install_v1_then_v2_leaves_only_v2(self, store: CacheStore, fetcher) -> None:
        """Reconfiguring and installing v2 then activating leaves only v2."""
        v1 = CacheLifecycleManager(_shell_only("v1"), store, fetcher)
        v2 = CacheLifecycleManager(_shell_only("v2"), store, fetcher)
        try:
            v1.install()
            v2.install()
            assert set(store.list_names()) == {"v1", "v2"}

            v2.activate()
        finally:
            v1.close()
            v2.close()

        assert store.list_names() == ["v2"]

    def test_marks_generation_current_and_claimed(self, manager: CacheLifecycleManager) -> None:
        manager.install()
        assert manager.claimed is False

        manager.activate()

        assert manager.state is GenerationState.CURRENT
        assert manager.is_current is True
        assert manager.claimed is True

    def test_activate_before_install_is_rejected(self, manager: CacheLifecycleManager) -> None:
        with pytest.raises(LifecycleError, match="install it first"):
            manager.activate()

    def test_activate_twice_is_safe(self, active_manager: CacheLifecycleManager, store: CacheStore) -> None:
        active_manager.activate()

        assert store.list_names() == ["v1"]
        assert active_manager.is_current is True

    def test_failed_deletion_does_not_block_others(
        self, manager: CacheLifecycleManager, store: CacheStore
    ) -> None:
        """A generation that cannot be deleted is left for the next activation."""
        store.open_or_create("old-a")
        store.open_or_create("stuck")
        store.open_or_create("old-b")
        manager.install()
        real_delete = store.delete

        def flaky_delete(name: str) -> bool:
            if name == "stuck":
                raise StoreError("database is locked")
            return real_delete(name)

        with patch.object(store, "delete", side_effect=flaky_delete):
            manager.activate()

        assert set(store.list_names()) == {"stuck", "v1"}
        assert manager.is_current is True

        manager.activate()
        assert store.list_names() == ["v1"]

    def test_claim_leaves_other_generations(self, manager: CacheLifecycleManager, store: CacheStore) -> None:
        """Claiming takes over interception without deleting anything."""
        store.open_or_create("v0")
        manager.install()

        manager.claim()

        assert manager.is_current is True
        assert set(store.list_names()) == {"v0", "v1"}

    def test_collect_stale_returns_deleted_names(self, manager: CacheLifecycleManager, store: CacheStore) -> None:
        store.open_or_create("v0")
        manager.install()
        manager.claim()

        assert manager.collect_stale() == ["v0"]
        assert store.list_names() == ["v1"]

    def test_collect_stale_before_claim_is_rejected(
        self, manager: CacheLifecycleManager, store: CacheStore
    ) -> None:
        store.open_or_create("v0")
        manager.install()

        with pytest.raises(LifecycleError):
            manager.collect_stale()

        assert "v0" in store.list_names()

    def test_retire_removes_current_state(self, active_manager: CacheLifecycleManager) -> None:
        active_manager.retire()

        assert active_manager.state is GenerationState.RETIRED
        assert active_manager.claimed is False


class TestIntercept:
    """Tests for intercept()."""

    def test_cache_hit_does_not_touch_network(self, active_manager: CacheLifecycleManager, fetcher) -> None:
        """A stored key is served without any network fetch."""
        fetcher.calls.clear()

        response = active_manager.intercept(Request(url=f"{ORIGIN}/index.html"))

        assert response is not None
        assert response.body == f"body of {ORIGIN}/index.html".encode()
        assert fetcher.calls == []

    def test_cache_hit_is_marked(self, active_manager: CacheLifecycleManager) -> None:
        response = active_manager.intercept(Request(url=f"{ORIGIN}/index.html"))

        assert response.headers[FROM_CACHE_HEADER] == "true"

    def test_installed_shell_served_while_offline(self, store: CacheStore, fetcher) -> None:
        """v1 with /index.html installed, network down: the installed body is returned."""
        fetcher.serve(f"{ORIGIN}/index.html", body=b"<html>shell</html>")
        mgr = CacheLifecycleManager(_shell_only("v1"), store, fetcher)
        try:
            mgr.install()
            mgr.activate()
            fetcher.offline = True

            response = mgr.intercept(Request(url=f"{ORIGIN}/index.html"))
        finally:
            mgr.close()

        assert response is not None
        assert response.status == 200
        assert response.body == b"<html>shell</html>"

    def test_miss_is_written_through(self, active_manager: CacheLifecycleManager, fetcher) -> None:
        """A 200 from the network is stored and later served byte-identical."""
        fetcher.serve(f"{ORIGIN}/rooms.json", body=b'{"rooms": [1, 2, 3]}', content_type="application/json")

        first = active_manager.intercept(Request(url=f"{ORIGIN}/rooms.json"))
        assert active_manager.wait_for_pending_writes(timeout=5) is True
        fetcher.offline = True
        second = active_manager.intercept(Request(url=f"{ORIGIN}/rooms.json"))

        assert FROM_CACHE_HEADER not in first.headers
        assert second.body == first.body == b'{"rooms": [1, 2, 3]}'
        assert second.content_type == "application/json"
        assert second.headers[FROM_CACHE_HEADER] == "true"

    def test_404_is_returned_and_not_stored(self, active_manager: CacheLifecycleManager, fetcher) -> None:
        """An uncached 404 reaches the caller but never the store."""
        fetcher.serve(f"{ORIGIN}/missing.png", status=404)

        response = active_manager.intercept(Request(url=f"{ORIGIN}/missing.png"))
        active_manager.wait_for_pending_writes(timeout=5)

        assert response.status == 404
        assert RequestKey.for_url(f"{ORIGIN}/missing.png") not in active_manager.keys()

    def test_404_is_fetched_again(self, active_manager: CacheLifecycleManager, fetcher) -> None:
        fetcher.serve(f"{ORIGIN}/missing.png", status=404)

        active_manager.intercept(Request(url=f"{ORIGIN}/missing.png"))
        active_manager.wait_for_pending_writes(timeout=5)
        active_manager.intercept(Request(url=f"{ORIGIN}/missing.png"))

        assert fetcher.fetched_urls().count(f"{ORIGIN}/missing.png") == 2

    @pytest.mark.parametrize("status", [201, 204, 206, 301, 500, 503])
    def test_only_200_is_stored(self, active_manager: CacheLifecycleManager, fetcher, status: int) -> None:
        fetcher.serve(f"{ORIGIN}/thing", status=status)

        active_manager.intercept(Request(url=f"{ORIGIN}/thing"))
        active_manager.wait_for_pending_writes(timeout=5)

        assert RequestKey.for_url(f"{ORIGIN}/thing") not in active_manager.keys()

    def test_non_get_bypasses_cache(self, active_manager: CacheLifecycleManager, fetcher) -> None:
        """Non-GET requests neither read nor write the store."""
        fetcher.calls.clear()
        keys_before = active_manager.keys()

        response = active_manager.intercept(Request(url=f"{ORIGIN}/index.html", method="POST", body=b"x"))

        assert response is None
        assert fetcher.calls == []
        assert active_manager.keys() == keys_before

    def test_navigation_falls_back_to_shell(self, active_manager: CacheLifecycleManager, fetcher) -> None:
        """Offline navigation to an uncached page gets the cached shell document."""
        fetcher.offline = True

        response = active_manager.intercept(Request(url=f"{ORIGIN}/rooms/42", mode=FetchMode.NAVIGATE))

        assert response is not None
        assert response.body == f"body of {ORIGIN}/index.html".encode()

    def test_subresource_failure_raises_offline(self, active_manager: CacheLifecycleManager, fetcher) -> None:
        """Offline subresource loads surface as failed loads."""
        fetcher.offline = True

        with pytest.raises(OfflineError):
            active_manager.intercept(Request(url=f"{ORIGIN}/photo.jpg"))

    def test_navigation_without_cached_shell_raises_offline(self, store: CacheStore, fetcher) -> None:
        fetcher.fail(f"{ORIGIN}/index.html")
        mgr = CacheLifecycleManager(_shell_only("v1"), store, fetcher)
        try:
            mgr.install()
            mgr.activate()
            fetcher.offline = True

            with pytest.raises(OfflineError):
                mgr.intercept(Request(url=f"{ORIGIN}/", mode=FetchMode.NAVIGATE))
        finally:
            mgr.close()

    def test_intercept_before_activate_is_rejected(self, manager: CacheLifecycleManager) -> None:
        manager.install()

        with pytest.raises(LifecycleError):
            manager.intercept(Request(url=f"{ORIGIN}/index.html"))

    def test_response_returned_before_write_completes(self, active_manager: CacheLifecycleManager) -> None:
        """The caller is not blocked by the write-through."""
        gate = threading.Event()
        real_put = CacheHandle.put

        def slow_put(handle, key, response):
            gate.wait(5)
            return real_put(handle, key, response)

        with patch.object(CacheHandle, "put", autospec=True, side_effect=slow_put):
            response = active_manager.intercept(Request(url=f"{ORIGIN}/slow.js"))

            assert response.status == 200
            assert active_manager.wait_for_pending_writes(timeout=0.05) is False

            gate.set()
            assert active_manager.wait_for_pending_writes(timeout=5) is True

        assert RequestKey.for_url(f"{ORIGIN}/slow.js") in active_manager.keys()

    def test_write_failure_does_not_affect_response(self, active_manager: CacheLifecycleManager) -> None:
        """A failing write-through is swallowed."""
        with patch.object(CacheHandle, "put", side_effect=StoreError("disk full")):
            response = active_manager.intercept(Request(url=f"{ORIGIN}/app.js"))
            assert active_manager.wait_for_pending_writes(timeout=5) is True

        assert response.status == 200
        assert response.body == f"body of {ORIGIN}/app.js".encode()

    def test_lookup_failure_treated_as_miss(self, active_manager: CacheLifecycleManager, fetcher) -> None:
        with patch.object(CacheHandle, "match", side_effect=StoreError("corrupt")):
            response = active_manager.intercept(Request(url=f"{ORIGIN}/index.html"))

        assert response.status == 200
        assert f"{ORIGIN}/index.html" in fetcher.fetched_urls()

    def test_concurrent_misses_are_all_stored(self, active_manager: CacheLifecycleManager) -> None:
        """Independent in-flight intercepts for different keys do not conflict."""
        urls = [f"{ORIGIN}/asset-{i}.js" for i in range(20)]

        with ThreadPoolExecutor(max_workers=8) as executor:
            responses = list(executor.map(lambda u: active_manager.intercept(Request(url=u)), urls))

        assert all(r.status == 200 for r in responses)
        assert active_manager.wait_for_pending_writes(timeout=5) is True
        stored = {key.url for key in active_manager.keys()}
        assert set(urls) <= stored

    def test_write_after_close_is_dropped(self, active_manager: CacheLifecycleManager) -> None:
        active_manager.close()

        response = active_manager.intercept(Request(url=f"{ORIGIN}/late.js"))

        assert response.status == 200
        assert RequestKey.for_url(f"{ORIGIN}/late.js") not in active_manager.keys()
