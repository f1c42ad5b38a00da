"""shellcache - Offline asset cache and request interception for web app shells."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(config_path: str):
    """Load configuration, exiting with status 1 on error."""
    from .config import ConfigError, load_config

    try:
        return load_config(config_path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _init_store_or_exit(path: str):
    """Open the cache store, exiting with status 1 on error."""
    from .store import StoreError, init_store

    try:
        return init_store(path)
    except StoreError as e:
        logger.error("Store error: %s", e)
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - install the cache and serve the proxy."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("shellcache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .host import CacheHost
    from .manager import CacheLifecycleManager
    from .network import Fetcher
    from .proxy import ProxyError, ProxyServer
    from .store import StoreError

    # 1. Load configuration
    config = _load_config_or_exit(args.config)
    logger.info("Configuration loaded from %s", args.config)
    logger.info(
        "Cache %s for %s (%d core, %d external assets)",
        config.cache.cache_name,
        config.cache.origin,
        len(config.cache.core_assets),
        len(config.cache.external_assets),
    )
    if config.network.timeout is None:
        logger.info("No network timeout configured; unresponsive fetches will hang")

    # 2. Initialize store
    store = _init_store_or_exit(config.store.path)
    logger.info("Cache store initialized at %s", config.store.path)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Install and activate the configured generation
    fetcher = Fetcher(config.cache.origin, config.network.user_agent, config.network.timeout)
    host = CacheHost(fetcher)
    try:
        host.register(CacheLifecycleManager(config.cache, store, fetcher))
    except StoreError as e:
        logger.error("Could not install cache: %s", e)
        logger.warning("Continuing without offline cache")

    # 5. Start the proxy
    proxy: ProxyServer | None = None
    try:
        if config.proxy.enabled:
            try:
                proxy = ProxyServer(config, host)
                proxy.start()
            except ProxyError as e:
                logger.error("Failed to start proxy server: %s", e)
                sys.exit(1)
        else:
            logger.info("Proxy disabled; cache installed only")
            return

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")

        if proxy is not None:
            proxy.stop()

        host.close()
        fetcher.close()
        store.close()
        logger.info("Shutdown complete")


def _cmd_precache(args: argparse.Namespace) -> None:
    """Execute the precache command - install and activate once, then exit."""
    _setup_logging(args.verbose)

    from .host import CacheHost
    from .manager import CacheLifecycleManager
    from .network import Fetcher
    from .store import StoreError

    config = _load_config_or_exit(args.config)
    store = _init_store_or_exit(config.store.path)
    fetcher = Fetcher(config.cache.origin, config.network.user_agent, config.network.timeout)
    host = CacheHost(fetcher)

    try:
        generation = host.register(CacheLifecycleManager(config.cache, store, fetcher))
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        host.close()
        fetcher.close()
        store.close()

    print(f"Cache {generation.name}: {len(generation.cached)} cached, {len(generation.failed)} failed")
    for url in generation.cached:
        print(f"✓ {url}")
    for url in generation.failed:
        print(f"✗ {url}")

    if generation.failed and not generation.cached:
        sys.exit(1)


def _cmd_list(args: argparse.Namespace) -> None:
    """Execute the list command - print stored cache generations."""
    from .store import StoreError

    config = _load_config_or_exit(args.config)
    store = _init_store_or_exit(config.store.path)

    try:
        names = store.list_names()
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        store.close()

    current = config.cache.cache_name
    if not names:
        print("No cache generations stored.")
        return
    for name in names:
        marker = " (current)" if name == current else ""
        print(f"{name}{marker}")


def _cmd_purge(args: argparse.Namespace) -> None:
    """Execute the purge command - delete stale (or all) cache generations."""
    from .store import StoreError

    config = _load_config_or_exit(args.config)
    store = _init_store_or_exit(config.store.path)
    current = config.cache.cache_name

    deleted = 0
    failed = 0
    try:
        for name in store.list_names():
            if name == current and not args.all:
                continue
            try:
                if store.delete(name):
                    deleted += 1
            except StoreError as e:
                print(f"Error: could not delete {name}: {e}")
                failed += 1
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        store.close()

    print(f"Deleted {deleted} cache generation(s).")
    if failed:
        sys.exit(1)


def _cmd_render_sw(args: argparse.Namespace) -> None:
    """Execute the render-sw command - print the browser service worker."""
    from ._pwa import render_registration, render_service_worker

    config = _load_config_or_exit(args.config)
    if args.registration:
        print(render_registration(config.cache), end="")
    else:
        print(render_service_worker(config.cache), end="")


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )


def main() -> None:
    """Main entry point for the shellcache package."""
    parser = argparse.ArgumentParser(
        description="shellcache - Offline asset cache and request interception for web app shells"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"shellcache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Install the cache and start the proxy (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Precache subcommand
    precache_parser = subparsers.add_parser(
        "precache",
        help="Install and activate the configured cache generation, then exit",
    )
    _add_config_argument(precache_parser)
    precache_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    precache_parser.set_defaults(func=_cmd_precache)

    # List subcommand
    list_parser = subparsers.add_parser(
        "list",
        help="List stored cache generations",
    )
    _add_config_argument(list_parser)
    list_parser.set_defaults(func=_cmd_list)

    # Purge subcommand
    purge_parser = subparsers.add_parser(
        "purge",
        help="Delete cache generations other than the current one",
    )
    _add_config_argument(purge_parser)
    purge_parser.add_argument(
        "--all",
        action="store_true",
        help="Delete every generation, including the current one",
    )
    purge_parser.set_defaults(func=_cmd_purge)

    # Render-sw subcommand
    render_parser = subparsers.add_parser(
        "render-sw",
        help="Print the browser service worker for the configured cache",
    )
    _add_config_argument(render_parser)
    render_parser.add_argument(
        "--registration",
        action="store_true",
        help="Print the registration snippet for the shell HTML instead",
    )
    render_parser.set_defaults(func=_cmd_render_sw)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
