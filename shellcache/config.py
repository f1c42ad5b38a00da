"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urljoin, urlparse

import yaml

from ._pwa._version import compute_cache_name


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


DEFAULT_ORIGIN = "http://localhost:5173"
DEFAULT_SHELL = "/index.html"
DEFAULT_USER_AGENT = "shellcache/0.1"


def _origin_of(url: str) -> str:
    """Return scheme://host[:port] of an absolute URL."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the cache lifecycle manager.

    - name: Version label of the cache generation. When unset, a label is
      computed from a hash of the asset lists, so any manifest change produces
      a new generation.
    - origin: Origin the application shell is served from. Core assets are
      resolved against it.
    - shell: Core document served to navigation requests when offline.
    - core_assets: Same-origin assets required for the shell to run offline.
    - external_assets: Cross-origin assets cached on a best-effort basis.
    """

    name: str | None = None
    origin: str = DEFAULT_ORIGIN
    shell: str = DEFAULT_SHELL
    core_assets: list[str] = field(default_factory=lambda: ["/", DEFAULT_SHELL])
    external_assets: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.name is not None and not self.name.strip():
            raise ConfigError("Cache name cannot be blank")
        parsed = urlparse(self.origin)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"Cache origin must be an absolute http:// or https:// URL (got '{self.origin}')")
        if parsed.path not in ("", "/"):
            raise ConfigError(f"Cache origin must not contain a path (got '{self.origin}')")
        if not self.shell:
            raise ConfigError("Shell document cannot be empty")
        for asset in self.core_assets:
            if not asset:
                raise ConfigError("Core asset entries cannot be empty")
            if urlparse(asset).scheme and _origin_of(asset) != _origin_of(self.origin):
                raise ConfigError(f"Core asset '{asset}' is not on origin {self.origin}")
        for asset in self.external_assets:
            if not asset.startswith(("http://", "https://")):
                raise ConfigError(f"External asset must start with http:// or https:// (got '{asset}')")

    @property
    def cache_name(self) -> str:
        """Return the configured version label, or one computed from the asset lists."""
        if self.name:
            return self.name
        return compute_cache_name(self.core_assets, self.external_assets, origin=self.origin, shell=self.shell)

    def resolve(self, asset: str) -> str:
        """Resolve a core asset path against the origin."""
        return urljoin(self.origin.rstrip("/") + "/", asset)

    @property
    def core_urls(self) -> list[str]:
        return [self.resolve(asset) for asset in self.core_assets]

    @property
    def shell_url(self) -> str:
        return self.resolve(self.shell)


def _get_default_store_path() -> str:
    """Get the default store path using XDG-compliant directory.

    Returns ~/.local/share/shellcache/cache.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "shellcache" / "cache.db")


# Default store path (XDG-compliant user data directory)
DEFAULT_STORE_PATH = _get_default_store_path()


@dataclass(frozen=True)
class StoreConfig:
    """Configuration for the durable SQLite cache store."""

    path: str = DEFAULT_STORE_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Store path cannot be empty")


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the local interception proxy."""

    enabled: bool = True
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Proxy port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for outbound network fetches.

    timeout is None by default: a fetch that never resolves will hang.
    Setting a value opts in to a per-fetch timeout in seconds.
    """

    user_agent: str = DEFAULT_USER_AGENT
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.user_agent:
            raise ConfigError("User-Agent cannot be empty")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"Network timeout must be positive (got {self.timeout})")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)


def _parse_asset_list(data: object, section: str) -> list[str]:
    """Parse a list of asset paths or URLs."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError(f"'cache.{section}' must be a list")
    return [str(asset) for asset in data]


def _parse_cache_config(data: dict | None) -> CacheConfig:
    """Parse cache configuration section."""
    if data is None:
        return CacheConfig()
    if not isinstance(data, dict):
        raise ConfigError("'cache' section must be a dictionary")

    name = data.get("name")
    core_assets = data.get("core_assets")

    return CacheConfig(
        name=str(name) if name is not None else None,
        origin=str(data.get("origin", DEFAULT_ORIGIN)),
        shell=str(data.get("shell", DEFAULT_SHELL)),
        core_assets=(
            _parse_asset_list(core_assets, "core_assets") if core_assets is not None else ["/", DEFAULT_SHELL]
        ),
        external_assets=_parse_asset_list(data.get("external_assets"), "external_assets"),
    )


def _parse_store_config(data: dict | None) -> StoreConfig:
    """Parse store configuration section."""
    if data is None:
        return StoreConfig()
    if not isinstance(data, dict):
        raise ConfigError("'store' section must be a dictionary")

    return StoreConfig(path=str(data.get("path", DEFAULT_STORE_PATH)))


def _parse_proxy_config(data: dict | None) -> ProxyConfig:
    """Parse proxy configuration section."""
    if data is None:
        return ProxyConfig()
    if not isinstance(data, dict):
        raise ConfigError("'proxy' section must be a dictionary")

    return ProxyConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
    )


def _parse_network_config(data: dict | None) -> NetworkConfig:
    """Parse network configuration section."""
    if data is None:
        return NetworkConfig()
    if not isinstance(data, dict):
        raise ConfigError("'network' section must be a dictionary")

    timeout = data.get("timeout")

    return NetworkConfig(
        user_agent=str(data.get("user_agent", DEFAULT_USER_AGENT)),
        timeout=float(timeout) if timeout is not None else None,
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SHELLCACHE_CACHE_NAME: Override cache.name
    - SHELLCACHE_ORIGIN: Override cache.origin
    - SHELLCACHE_PROXY_PORT: Override proxy.port
    - SHELLCACHE_PROXY_ENABLED: Override proxy.enabled (true/false)
    - SHELLCACHE_STORE_PATH: Override store.path
    - SHELLCACHE_NETWORK_TIMEOUT: Override network.timeout (seconds)
    """
    for section in ("cache", "proxy", "store", "network"):
        if config_data.get(section) is None:
            config_data[section] = {}
        elif not isinstance(config_data[section], dict):
            raise ConfigError(f"'{section}' section must be a dictionary")

    cache_name = os.environ.get("SHELLCACHE_CACHE_NAME")
    if cache_name is not None:
        config_data["cache"]["name"] = cache_name

    origin = os.environ.get("SHELLCACHE_ORIGIN")
    if origin is not None:
        config_data["cache"]["origin"] = origin

    proxy_port = os.environ.get("SHELLCACHE_PROXY_PORT")
    if proxy_port is not None:
        config_data["proxy"]["port"] = int(proxy_port)

    proxy_enabled = os.environ.get("SHELLCACHE_PROXY_ENABLED")
    if proxy_enabled is not None:
        config_data["proxy"]["enabled"] = proxy_enabled.lower() in ("true", "1", "yes")

    store_path = os.environ.get("SHELLCACHE_STORE_PATH")
    if store_path is not None:
        config_data["store"]["path"] = store_path

    network_timeout = os.environ.get("SHELLCACHE_NETWORK_TIMEOUT")
    if network_timeout is not None:
        config_data["network"]["timeout"] = float(network_timeout)

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")

    try:
        return Config(
            cache=_parse_cache_config(data.get("cache")),
            store=_parse_store_config(data.get("store")),
            proxy=_parse_proxy_config(data.get("proxy")),
            network=_parse_network_config(data.get("network")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
