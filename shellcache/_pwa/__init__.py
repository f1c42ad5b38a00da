"""Browser service worker rendering.

The proxy enforces the caching policy for clients that route through it;
this package renders the same policy as a browser ``sw.js`` so installed
web apps get identical offline behavior without the proxy.

- Cache-first lookup, network fallback, write-through on HTTP 200
- Best-effort pre-caching of core and external assets on install
- Deletion of every other cache generation on activate
- Cached shell document served to offline navigations
"""

from ._registration import render_registration, supported_hosts
from ._service_worker import render_service_worker
from ._version import compute_cache_name

__all__ = [
    "compute_cache_name",
    "render_registration",
    "render_service_worker",
    "supported_hosts",
]
