"""Service Worker registration JavaScript for the application shell.

This JavaScript snippet should be added to the shell HTML to register
the rendered service worker and reload once a new version takes control.
"""

import json
from typing import TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from ..config import CacheConfig

# Development hosts where registration is always allowed.
LOCAL_HOSTS = ("localhost", "127.0.0.1")


def supported_hosts(config: "CacheConfig") -> list[str]:
    """Return the hostnames the worker may register on: the origin's host plus local hosts."""
    hosts = [urlparse(config.origin).hostname or ""]
    hosts += [host for host in LOCAL_HOSTS if host not in hosts]
    return [host for host in hosts if host]


def render_registration(config: "CacheConfig") -> str:
    """Render the registration snippet for a cache configuration.

    Registration is skipped on any host other than the configured origin or a
    local development host, where the worker's scope would not match.
    The worker skips waiting on install, so a new version claims open pages
    as soon as it activates; the page reloads once to pick it up.
    """
    hosts = json.dumps(supported_hosts(config))

    return f"""
        if ('serviceWorker' in navigator) {{
            const isSupportedHost = {hosts}.includes(window.location.hostname);
            if (isSupportedHost) {{
                let refreshing = false;
                navigator.serviceWorker.addEventListener('controllerchange', () => {{
                    if (refreshing) return;
                    refreshing = true;
                    console.log('[SW] New version activated, refreshing...');
                    window.location.reload();
                }});

                window.addEventListener('load', () => {{
                    navigator.serviceWorker.register('./sw.js', {{ scope: './' }})
                        .then(registration => console.log('[SW] Service Worker registered:', registration.scope))
                        .catch(error => {{
                            console.debug('[SW] Service Worker registration ignored:', error.message);
                        }});
                }});
            }}
        }}
"""
