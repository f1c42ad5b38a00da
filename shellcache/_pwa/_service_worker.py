"""Service Worker JavaScript rendered from the cache configuration.

Handles caching strategy:
- Install: pre-cache core (same-origin) and external (no-cors) assets, each
  independently, then skip waiting
- Activate: delete every cache whose name is not the current version, then
  claim open clients
- Fetch (GET, http/https only): cache-first, network fallback, write-through
  on HTTP 200, cached shell document for offline navigations
"""

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..config import CacheConfig


def render_service_worker(config: "CacheConfig") -> str:
    """Render the browser service worker script for a cache configuration."""
    cache_name = json.dumps(config.cache_name)
    core_assets = json.dumps(config.core_assets, indent=4)
    external_assets = json.dumps(config.external_assets, indent=4)
    shell = json.dumps(config.shell)

    return f"""// Service Worker generated by shellcache
// Version: {config.cache_name}

const CACHE_NAME = {cache_name};
const SHELL = {shell};
const CORE_ASSETS = {core_assets};
const EXTERNAL_ASSETS = {external_assets};

function precache(cache, asset, mode) {{
    return fetch(asset, {{ mode }})
        .then(response => {{
            if (response.type !== 'opaque' && response.status !== 200) {{
                throw new Error(`HTTP ${{response.status}}`);
            }}
            return cache.put(asset, response);
        }})
        .catch(err => console.warn(`[SW] Could not cache: ${{asset}}`, err.message));
}}

self.addEventListener('install', (event) => {{
    event.waitUntil(
        caches.open(CACHE_NAME).then(cache => {{
            console.log('[SW] Pre-caching core application assets');
            return Promise.allSettled([
                ...CORE_ASSETS.map(asset => precache(cache, asset, 'same-origin')),
                ...EXTERNAL_ASSETS.map(asset => precache(cache, asset, 'no-cors'))
            ]);
        }})
    );
    self.skipWaiting();
}});

self.addEventListener('activate', (event) => {{
    event.waitUntil(
        caches.keys().then(cacheNames => Promise.allSettled(
            cacheNames
                .filter(name => name !== CACHE_NAME)
                .map(name => {{
                    console.log('[SW] Clearing legacy cache:', name);
                    return caches.delete(name);
                }})
        ))
        .then(() => self.clients.claim())
    );
}});

self.addEventListener('fetch', (event) => {{
    if (event.request.method !== 'GET' || !event.request.url.startsWith('http')) return;

    event.respondWith(
        caches.open(CACHE_NAME).then(cache => cache.match(event.request).then(cachedResponse => {{
            if (cachedResponse) {{
                return cachedResponse;
            }}

            return fetch(event.request).then(networkResponse => {{
                if (networkResponse && networkResponse.status === 200) {{
                    const responseToCache = networkResponse.clone();
                    cache.put(event.request, responseToCache)
                        .catch(err => console.warn('[SW] Write-through failed:', err.message));
                }}
                return networkResponse;
            }}).catch(() => {{
                if (event.request.mode === 'navigate') {{
                    return cache.match(SHELL).then(shell => shell || Response.error());
                }}
                return Response.error();
            }});
        }}))
    );
}});
"""
