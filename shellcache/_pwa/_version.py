"""Cache generation version computation.

This module computes the cache version label from a hash of the asset
manifest, ensuring automatic cache invalidation when the asset lists change.
"""

import hashlib

CACHE_NAME_PREFIX = "shellcache"


def compute_cache_name(
    core_assets: list[str],
    external_assets: list[str],
    origin: str = "",
    shell: str = "",
    prefix: str = CACHE_NAME_PREFIX,
) -> str:
    """Compute a cache version label from the asset manifest.

    The same manifest always produces the same label, so restarting with an
    unchanged manifest reuses the existing generation, while any added, removed
    or reordered asset produces a new one without a manual version bump.
    Core assets resolve against the origin, so moving to another origin (or
    switching the shell document) also starts a new generation.
    """
    manifest = "\n".join(
        ["origin:", origin.rstrip("/"), "shell:", shell, "core:", *core_assets, "external:", *external_assets]
    )
    content_hash = hashlib.sha256(manifest.encode()).hexdigest()[:8]
    return f"{prefix}-v{content_hash}"
