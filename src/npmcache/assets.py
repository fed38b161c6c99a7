"""Tarball caching."""

from __future__ import annotations

import logging
from typing import Optional

from common.logging_utils import extra_context

from .coordinator import FetchCoordinator
from .exceptions import NotFoundError, UpstreamError
from .models import AssetKey, CacheEntry, CachedAsset, FreshnessPolicy
from .storage import Storage
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


class AssetCacheManager:
    """Serves tarballs from cache, fetching each one from upstream once.

    Published tarballs are treated as immutable: once an entry exists it is
    served without revalidation. Pass ``immutable=False`` to subject assets
    to ``policy`` like metadata.
    """

    def __init__(
        self,
        storage: Storage,
        upstream: UpstreamClient,
        coordinator: FetchCoordinator,
        immutable: bool = True,
        policy: Optional[FreshnessPolicy] = None,
    ):
        self._storage = storage
        self._upstream = upstream
        self._coordinator = coordinator
        self._immutable = immutable
        self._policy = policy or FreshnessPolicy()

    async def get_asset(self, key: AssetKey) -> CachedAsset:
        """Return the tarball for ``key``.

        Raises:
            NotFoundError: Upstream does not have the tarball.
            UpstreamError: Upstream failed.
            StorageError: The tarball could not be read or persisted.
        """
        cached = await self._cached(key)
        if cached is not None:
            return cached
        return await self._coordinator.run(key.cache_key(), lambda: self._load(key))

    async def _cached(self, key: AssetKey) -> Optional[CachedAsset]:
        entry = await self._storage.read_entry(key.cache_key())
        if entry is None or not (self._immutable or self._policy.is_fresh(entry)):
            return None
        logger.debug("Asset cache hit: %s", entry.key)
        return CachedAsset(key=key, entry=entry)

    async def _load(self, key: AssetKey) -> CachedAsset:
        # A fetch for this key may have completed since our cache check
        cached = await self._cached(key)
        if cached is not None:
            return cached
        return await self._fetch(key)

    async def _fetch(self, key: AssetKey) -> CachedAsset:
        path = key.upstream_path()
        response = await self._upstream.fetch(path)
        if response.status == 404:
            logger.info(
                "Asset not found upstream: %s", path,
                extra=extra_context(event="upstream_miss", outcome="not_found", target=path),
            )
            raise NotFoundError(path)
        if response.status != 200:
            raise UpstreamError(response.excerpt(), status=response.status)

        entry = CacheEntry(
            key=key.cache_key(),
            content=response.body,
            cache_control=response.header("Cache-Control"),
            last_modified=response.header("Last-Modified"),
            etag=response.header("ETag"),
            content_type=response.header("Content-Type"),
        )
        await self._storage.write_entry(entry)
        logger.info(
            "Cached asset %s (%d bytes)", entry.key, len(entry.content),
            extra=extra_context(event="cache_store", outcome="success", target=path),
        )
        return CachedAsset(key=key, entry=entry)
