"""Package metadata caching and tarball URL rewriting."""

from __future__ import annotations

import json
import logging
import posixpath
import urllib.parse
from typing import Any, Dict, Optional

from common.logging_utils import extra_context
from constants import Constants

from .coordinator import FetchCoordinator
from .exceptions import NotFoundError, StorageError, UpstreamError
from .models import CacheEntry, FreshnessPolicy, MetadataDocument, PackageName
from .storage import Storage
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


def rewrite_tarball_url(url: str, name: PackageName, proxy_base: str) -> str:
    """Point a ``dist.tarball`` URL at the proxy.

    The scheme, host and any upstream path prefix are replaced by
    ``proxy_base``; the trailing ``/<name>/-/<file>`` part is kept. URLs
    without that shape fall back to ``<proxy_base>/<name>/-/<basename>``.
    """
    base = proxy_base.rstrip("/")
    path = urllib.parse.unquote(urllib.parse.urlsplit(url).path)
    marker = f"/{name.value}/-/"
    index = path.find(marker)
    if index >= 0:
        return f"{base}{path[index:]}"
    filename = posixpath.basename(path) or f"{name.bare_name}.tgz"
    return f"{base}/{name.value}/-/{filename}"


def rewrite_document(document: Dict[str, Any], name: PackageName, proxy_base: str) -> int:
    """Rewrite every ``versions.*.dist.tarball`` in place.

    Returns:
        Number of URLs rewritten.
    """
    rewritten = 0
    versions = document.get("versions")
    if not isinstance(versions, dict):
        return 0
    for version in versions.values():
        if not isinstance(version, dict):
            continue
        dist = version.get("dist")
        if isinstance(dist, dict) and isinstance(dist.get("tarball"), str):
            dist["tarball"] = rewrite_tarball_url(dist["tarball"], name, proxy_base)
            rewritten += 1
    return rewritten


class MetadataCacheManager:
    """Serves package metadata documents from cache, refreshing from upstream.

    Documents are stored with tarball URLs already rewritten to
    ``proxy_base``; the upstream origin never appears in a cached document.
    """

    def __init__(
        self,
        storage: Storage,
        upstream: UpstreamClient,
        coordinator: FetchCoordinator,
        proxy_base: str,
        policy: Optional[FreshnessPolicy] = None,
    ):
        """Initialize the manager.

        Args:
            storage: Backend holding cached documents.
            upstream: Client for the origin registry.
            coordinator: Single-flight coordinator shared with the asset manager.
            proxy_base: Public base URL of this proxy, including its prefix.
            policy: Freshness policy; defaults to fresh until evicted.
        """
        self._storage = storage
        self._upstream = upstream
        self._coordinator = coordinator
        self._proxy_base = proxy_base.rstrip("/")
        self._policy = policy or FreshnessPolicy()

    @property
    def proxy_base(self) -> str:
        return self._proxy_base

    async def get_metadata(self, name: PackageName) -> MetadataDocument:
        """Return the cached document for ``name``, fetching it if needed.

        Raises:
            NotFoundError: Upstream does not know the package.
            UpstreamError: Upstream failed or returned an unusable document.
            StorageError: The document could not be read or persisted.
        """
        document = await self._cached(name)
        if document is not None:
            return document
        return await self._coordinator.run(name.metadata_key(), lambda: self._load(name))

    async def evict(self, name: PackageName) -> bool:
        """Drop the cached document for ``name``. Returns True if one existed."""
        removed = await self._storage.delete_entry(name.metadata_key())
        if removed:
            logger.info("Evicted metadata for %s", name)
        return removed

    async def _cached(self, name: PackageName) -> Optional[MetadataDocument]:
        entry = await self._storage.read_entry(name.metadata_key())
        if entry is None:
            return None
        if not self._policy.is_fresh(entry):
            logger.debug("Metadata for %s is stale", name)
            return None
        logger.debug("Metadata cache hit: %s", name)
        try:
            content = self._decode(entry.content, name)
        except UpstreamError as exc:
            raise StorageError(f"Corrupt cached metadata for {name}: {exc}") from exc
        return MetadataDocument(name=name, content=content, entry=entry)

    async def _load(self, name: PackageName) -> MetadataDocument:
        # A refresh for this name may have completed since our cache check
        document = await self._cached(name)
        if document is not None:
            return document
        return await self._refresh(name)

    async def _refresh(self, name: PackageName) -> MetadataDocument:
        response = await self._upstream.fetch(name.upstream_path())
        if response.status == 404:
            logger.info(
                "Package not found upstream: %s", name,
                extra=extra_context(event="upstream_miss", outcome="not_found", package=str(name)),
            )
            raise NotFoundError(name.upstream_path())
        if response.status != 200:
            raise UpstreamError(response.excerpt(), status=response.status)

        content = self._decode(response.body, name)
        count = rewrite_document(content, name, self._proxy_base)
        entry = CacheEntry(
            key=name.metadata_key(),
            content=json.dumps(content).encode("utf-8"),
            cache_control=response.header("Cache-Control"),
            last_modified=response.header("Last-Modified"),
            etag=response.header("ETag"),
            content_type=Constants.JSON_CONTENT_TYPE,
        )
        await self._storage.write_entry(entry)
        logger.info(
            "Cached metadata for %s (%d tarball URLs rewritten)", name, count,
            extra=extra_context(event="cache_store", outcome="success", package=str(name)),
        )
        return MetadataDocument(name=name, content=content, entry=entry)

    @staticmethod
    def _decode(data: bytes, name: PackageName) -> Dict[str, Any]:
        try:
            content = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise UpstreamError(f"Malformed metadata document for {name}: {exc}") from exc
        if not isinstance(content, dict):
            raise UpstreamError(f"Metadata document for {name} is not a JSON object")
        return content

