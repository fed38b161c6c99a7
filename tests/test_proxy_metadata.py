"""Tests for the metadata cache manager."""

import asyncio
import json

import pytest

from npmcache.coordinator import FetchCoordinator
from npmcache.exceptions import NotFoundError, StorageError, UpstreamError
from npmcache.metadata import MetadataCacheManager, rewrite_document, rewrite_tarball_url
from npmcache.models import CacheEntry, FreshnessPolicy, PackageName
from npmcache.storage import MemoryStorage

from upstream_stub import UPSTREAM, HeldMissStorage, StubUpstream, package_document, transport_error

PROXY_BASE = "http://proxy.test:8080/npm-proxy"


def _manager(upstream, storage=None, policy=None):
    return MetadataCacheManager(
        storage or MemoryStorage(),
        upstream,
        FetchCoordinator(),
        proxy_base=PROXY_BASE,
        policy=policy,
    )


class TestTarballRewrite:
    """Tests for dist.tarball rewriting."""

    def test_rewrites_origin(self):
        """Upstream origin is replaced by the proxy base."""
        url = rewrite_tarball_url(
            "https://registry.npmjs.org/asdas/-/asdas-1.0.0.tgz",
            PackageName("asdas"),
            PROXY_BASE,
        )
        assert url == f"{PROXY_BASE}/asdas/-/asdas-1.0.0.tgz"

    def test_strips_upstream_path_prefix(self):
        """An upstream mounted under a path loses that prefix."""
        url = rewrite_tarball_url(
            "https://mirror.example/registry/npm/asdas/-/asdas-1.0.0.tgz",
            PackageName("asdas"),
            PROXY_BASE,
        )
        assert url == f"{PROXY_BASE}/asdas/-/asdas-1.0.0.tgz"

    def test_scoped_package(self):
        """Scoped tarballs keep the scope, including encoded separators."""
        name = PackageName("@scope/pkg")
        assert rewrite_tarball_url(
            "https://registry.npmjs.org/@scope/pkg/-/pkg-1.2.3.tgz", name, PROXY_BASE
        ) == f"{PROXY_BASE}/@scope/pkg/-/pkg-1.2.3.tgz"
        assert rewrite_tarball_url(
            "https://registry.npmjs.org/@scope%2fpkg/-/pkg-1.2.3.tgz", name, PROXY_BASE
        ) == f"{PROXY_BASE}/@scope/pkg/-/pkg-1.2.3.tgz"

    def test_unusual_shape_falls_back_to_file_name(self):
        """URLs without /<name>/-/ are mapped onto the package's asset path."""
        url = rewrite_tarball_url(
            "https://cdn.example/blobs/abc/asdas-1.0.0.tgz",
            PackageName("asdas"),
            PROXY_BASE,
        )
        assert url == f"{PROXY_BASE}/asdas/-/asdas-1.0.0.tgz"

    def test_rewrite_document_counts(self):
        """Every version is rewritten; versions without dist are skipped."""
        document = package_document("foo", versions=("1.0.0", "1.1.0"))
        document["versions"]["0.0.1"] = {"version": "0.0.1"}
        assert rewrite_document(document, PackageName("foo"), PROXY_BASE) == 2
        for version in ("1.0.0", "1.1.0"):
            assert document["versions"][version]["dist"]["tarball"].startswith(PROXY_BASE)

    def test_rewrite_document_without_versions(self):
        """Documents lacking versions are left alone."""
        assert rewrite_document({"name": "x"}, PackageName("x"), PROXY_BASE) == 0


class TestMetadataCacheManager:
    """Tests for metadata fetch and cache behavior."""

    def test_fetches_rewrites_and_stores(self):
        """A miss fetches upstream, rewrites tarballs and persists the document."""
        upstream = StubUpstream()
        upstream.add_json("/asdas", package_document("asdas"))
        storage = MemoryStorage()

        async def _run():
            manager = _manager(upstream, storage)
            document = await manager.get_metadata(PackageName("asdas"))
            stored = await storage.read_entry("asdas/meta.json")
            return document, stored

        document, stored = asyncio.run(_run())
        expected = f"{PROXY_BASE}/asdas/-/asdas-1.0.0.tgz"
        assert document.content["versions"]["1.0.0"]["dist"]["tarball"] == expected
        assert stored is not None
        assert UPSTREAM.encode() not in stored.content
        assert json.loads(stored.content)["versions"]["1.0.0"]["dist"]["tarball"] == expected
        assert stored.content_type == "application/json"

    def test_cache_hit_skips_upstream(self):
        """A cached document is served without contacting upstream."""
        upstream = StubUpstream()
        upstream.add_json("/asdas", package_document("asdas"))

        async def _run():
            manager = _manager(upstream)
            first = await manager.get_metadata(PackageName("asdas"))
            second = await manager.get_metadata(PackageName("asdas"))
            return first, second

        first, second = asyncio.run(_run())
        assert upstream.count("/asdas") == 1
        assert first.content == second.content

    def test_not_found_is_not_cached(self):
        """Repeated requests for a missing package go upstream each time."""
        upstream = StubUpstream()
        storage = MemoryStorage()

        async def _run():
            manager = _manager(upstream, storage)
            for _ in range(2):
                with pytest.raises(NotFoundError):
                    await manager.get_metadata(PackageName("packageNotFound"))
            return await storage.exists("packageNotFound/meta.json")

        assert asyncio.run(_run()) is False
        assert upstream.count("/packageNotFound") == 2

    def test_upstream_status_error(self):
        """Unexpected statuses surface with status and message."""
        upstream = StubUpstream()
        upstream.add_status("/broken", 503, b"service unavailable")

        async def _run():
            await _manager(upstream).get_metadata(PackageName("broken"))

        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(_run())
        assert exc_info.value.status == 503
        assert "service unavailable" in exc_info.value.message

    def test_transport_error_then_recovery(self):
        """A transport failure is not pinned; the next request retries."""
        upstream = StubUpstream()
        upstream.add_error("/flaky", transport_error())

        async def _run():
            manager = _manager(upstream)
            with pytest.raises(UpstreamError):
                await manager.get_metadata(PackageName("flaky"))
            upstream.add_json("/flaky", package_document("flaky"))
            return await manager.get_metadata(PackageName("flaky"))

        document = asyncio.run(_run())
        assert document.content["name"] == "flaky"
        assert upstream.count("/flaky") == 2

    def test_malformed_document(self):
        """Non-JSON and non-object bodies are upstream errors."""
        upstream = StubUpstream()
        upstream.add_bytes("/garbage", b"<html>", content_type="text/html")
        upstream.add_bytes("/list", b"[1, 2]", content_type="application/json")

        async def _run(name):
            await _manager(upstream).get_metadata(PackageName(name))

        for name in ("garbage", "list"):
            with pytest.raises(UpstreamError):
                asyncio.run(_run(name))

    def test_concurrent_requests_single_fetch(self):
        """Two simultaneous requests share one 200ms upstream fetch."""
        upstream = StubUpstream(delay=0.2)
        upstream.add_json("/foo", package_document("foo"))

        async def _run():
            manager = _manager(upstream)
            return await asyncio.gather(
                manager.get_metadata(PackageName("foo")),
                manager.get_metadata(PackageName("foo")),
            )

        first, second = asyncio.run(_run())
        assert upstream.count("/foo") == 1
        assert first.content == second.content
        assert first.to_bytes() == second.to_bytes()

    def test_miss_observed_before_fetch_completes(self):
        """A request that saw a miss before another fetch finished reuses its result."""
        upstream = StubUpstream()
        upstream.add_json("/foo", package_document("foo"))

        async def _run():
            storage = HeldMissStorage()
            manager = _manager(upstream, storage)
            storage.hold_next_miss = True
            late = asyncio.ensure_future(manager.get_metadata(PackageName("foo")))
            await asyncio.sleep(0.01)
            first = await manager.get_metadata(PackageName("foo"))
            storage.release.set()
            return first, await late

        first, late = asyncio.run(_run())
        assert upstream.count("/foo") == 1
        assert late.to_bytes() == first.to_bytes()

    def test_stale_entry_is_refreshed(self):
        """With a TTL, expired documents are refetched and replaced."""
        upstream = StubUpstream()
        upstream.add_json("/foo", package_document("foo", versions=("2.0.0",)))
        storage = MemoryStorage()

        async def _run():
            old = package_document("foo", versions=("1.0.0",), upstream=PROXY_BASE)
            await storage.write_entry(
                CacheEntry(key="foo/meta.json", content=json.dumps(old).encode(), last_refreshed=0.0)
            )
            manager = _manager(upstream, storage, policy=FreshnessPolicy(ttl=60))
            return await manager.get_metadata(PackageName("foo"))

        document = asyncio.run(_run())
        assert upstream.count("/foo") == 1
        assert list(document.content["versions"]) == ["2.0.0"]

    def test_corrupt_cached_document(self):
        """A cached document that no longer parses is a storage error."""
        storage = MemoryStorage()

        async def _run():
            await storage.write_entry(CacheEntry(key="foo/meta.json", content=b"{broken"))
            await _manager(StubUpstream(), storage).get_metadata(PackageName("foo"))

        with pytest.raises(StorageError):
            asyncio.run(_run())

    def test_evict(self):
        """Evicting forces the next request upstream."""
        upstream = StubUpstream()
        upstream.add_json("/foo", package_document("foo"))

        async def _run():
            manager = _manager(upstream)
            await manager.get_metadata(PackageName("foo"))
            assert await manager.evict(PackageName("foo")) is True
            assert await manager.evict(PackageName("foo")) is False
            await manager.get_metadata(PackageName("foo"))

        asyncio.run(_run())
        assert upstream.count("/foo") == 2

    def test_keeps_upstream_hints(self):
        """Cache-Control and validators from upstream are stored on the entry."""
        upstream = StubUpstream()
        upstream.add_json(
            "/foo",
            package_document("foo"),
            headers={"Cache-Control": "max-age=300", "ETag": '"v1"'},
        )

        document = asyncio.run(_manager(upstream).get_metadata(PackageName("foo")))
        assert document.entry.cache_control == "max-age=300"
        assert document.entry.etag == '"v1"'
