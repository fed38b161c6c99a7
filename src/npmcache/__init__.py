"""Caching reverse proxy for the npm registry protocol.

Package metadata documents and tarballs are fetched from an upstream
registry on demand, stored, and served from the cache afterwards. Tarball
URLs inside metadata are rewritten to point back through the proxy, and
concurrent requests for the same resource share a single upstream fetch.
"""

from .assets import AssetCacheManager
from .coordinator import FetchCoordinator, FetchTicket
from .engine import ProxyEngine, ProxyResponse
from .exceptions import (
    CoordinationError,
    InvalidPackageName,
    NotFoundError,
    ProxyError,
    StorageError,
    UpstreamError,
)
from .metadata import MetadataCacheManager
from .models import AssetKey, CacheEntry, FreshnessPolicy, PackageName
from .request_parser import ParsedRequest, RequestKind, RequestParser
from .server import NpmProxyServer, ProxyConfig
from .storage import LocalStorage, MemoryStorage, Storage
from .upstream import UpstreamClient, UpstreamResponse

__all__ = [
    "AssetCacheManager",
    "AssetKey",
    "CacheEntry",
    "CoordinationError",
    "FetchCoordinator",
    "FetchTicket",
    "FreshnessPolicy",
    "InvalidPackageName",
    "LocalStorage",
    "MemoryStorage",
    "MetadataCacheManager",
    "NotFoundError",
    "NpmProxyServer",
    "PackageName",
    "ParsedRequest",
    "ProxyConfig",
    "ProxyEngine",
    "ProxyError",
    "ProxyResponse",
    "RequestKind",
    "RequestParser",
    "Storage",
    "StorageError",
    "UpstreamClient",
    "UpstreamError",
    "UpstreamResponse",
]
