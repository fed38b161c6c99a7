"""Cache records and the names they are keyed by."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from typing import Any, Dict, Optional

from constants import Constants

from .exceptions import InvalidPackageName

_MAX_AGE_PATTERN = re.compile(r"max-age\s*=\s*(\d+)")


def _check_segment(segment: str, name: str) -> None:
    if not segment:
        raise InvalidPackageName(f"Empty segment in package name: {name!r}")
    if segment in (".", ".."):
        raise InvalidPackageName(f"Path traversal in package name: {name!r}")
    if "\\" in segment or "\x00" in segment:
        raise InvalidPackageName(f"Illegal character in package name: {name!r}")


@dataclass(frozen=True)
class PackageName:
    """npm package name, optionally scoped (``@scope/name``)."""

    value: str

    def __post_init__(self) -> None:
        name = self.value
        if not name:
            raise InvalidPackageName("Package name must not be empty")
        segments = name.split("/")
        if name.startswith("@"):
            if len(segments) != 2:
                raise InvalidPackageName(f"Scoped package name must be @scope/name: {name!r}")
            _check_segment(segments[0][1:], name)
        elif len(segments) != 1:
            raise InvalidPackageName(f"Unscoped package name must not contain '/': {name!r}")
        bare = segments[-1]
        _check_segment(bare, name)
        if bare.startswith((".", "_")):
            raise InvalidPackageName(f"Package name must not start with '.' or '_': {name!r}")

    @property
    def scope(self) -> Optional[str]:
        if self.value.startswith("@"):
            return self.value.split("/", 1)[0]
        return None

    @property
    def bare_name(self) -> str:
        """Name without the scope, as used in tarball file names."""
        return self.value.split("/")[-1]

    def metadata_key(self) -> str:
        return f"{self.value}/{Constants.METADATA_FILE}"

    def upstream_path(self) -> str:
        return f"/{self.value}"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AssetKey:
    """A tarball belonging to a package, addressed as ``-/<filename>``."""

    package: PackageName
    filename: str

    def __post_init__(self) -> None:
        if not self.filename or "/" in self.filename:
            raise InvalidPackageName(f"Invalid asset file name: {self.filename!r}")
        _check_segment(self.filename, self.filename)
        if self.filename.endswith(Constants.SIDECAR_SUFFIX):
            raise InvalidPackageName(f"Asset file name is reserved: {self.filename!r}")

    @classmethod
    def from_path(cls, package: str, asset_path: str) -> "AssetKey":
        """Build a key from a package name and a ``-/<filename>`` path."""
        if not asset_path.startswith("-/"):
            raise InvalidPackageName(f"Asset path must start with '-/': {asset_path!r}")
        return cls(PackageName(package), asset_path[2:])

    @property
    def asset_path(self) -> str:
        return f"-/{self.filename}"

    def cache_key(self) -> str:
        return f"{self.package.value}/{self.asset_path}"

    def upstream_path(self) -> str:
        return f"/{self.cache_key()}"

    def __str__(self) -> str:
        return self.cache_key()


@dataclass
class CacheEntry:
    """Stored bytes plus the bookkeeping written alongside them.

    The content lives under ``key`` and the remaining fields in a JSON
    sidecar under ``key + ".meta"``. An entry is replaced as a whole.
    """

    key: str
    content: bytes
    last_refreshed: float = field(default_factory=time.time)
    cache_control: Optional[str] = None
    last_modified: Optional[str] = None
    etag: Optional[str] = None
    content_type: Optional[str] = None

    @staticmethod
    def sidecar_key(key: str) -> str:
        return f"{key}{Constants.SIDECAR_SUFFIX}"

    def sidecar(self) -> bytes:
        data = {
            "last-refreshed": self.last_refreshed,
            "cache-control": self.cache_control,
            "last-modified": self.last_modified,
            "etag": self.etag,
            "content-type": self.content_type,
        }
        return json.dumps({k: v for k, v in data.items() if v is not None}).encode()

    @classmethod
    def from_sidecar(cls, key: str, content: bytes, raw: bytes) -> "CacheEntry":
        data = json.loads(raw.decode("utf-8")) if raw else {}
        return cls(
            key=key,
            content=content,
            last_refreshed=float(data.get("last-refreshed", 0.0)),
            cache_control=data.get("cache-control"),
            last_modified=data.get("last-modified"),
            etag=data.get("etag"),
            content_type=data.get("content-type"),
        )

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.last_refreshed

    def http_last_modified(self) -> str:
        """Value for the Last-Modified response header."""
        return self.last_modified or formatdate(self.last_refreshed, usegmt=True)


@dataclass
class FreshnessPolicy:
    """Decides whether a cached entry may be served without revalidation.

    With the defaults every existing entry is fresh until evicted.

    Attributes:
        ttl: Maximum age in seconds, or None for no limit.
        respect_cache_control: Honor the upstream ``Cache-Control`` hint
            (``no-cache``/``no-store`` force revalidation, ``max-age`` bounds age).
    """

    ttl: Optional[float] = None
    respect_cache_control: bool = False

    def is_fresh(self, entry: CacheEntry, now: Optional[float] = None) -> bool:
        age = entry.age(now)
        if self.ttl is not None and age >= self.ttl:
            return False
        if self.respect_cache_control and entry.cache_control:
            directives = entry.cache_control.lower()
            if "no-cache" in directives or "no-store" in directives:
                return False
            match = _MAX_AGE_PATTERN.search(directives)
            if match and age >= int(match.group(1)):
                return False
        return True


@dataclass
class MetadataDocument:
    """A package metadata document as served to clients."""

    name: PackageName
    content: Dict[str, Any]
    entry: CacheEntry

    def to_bytes(self) -> bytes:
        return self.entry.content


@dataclass
class CachedAsset:
    """A tarball served from cache."""

    key: AssetKey
    entry: CacheEntry

    @property
    def content(self) -> bytes:
        return self.entry.content

    @property
    def content_type(self) -> str:
        return self.entry.content_type or Constants.ASSET_CONTENT_TYPE
