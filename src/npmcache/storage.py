"""Storage adapters for cached bytes.

Keys are ``/``-separated strings derived from package names and asset
paths. Adapters must tolerate concurrent access to different keys; writes to
one key are serialized by the fetch coordinator.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from constants import Constants

from .exceptions import StorageError
from .models import CacheEntry

logger = logging.getLogger(__name__)


class Storage:
    """Key-value byte store."""

    async def exists(self, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def read(self, key: str) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError

    async def write(self, key: str, data: bytes) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> Dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError

    async def read_entry(self, key: str) -> Optional[CacheEntry]:
        """Load the entry stored under ``key``, or None if there is none."""
        sidecar_key = CacheEntry.sidecar_key(key)
        if not await self.exists(sidecar_key) or not await self.exists(key):
            return None
        raw = await self.read(sidecar_key)
        content = await self.read(key)
        try:
            return CacheEntry.from_sidecar(key, content, raw)
        except ValueError as exc:
            raise StorageError(f"Corrupt cache record for {key}: {exc}") from exc

    async def write_entry(self, entry: CacheEntry) -> None:
        """Replace the entry under ``entry.key``; the sidecar is written last."""
        await self.write(entry.key, entry.content)
        await self.write(CacheEntry.sidecar_key(entry.key), entry.sidecar())

    async def delete_entry(self, key: str) -> bool:
        """Remove an entry. Returns True if it existed."""
        existed = await self.delete(CacheEntry.sidecar_key(key))
        await self.delete(key)
        return existed


@dataclass
class _Blob:
    data: bytes
    created_at: float = field(default_factory=time.time)


class MemoryStorage(Storage):
    """In-process storage with a byte budget.

    When the budget is exceeded the oldest entries are evicted, content and
    sidecar together.
    """

    def __init__(self, max_bytes: int = Constants.DEFAULT_MEMORY_MAX_BYTES):
        """Initialize the store.

        Args:
            max_bytes: Total bytes kept before evicting oldest entries.
        """
        self._blobs: Dict[str, _Blob] = {}
        self._max_bytes = max_bytes
        self._current_bytes = 0

    async def exists(self, key: str) -> bool:
        return key in self._blobs

    async def read(self, key: str) -> bytes:
        blob = self._blobs.get(key)
        if blob is None:
            raise StorageError(f"No such key: {key}")
        return blob.data

    async def write(self, key: str, data: bytes) -> None:
        self._check_budget(key, len(data))
        self._remove(key)
        self._make_room(len(data), keep=_entry_base(key))
        self._store(key, data)

    async def write_entry(self, entry: CacheEntry) -> None:
        """Replace an entry, budgeting content and sidecar together."""
        sidecar_key = CacheEntry.sidecar_key(entry.key)
        sidecar = entry.sidecar()
        size = len(entry.content) + len(sidecar)
        self._check_budget(entry.key, size)
        self._remove(sidecar_key)
        self._remove(entry.key)
        self._make_room(size, keep=entry.key)
        self._store(entry.key, entry.content)
        self._store(sidecar_key, sidecar)

    async def delete(self, key: str) -> bool:
        return self._remove(key)

    def status(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "total_keys": len(self._blobs),
            "current_bytes": self._current_bytes,
            "max_bytes": self._max_bytes,
        }

    def _check_budget(self, key: str, size: int) -> None:
        if size > self._max_bytes:
            raise StorageError(
                f"{key} needs {size} bytes, over the memory storage budget of {self._max_bytes}"
            )

    def _store(self, key: str, data: bytes) -> None:
        self._blobs[key] = _Blob(data=data)
        self._current_bytes += len(data)

    def _remove(self, key: str) -> bool:
        blob = self._blobs.pop(key, None)
        if blob is None:
            return False
        self._current_bytes -= len(blob.data)
        return True

    def _make_room(self, size: int, keep: str) -> None:
        """Evict oldest entries until ``size`` more bytes fit, sparing ``keep``."""
        while self._current_bytes + size > self._max_bytes:
            candidates = [k for k in self._blobs if _entry_base(k) != keep]
            if not candidates:
                break
            oldest = min(candidates, key=lambda k: self._blobs[k].created_at)
            base = _entry_base(oldest)
            logger.debug("Evicting %s from memory storage", base)
            self._remove(CacheEntry.sidecar_key(base))
            self._remove(base)


def _entry_base(key: str) -> str:
    """Content key of the entry ``key`` belongs to."""
    suffix = Constants.SIDECAR_SUFFIX
    return key[: -len(suffix)] if key.endswith(suffix) else key


def sanitize_key(root: Path, key: str) -> Path:
    """Resolve ``key`` under ``root``, refusing anything that escapes it."""
    root = root.resolve()
    candidate = root.joinpath(*key.split("/"))
    resolved = candidate.resolve(strict=False)
    if resolved != root and root not in resolved.parents:
        raise StorageError(f"Invalid cache key: {key}")
    return resolved


class LocalStorage(Storage):
    """Directory tree on the local filesystem.

    Writes go to a temporary file in the target directory and are moved
    into place with ``os.replace`` so readers never see partial content.
    """

    def __init__(self, root: Path):
        self._root = Path(root)

    async def exists(self, key: str) -> bool:
        path = sanitize_key(self._root, key)
        return await asyncio.to_thread(path.is_file)

    async def read(self, key: str) -> bytes:
        path = sanitize_key(self._root, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Failed to read {key}: {exc}") from exc

    async def write(self, key: str, data: bytes) -> None:
        path = sanitize_key(self._root, key)
        try:
            await asyncio.to_thread(self._write_atomic, path, data)
        except OSError as exc:
            raise StorageError(f"Failed to write {key}: {exc}") from exc

    async def delete(self, key: str) -> bool:
        path = sanitize_key(self._root, key)
        try:
            return await asyncio.to_thread(self._unlink, path)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def status(self) -> Dict[str, Any]:
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": self._root.exists() and os.access(self._root, os.W_OK),
        }

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise

    @staticmethod
    def _unlink(path: Path) -> bool:
        if not path.is_file():
            return False
        path.unlink()
        return True
