"""Error taxonomy for the caching proxy."""

from __future__ import annotations

from typing import Optional


class ProxyError(Exception):
    """Base class for all proxy errors."""


class InvalidPackageName(ProxyError, ValueError):
    """A package name or asset path failed validation."""


class NotFoundError(ProxyError):
    """Upstream reported the resource as absent."""

    def __init__(self, path: str):
        super().__init__(f"Not found upstream: {path}")
        self.path = path


class UpstreamError(ProxyError):
    """Upstream answered with an unexpected status or could not be reached.

    Attributes:
        status: HTTP status returned by upstream, or None for transport failures.
        message: Human-readable detail (upstream body excerpt or transport cause).
        timeout: True when the request exceeded the configured timeout.
    """

    def __init__(self, message: str, status: Optional[int] = None, timeout: bool = False):
        detail = f"upstream returned {status}: {message}" if status is not None else message
        super().__init__(detail)
        self.message = message
        self.status = status
        self.timeout = timeout


class StorageError(ProxyError):
    """The storage adapter failed to read or persist an entry."""


class CoordinationError(ProxyError):
    """Fetch coordination invariant was violated. Indicates a bug."""
