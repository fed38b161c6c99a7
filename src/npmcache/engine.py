"""Proxy engine: maps cache manager outcomes to registry responses."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from constants import Constants

from .assets import AssetCacheManager
from .exceptions import CoordinationError, NotFoundError, ProxyError, StorageError, UpstreamError
from .metadata import MetadataCacheManager
from .models import AssetKey, PackageName

logger = logging.getLogger(__name__)


@dataclass
class ProxyResponse:
    """Transport-independent response."""

    status: int
    body: bytes
    content_type: str = Constants.JSON_CONTENT_TYPE
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def json_error(cls, status: int, payload: Dict[str, object]) -> "ProxyResponse":
        return cls(status=status, body=json.dumps(payload).encode("utf-8"))

    def json(self) -> Dict[str, object]:
        return json.loads(self.body.decode("utf-8"))


def not_found_message(request_url: str) -> str:
    """Message npm clients show for a missing package or tarball."""
    return f"Not Found - GET {request_url}"


class ProxyEngine:
    """Handles metadata and asset lookups for the transport layer.

    This is the only place where error kinds are translated into HTTP
    statuses.
    """

    def __init__(self, metadata: MetadataCacheManager, assets: AssetCacheManager):
        self._metadata = metadata
        self._assets = assets

    async def metadata(self, name: PackageName, request_url: str) -> ProxyResponse:
        """Look up the metadata document for ``name``."""

        async def _lookup() -> ProxyResponse:
            document = await self._metadata.get_metadata(name)
            return ProxyResponse(
                status=200,
                body=document.to_bytes(),
                content_type=Constants.JSON_CONTENT_TYPE,
                headers={"Last-Modified": document.entry.http_last_modified()},
            )

        return await self._respond(_lookup, request_url)

    async def asset(self, key: AssetKey, request_url: str) -> ProxyResponse:
        """Look up the tarball for ``key``."""

        async def _lookup() -> ProxyResponse:
            asset = await self._assets.get_asset(key)
            return ProxyResponse(
                status=200,
                body=asset.content,
                content_type=asset.content_type,
                headers={"Last-Modified": asset.entry.http_last_modified()},
            )

        return await self._respond(_lookup, request_url)

    async def evict(self, name: PackageName) -> bool:
        """Drop cached metadata for ``name``."""
        return await self._metadata.evict(name)

    async def _respond(
        self,
        lookup: Callable[[], Awaitable[ProxyResponse]],
        request_url: str,
    ) -> ProxyResponse:
        try:
            return await lookup()
        except NotFoundError:
            return ProxyResponse.json_error(404, {"error": not_found_message(request_url)})
        except UpstreamError as exc:
            return self._upstream_failure(exc, request_url)
        except StorageError as exc:
            logger.error("Storage failure serving %s: %s", request_url, exc)
            return ProxyResponse.json_error(500, {"error": "Cache storage failure", "message": str(exc)})
        except CoordinationError as exc:
            logger.exception("Fetch coordination failed for %s", request_url)
            return ProxyResponse.json_error(500, {"error": "Internal error", "message": str(exc)})
        except ProxyError as exc:
            logger.error("Unhandled proxy error for %s: %s", request_url, exc)
            return ProxyResponse.json_error(500, {"error": "Internal error", "message": str(exc)})

    @staticmethod
    def _upstream_failure(exc: UpstreamError, request_url: str) -> ProxyResponse:
        status = 504 if exc.timeout else 502
        payload: Dict[str, object] = {
            "error": f"Upstream failure - GET {request_url}",
            "message": exc.message,
        }
        upstream_status: Optional[int] = exc.status
        if upstream_status is not None:
            payload["upstream_status"] = upstream_status
        logger.warning("Upstream failure for %s: %s", request_url, exc)
        return ProxyResponse.json_error(status, payload)
