"""Upstream client for fetching documents and tarballs from the origin registry."""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

import aiohttp

from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from constants import Constants

from .exceptions import UpstreamError

logger = logging.getLogger(__name__)

_REDIRECT_STATUSES = (301, 302, 303, 307, 308)


@dataclass
class UpstreamResponse:
    """Fully read upstream response."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lower = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lower:
                return value
        return None

    def excerpt(self, limit: int = 200) -> str:
        """Leading part of the body, for error messages."""
        text = self.body[:limit].decode("utf-8", errors="replace").strip()
        return text or "<empty body>"


class UpstreamClient:
    """Client for the configured upstream registry."""

    # Response headers kept on cached entries (lowercased for comparison)
    KEPT_HEADERS = {
        "cache-control": "Cache-Control",
        "content-type": "Content-Type",
        "etag": "ETag",
        "last-modified": "Last-Modified",
    }

    def __init__(
        self,
        base_url: str = Constants.REGISTRY_URL_NPM,
        timeout: float = Constants.REQUEST_TIMEOUT,
        redirect_allowlist: Optional[Iterable[str]] = None,
    ):
        """Initialize the upstream client.

        Args:
            base_url: Upstream registry base URI.
            timeout: Total request timeout in seconds.
            redirect_allowlist: Extra hosts redirects may point to.
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._redirect_allowlist = {host.lower() for host in (redirect_allowlist or ())}

    @property
    def base_url(self) -> str:
        return self._base_url

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=100)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=connector,
            )

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def build_url(self, path: str) -> str:
        """Build the upstream URL for a registry path."""
        request_path = path if path.startswith("/") else f"/{path}"
        return f"{self._base_url}{urllib.parse.quote(request_path, safe='/@')}"

    async def fetch(self, path: str) -> UpstreamResponse:
        """GET ``path`` from upstream and read the whole body.

        Any HTTP status is returned as a response; only transport failures
        (connection errors, timeouts, blocked redirects) raise.

        Raises:
            UpstreamError: The request could not be completed.
        """
        if self._session is None:
            await self.start()
        assert self._session is not None
        url = self.build_url(path)
        target = safe_url(url)

        with Timer() as t:
            try:
                response = await self._request_with_redirects(url, self._request_headers())
                try:
                    body = await response.read()
                finally:
                    response.release()
            except asyncio.TimeoutError as exc:
                logger.warning(
                    "Upstream request timed out after %ss: %s",
                    self._timeout.total, target,
                    extra=extra_context(event="http_error", outcome="timeout", target=target),
                )
                raise UpstreamError(
                    f"GET {target} timed out after {self._timeout.total}s", timeout=True
                ) from exc
            except aiohttp.ClientError as exc:
                logger.warning(
                    "Upstream connection error for %s: %s", target, exc,
                    extra=extra_context(event="http_error", outcome="exception", target=target),
                )
                raise UpstreamError(f"GET {target} failed: {exc}") from exc

        if is_debug_enabled(logger):
            logger.debug(
                "Upstream response",
                extra=extra_context(
                    event="http_response",
                    component="upstream",
                    action="GET",
                    status_code=response.status,
                    duration_ms=t.duration_ms(),
                    target=target,
                ),
            )
        return UpstreamResponse(
            status=response.status,
            headers=self.filter_response_headers(response.headers),
            body=body,
        )

    def _request_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": Constants.USER_AGENT,
            "Accept": "application/json, application/octet-stream;q=0.9, */*;q=0.8",
        }

    def _is_allowed_redirect(self, target_url: str) -> bool:
        """Validate redirect targets to prevent SSRF."""
        target = urllib.parse.urlparse(target_url)
        if target.scheme not in ("http", "https"):
            return False
        if not target.hostname:
            return False

        allowed_hosts = set(self._redirect_allowlist)
        upstream_host = urllib.parse.urlparse(self._base_url).hostname
        if upstream_host:
            allowed_hosts.add(upstream_host.lower())

        target_host = target.hostname.lower()
        for host in allowed_hosts:
            if target_host == host or target_host.endswith(f".{host}"):
                return True
        return False

    async def _request_with_redirects(
        self,
        url: str,
        headers: Dict[str, str],
        max_redirects: int = 5,
    ) -> aiohttp.ClientResponse:
        """GET ``url`` while enforcing the redirect allowlist."""
        assert self._session is not None
        current_url = url

        for _ in range(max_redirects + 1):
            response = await self._session.get(
                current_url,
                headers=headers,
                allow_redirects=False,
            )

            if response.status not in _REDIRECT_STATUSES:
                return response

            location = response.headers.get("Location")
            if not location:
                return response

            next_url = urllib.parse.urljoin(current_url, location)
            response.release()
            if not self._is_allowed_redirect(next_url):
                raise aiohttp.ClientError(f"Redirect to {safe_url(next_url)} blocked by allowlist")
            current_url = next_url

        raise aiohttp.ClientError("Too many redirects")

    def filter_response_headers(self, headers) -> Dict[str, str]:
        """Keep only the headers stored alongside cached entries.

        Args:
            headers: Raw response headers.

        Returns:
            Filtered headers dict with canonical names.
        """
        filtered = {}
        for key, value in headers.items():
            canonical = self.KEPT_HEADERS.get(key.lower())
            if canonical is not None:
                filtered[canonical] = str(value)
        return filtered

    async def __aenter__(self) -> "UpstreamClient":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()
