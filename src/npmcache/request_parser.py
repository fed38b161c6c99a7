"""Request parser for extracting package information from registry URLs."""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RequestKind(Enum):
    """Kinds of registry requests the proxy serves."""

    METADATA = "metadata"
    ASSET = "asset"
    UNKNOWN = "unknown"


@dataclass
class ParsedRequest:
    """Result of parsing a registry request."""

    kind: RequestKind
    package_name: str = ""
    asset_path: Optional[str] = None
    raw_path: str = ""


class RequestParser:
    """Parser for package/asset requests below the proxy prefix."""

    # /{package} - package metadata
    # /{@scope/package} - scoped package metadata
    # /{package}/-/{package}-{version}.tgz - tarball
    # /{@scope/package}/-/{package}-{version}.tgz - scoped tarball
    _NPM_SCOPED_PATTERN = re.compile(r"^/(@[^/]+/[^/]+)(?:/(.*))?$")
    _NPM_UNSCOPED_PATTERN = re.compile(r"^/([^/@][^/]*)(?:/(.*))?$")

    def __init__(self, prefix: str = ""):
        """Initialize the request parser.

        Args:
            prefix: Path prefix the registry is mounted under (e.g. ``npm-proxy``).
        """
        prefix = prefix.strip("/")
        self._prefix = f"/{prefix}" if prefix else ""

    @property
    def prefix(self) -> str:
        return self._prefix

    def parse(self, path: str) -> ParsedRequest:
        """Parse a raw (still percent-encoded) request path.

        Args:
            path: The URL path to parse.

        Returns:
            ParsedRequest with extracted information; ``kind`` is UNKNOWN for
            paths outside the prefix or of an unsupported shape.
        """
        # Clients encode the scope separator as %2f
        path = urllib.parse.unquote(path)
        if not path.startswith("/"):
            path = "/" + path

        if self._prefix:
            if path != self._prefix and not path.startswith(self._prefix + "/"):
                return ParsedRequest(kind=RequestKind.UNKNOWN, raw_path=path)
            relative = path[len(self._prefix):]
        else:
            relative = path

        match = self._NPM_SCOPED_PATTERN.match(relative) or self._NPM_UNSCOPED_PATTERN.match(relative)
        if not match:
            return ParsedRequest(kind=RequestKind.UNKNOWN, raw_path=path)

        package_name, rest = match.groups()
        # Skip special paths
        if package_name in ("-", "_", "favicon.ico"):
            return ParsedRequest(kind=RequestKind.UNKNOWN, raw_path=path)

        if not rest:
            return ParsedRequest(
                kind=RequestKind.METADATA,
                package_name=package_name,
                raw_path=path,
            )

        if rest.startswith("-/") and len(rest) > 2:
            return ParsedRequest(
                kind=RequestKind.ASSET,
                package_name=package_name,
                asset_path=rest,
                raw_path=path,
            )

        return ParsedRequest(kind=RequestKind.UNKNOWN, package_name=package_name, raw_path=path)
