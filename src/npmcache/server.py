"""Caching npm registry proxy server using aiohttp."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from aiohttp import web

from common.logging_utils import extra_context
from constants import Constants

from .assets import AssetCacheManager
from .coordinator import FetchCoordinator
from .engine import ProxyEngine, ProxyResponse, not_found_message
from .exceptions import InvalidPackageName
from .metadata import MetadataCacheManager
from .models import AssetKey, FreshnessPolicy, PackageName
from .request_parser import RequestKind, RequestParser
from .storage import LocalStorage, MemoryStorage, Storage
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


@dataclass
class ProxyConfig:
    """Configuration for the proxy server."""

    host: str = Constants.DEFAULT_HOST
    port: int = Constants.DEFAULT_PORT
    prefix: str = Constants.DEFAULT_PREFIX
    upstream: str = Constants.REGISTRY_URL_NPM
    public_url: Optional[str] = None
    storage_dir: Optional[str] = None
    memory_max_bytes: int = Constants.DEFAULT_MEMORY_MAX_BYTES
    timeout: float = Constants.REQUEST_TIMEOUT
    metadata_ttl: Optional[int] = None
    respect_cache_control: bool = False
    immutable_assets: bool = True
    allow_external: bool = False
    redirect_allowlist: List[str] = field(default_factory=list)

    # Config file keys and the value types each accepts
    _FILE_KEYS = {
        "host": (str,),
        "port": (int,),
        "prefix": (str,),
        "upstream": (str,),
        "public_url": (str, type(None)),
        "storage_dir": (str, type(None)),
        "memory_max_bytes": (int,),
        "timeout": (int, float),
        "metadata_ttl": (int, type(None)),
        "respect_cache_control": (bool,),
        "immutable_assets": (bool,),
        "allow_external": (bool,),
        "redirect_allowlist": (list,),
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyConfig":
        """Create config from a mapping such as a parsed YAML file.

        Unknown keys are ignored with a warning.

        Raises:
            TypeError: A known key holds a value of the wrong type.
        """
        known = {key: data[key] for key in cls._FILE_KEYS if key in data}
        unknown = sorted(set(data) - set(known))
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        for key, value in known.items():
            cls._check_type(key, value)
        config = cls(**known)
        config.prefix = config.prefix.strip("/")
        return config

    @classmethod
    def _check_type(cls, key: str, value: Any) -> None:
        expected = cls._FILE_KEYS[key]
        # bool is an int subclass but never a valid number here
        if isinstance(value, bool) and bool not in expected:
            valid = False
        else:
            valid = isinstance(value, expected)
        if valid and key == "redirect_allowlist":
            valid = all(isinstance(host, str) for host in value)
        if not valid:
            names = " or ".join("null" if t is type(None) else t.__name__ for t in expected)
            raise TypeError(f"Config key '{key}' must be {names}, got {value!r}")

    @classmethod
    def from_args(cls, args: Any, base: Optional["ProxyConfig"] = None) -> "ProxyConfig":
        """Create config from CLI arguments.

        Args:
            args: Parsed CLI arguments namespace.
            base: Values loaded from a config file; CLI arguments win.

        Returns:
            ProxyConfig instance.
        """
        config = base or cls()
        overrides = {
            "host": getattr(args, "PROXY_HOST", None),
            "port": getattr(args, "PROXY_PORT", None),
            "prefix": getattr(args, "PROXY_PREFIX", None),
            "upstream": getattr(args, "PROXY_UPSTREAM", None),
            "public_url": getattr(args, "PROXY_PUBLIC_URL", None),
            "storage_dir": getattr(args, "PROXY_STORAGE_DIR", None),
            "memory_max_bytes": getattr(args, "PROXY_MEMORY_MAX_BYTES", None),
            "timeout": getattr(args, "PROXY_TIMEOUT", None),
            "metadata_ttl": getattr(args, "PROXY_METADATA_TTL", None),
        }
        for name, value in overrides.items():
            if value is not None:
                setattr(config, name, value)

        # Flags only ever switch behavior on
        if getattr(args, "PROXY_RESPECT_CACHE_CONTROL", False):
            config.respect_cache_control = True
        if getattr(args, "PROXY_REVALIDATE_ASSETS", False):
            config.immutable_assets = False
        if getattr(args, "PROXY_ALLOW_EXTERNAL", False):
            config.allow_external = True
        if getattr(args, "PROXY_REDIRECT_ALLOW", None):
            config.redirect_allowlist = list(config.redirect_allowlist) + list(args.PROXY_REDIRECT_ALLOW)

        config.prefix = config.prefix.strip("/")
        return config

    @property
    def base_url(self) -> str:
        """Public base URL clients use, including the registry prefix."""
        if self.public_url:
            return self.public_url.rstrip("/")
        root = f"http://{self.host}:{self.port}"
        return f"{root}/{self.prefix}" if self.prefix else root

    def build_storage(self) -> Storage:
        if self.storage_dir:
            return LocalStorage(Path(self.storage_dir))
        return MemoryStorage(max_bytes=self.memory_max_bytes)

    def freshness_policy(self) -> FreshnessPolicy:
        return FreshnessPolicy(
            ttl=self.metadata_ttl,
            respect_cache_control=self.respect_cache_control,
        )


class NpmProxyServer:
    """Caching reverse proxy for an npm registry.

    Metadata documents and tarballs are fetched from the upstream registry
    on first request, stored, and served from storage afterwards.
    """

    def __init__(
        self,
        config: ProxyConfig,
        storage: Optional[Storage] = None,
        upstream: Optional[UpstreamClient] = None,
    ):
        """Initialize the proxy server.

        Args:
            config: Server configuration.
            storage: Storage backend; built from ``config`` when omitted.
            upstream: Upstream client; built from ``config`` when omitted.
        """
        self._config = config
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None

        self._storage = storage or config.build_storage()
        self._upstream = upstream or UpstreamClient(
            base_url=config.upstream,
            timeout=config.timeout,
            redirect_allowlist=config.redirect_allowlist,
        )
        self._coordinator = FetchCoordinator()
        self._parser = RequestParser(config.prefix)

        policy = config.freshness_policy()
        self._engine = ProxyEngine(
            MetadataCacheManager(
                self._storage,
                self._upstream,
                self._coordinator,
                proxy_base=config.base_url,
                policy=policy,
            ),
            AssetCacheManager(
                self._storage,
                self._upstream,
                self._coordinator,
                immutable=config.immutable_assets,
                policy=policy,
            ),
        )

    def _create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get(f"{Constants.ADMIN_PREFIX}/health", self._health_check)
        app.router.add_delete(f"{Constants.ADMIN_PREFIX}/cache/{{name:.+}}", self._evict)
        app.router.add_route("*", "/{path:.*}", self._handle_request)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _health_check(self, request: web.Request) -> web.Response:
        """Liveness check with cache statistics."""
        return web.json_response({
            "status": "ok",
            "upstream": self._upstream.base_url,
            "public_url": self._config.base_url,
            **self.cache_stats(),
        })

    async def _evict(self, request: web.Request) -> web.Response:
        """Evict cached metadata for one package."""
        raw = request.match_info["name"]
        try:
            name = PackageName(raw)
        except InvalidPackageName as exc:
            return web.json_response({"error": str(exc)}, status=400)
        if await self._engine.evict(name):
            return web.json_response({"status": "evicted", "package": name.value})
        return web.json_response({"status": "not_cached", "package": name.value}, status=404)

    async def _on_startup(self, app: web.Application) -> None:
        """Open the upstream session with the app."""
        await self._upstream.start()
        logger.debug("Upstream session opened for %s", self._upstream.base_url)

    async def _on_cleanup(self, app: web.Application) -> None:
        """Close the upstream session with the app."""
        await self._upstream.stop()
        logger.debug("Upstream session closed")

    async def _handle_request(self, request: web.Request) -> web.Response:
        """Handle incoming registry requests.

        Args:
            request: Incoming HTTP request.

        Returns:
            HTTP response.
        """
        request_url = str(request.url)
        parsed = self._parser.parse(request.rel_url.raw_path)

        if parsed.kind == RequestKind.UNKNOWN:
            logger.debug("Unsupported request path: %s", parsed.raw_path)
            return self._to_response(
                ProxyResponse.json_error(404, {"error": not_found_message(request_url)})
            )

        if request.method != "GET":
            return web.json_response(
                {"error": f"Method {request.method} not supported by caching proxy"},
                status=405,
                headers={"Allow": "GET"},
            )

        logger.info("Request: %s %s -> %s %s", request.method, parsed.raw_path,
                    parsed.kind.value, parsed.package_name)

        try:
            if parsed.kind == RequestKind.METADATA:
                result = await self._engine.metadata(PackageName(parsed.package_name), request_url)
            else:
                key = AssetKey.from_path(parsed.package_name, parsed.asset_path or "")
                result = await self._engine.asset(key, request_url)
        except InvalidPackageName as exc:
            logger.warning("Rejected request %s: %s", parsed.raw_path, exc)
            return web.json_response({"error": str(exc)}, status=400)

        return self._to_response(result)

    @staticmethod
    def _to_response(result: ProxyResponse) -> web.Response:
        # Upstream content types may carry parameters such as charset
        headers = dict(result.headers)
        headers["Content-Type"] = result.content_type
        return web.Response(status=result.status, body=result.body, headers=headers)

    def cache_stats(self) -> Dict[str, Any]:
        """Get storage and coordination statistics."""
        return {
            "storage": self._storage.status(),
            "in_flight_fetches": self._coordinator.in_flight(),
        }

    async def start(self) -> None:
        """Bind the listening socket and begin serving."""
        if self._runner is not None:
            return
        self._app = self._create_app()
        runner = web.AppRunner(self._app)
        await runner.setup()
        await web.TCPSite(runner, self._config.host, self._config.port).start()
        self._runner = runner

        logger.info(
            "Serving %s from %s (storage: %s)",
            self._config.base_url,
            self._config.upstream,
            self._storage.status().get("backend"),
            extra=extra_context(event="startup", host=self._config.host, port=self._config.port),
        )

    async def serve_until(self, stop_event: asyncio.Event) -> None:
        """Serve until ``stop_event`` is set, then shut down."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop serving and release the upstream session."""
        runner, self._runner = self._runner, None
        self._app = None
        if runner is not None:
            await runner.cleanup()


def run_proxy_server_sync(config: ProxyConfig) -> None:
    """Run the proxy in the foreground until SIGINT or SIGTERM.

    Args:
        config: Server configuration.
    """
    server = NpmProxyServer(config)

    async def _main() -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows event loops; Ctrl+C then raises KeyboardInterrupt
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop_event.set)
        await server.serve_until(stop_event)

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        pass
    logger.info("npm cache proxy stopped")
