"""CLI entry point for the npm cache proxy.

This module provides the command-line interface for starting the caching
proxy in front of an npm registry.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import sys
from typing import Any, Dict, Optional

import yaml

from args import parse_args
from common.logging_utils import configure_logging
from constants import Constants, ExitCodes
from npmcache.server import ProxyConfig, run_proxy_server_sync

logger = logging.getLogger(__name__)

_LOCAL_HOSTNAMES = ("localhost", "localhost.localdomain", "ip6-localhost")


def _is_local_bind_host(host: str) -> bool:
    """True for loopback addresses and well-known localhost names."""
    candidate = (host or "").strip().lower().strip("[]")
    if not candidate:
        return False
    if candidate in _LOCAL_HOSTNAMES:
        return True
    try:
        return ipaddress.ip_address(candidate).is_loopback
    except ValueError:
        return False


def _enforce_local_binding(host: str, allow_external: bool) -> None:
    """Exit unless ``host`` is local or external binding was requested."""
    if _is_local_bind_host(host):
        return
    if not allow_external:
        logger.error("Refusing to bind to %s without --allow-external", host)
        sys.exit(ExitCodes.BIND_ERROR.value)
    logger.warning(
        "Listening on non-local address %s; anyone who can reach it can fill the cache",
        host,
    )


def _load_config_file(config_path: Optional[str]) -> Dict[str, Any]:
    """Load proxy configuration from a YAML file.

    Args:
        config_path: Path to YAML config file.

    Returns:
        Mapping of config values; the ``proxy`` section when present.
    """
    if not config_path:
        return {}

    if not os.path.isfile(config_path):
        logger.error("Config file not found: %s", config_path)
        sys.exit(ExitCodes.FILE_ERROR.value)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to load config %s: %s", config_path, e)
        sys.exit(ExitCodes.FILE_ERROR.value)

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error("Config file %s must contain a mapping", config_path)
        sys.exit(ExitCodes.FILE_ERROR.value)
    section = data.get("proxy", data)
    return section if isinstance(section, dict) else {}


def _setup_logging(args: Any) -> None:
    """Apply --loglevel and --logfile to the root logger."""
    configure_logging(getattr(args, "LOG_LEVEL", None))

    log_file = getattr(args, "LOG_FILE", None)
    if not log_file:
        return
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(Constants.LOG_FILE_FORMAT))
    logging.getLogger().addHandler(file_handler)
    logger.info("Also logging to %s", log_file)


def _banner(config: ProxyConfig) -> str:
    lines = [
        "",
        "  npm cache proxy",
        f"  listen    http://{config.host}:{config.port}",
        f"  upstream  {config.upstream}",
        f"  storage   {config.storage_dir or 'memory'}",
        "",
        "  Point npm at it with:",
        f"    npm config set registry {config.base_url}/",
        "",
    ]
    return "\n".join(lines)


def run_proxy_server(args: Any) -> None:
    """Entry point for the proxy server command.

    Args:
        args: Parsed CLI arguments namespace.
    """
    _setup_logging(args)

    config_path = getattr(args, "PROXY_CONFIG", None)
    file_config = _load_config_file(config_path)
    if file_config:
        logger.info("Loaded config from: %s", config_path)

    try:
        base = ProxyConfig.from_dict(file_config)
    except (TypeError, ValueError) as e:
        logger.error("Invalid config in %s: %s", config_path, e)
        sys.exit(ExitCodes.FILE_ERROR.value)
    config = ProxyConfig.from_args(args, base=base)
    _enforce_local_binding(config.host, config.allow_external)

    print(_banner(config))

    run_proxy_server_sync(config)


def main(argv=None) -> None:
    """Main function of the program."""
    args = parse_args(argv)
    run_proxy_server(args)


if __name__ == "__main__":
    main()
