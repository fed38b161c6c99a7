"""Argument parsing for the npm cache proxy."""

import argparse
from constants import Constants

def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="npm-cache-proxy",
        description=(
            "Caching reverse proxy for the npm registry"
        ),
        add_help=True,
    )

    parser.add_argument("-c", "--config",
                        dest="PROXY_CONFIG",
                        help="YAML config file (optionally with a top-level 'proxy' section)",
                        action="store", type=str)
    parser.add_argument("--host",
                        dest="PROXY_HOST",
                        help=f"Address to bind (default: {Constants.DEFAULT_HOST})",
                        action="store", type=str)
    parser.add_argument("-p", "--port",
                        dest="PROXY_PORT",
                        help=f"Port to listen on (default: {Constants.DEFAULT_PORT})",
                        action="store", type=int)
    parser.add_argument("--prefix",
                        dest="PROXY_PREFIX",
                        help=f"Path prefix the registry is served under (default: {Constants.DEFAULT_PREFIX})",
                        action="store", type=str)
    parser.add_argument("-u", "--upstream",
                        dest="PROXY_UPSTREAM",
                        help=f"Upstream registry URL (default: {Constants.REGISTRY_URL_NPM})",
                        action="store", type=str)
    parser.add_argument("--public-url",
                        dest="PROXY_PUBLIC_URL",
                        help="Base URL clients reach the proxy at, used in rewritten tarball URLs",
                        action="store", type=str)
    parser.add_argument("-s", "--storage-dir",
                        dest="PROXY_STORAGE_DIR",
                        help="Cache directory; cache is kept in memory when omitted",
                        action="store", type=str)
    parser.add_argument("--memory-max-bytes",
                        dest="PROXY_MEMORY_MAX_BYTES",
                        help="Byte budget of the in-memory cache",
                        action="store", type=int)
    parser.add_argument("--timeout",
                        dest="PROXY_TIMEOUT",
                        help=f"Upstream request timeout in seconds (default: {Constants.REQUEST_TIMEOUT})",
                        action="store", type=int)
    parser.add_argument("--metadata-ttl",
                        dest="PROXY_METADATA_TTL",
                        help="Revalidate cached metadata older than this many seconds (default: never)",
                        action="store", type=int)
    parser.add_argument("--respect-cache-control",
                        dest="PROXY_RESPECT_CACHE_CONTROL",
                        help="Honor upstream Cache-Control when deciding metadata freshness",
                        action="store_true")
    parser.add_argument("--revalidate-assets",
                        dest="PROXY_REVALIDATE_ASSETS",
                        help="Apply the metadata freshness policy to tarballs too",
                        action="store_true")
    parser.add_argument("--redirect-allow",
                        dest="PROXY_REDIRECT_ALLOW",
                        help="Extra host upstream redirects may point to (repeatable)",
                        action="append", type=str)
    parser.add_argument("--allow-external",
                        dest="PROXY_ALLOW_EXTERNAL",
                        help="Allow binding to non-loopback addresses",
                        action="store_true")
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help=f"Logging level (default: ${Constants.LOG_LEVEL_ENV} or INFO)",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)

    return parser.parse_args(argv)
