"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    BIND_ERROR = 2


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    REGISTRY_URL_NPM = "https://registry.npmjs.org"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    LOG_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
    LOG_LEVEL_ENV = "NPMCACHE_LOG_LEVEL"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for upstream requests
    USER_AGENT = "npm-cache-proxy/1.0"

    DEFAULT_HOST = "127.0.0.1"
    DEFAULT_PORT = 8080
    DEFAULT_PREFIX = "npm-proxy"
    DEFAULT_MEMORY_MAX_BYTES = 512 * 1024 * 1024

    # Operational endpoints live outside the registry prefix
    ADMIN_PREFIX = "/_npmcache"

    METADATA_FILE = "meta.json"
    SIDECAR_SUFFIX = ".meta"
    JSON_CONTENT_TYPE = "application/json"
    ASSET_CONTENT_TYPE = "application/octet-stream"
