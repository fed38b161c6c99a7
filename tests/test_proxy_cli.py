"""Tests for proxy CLI helpers."""

from unittest.mock import patch

import pytest

from cli_proxy import _enforce_local_binding, _is_local_bind_host, _load_config_file, main
from constants import ExitCodes


def test_is_local_bind_host_loopback():
    """Loopback hosts should be treated as local."""
    assert _is_local_bind_host("127.0.0.1") is True
    assert _is_local_bind_host("localhost") is True
    assert _is_local_bind_host("::1") is True
    assert _is_local_bind_host("[::1]") is True
    assert _is_local_bind_host(" LOCALHOST ") is True


def test_is_local_bind_host_external():
    """Non-local hosts should be treated as external."""
    assert _is_local_bind_host("0.0.0.0") is False
    assert _is_local_bind_host("192.168.1.10") is False
    assert _is_local_bind_host("") is False


def test_enforce_local_binding_rejects_external():
    """External bindings must be explicitly allowed."""
    with pytest.raises(SystemExit):
        _enforce_local_binding("0.0.0.0", False)


def test_enforce_local_binding_allows_with_flag():
    """External bindings are allowed only when flag is set."""
    _enforce_local_binding("0.0.0.0", True)


def test_load_config_file_proxy_section(tmp_path):
    """A top-level proxy section is used when present."""
    path = tmp_path / "npmcache.yml"
    path.write_text("proxy:\n  port: 9100\n  storage_dir: /tmp/npm\n", encoding="utf-8")
    assert _load_config_file(str(path)) == {"port": 9100, "storage_dir": "/tmp/npm"}


def test_load_config_file_flat(tmp_path):
    """Flat files are read as the proxy section itself."""
    path = tmp_path / "npmcache.yml"
    path.write_text("prefix: registry\nmetadata_ttl: 600\n", encoding="utf-8")
    assert _load_config_file(str(path)) == {"prefix": "registry", "metadata_ttl": 600}


def test_load_config_file_empty(tmp_path):
    """Empty files and no path yield no overrides."""
    path = tmp_path / "empty.yml"
    path.write_text("", encoding="utf-8")
    assert _load_config_file(str(path)) == {}
    assert _load_config_file(None) == {}


def test_load_config_file_missing(tmp_path):
    """A missing config file is a file error."""
    with pytest.raises(SystemExit) as exc_info:
        _load_config_file(str(tmp_path / "nope.yml"))
    assert exc_info.value.code == ExitCodes.FILE_ERROR.value


def test_load_config_file_not_a_mapping(tmp_path):
    """Config files must hold a mapping."""
    path = tmp_path / "list.yml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(SystemExit) as exc_info:
        _load_config_file(str(path))
    assert exc_info.value.code == ExitCodes.FILE_ERROR.value


def test_main_builds_config(tmp_path):
    """main() merges the config file with CLI flags before serving."""
    path = tmp_path / "npmcache.yml"
    path.write_text("proxy:\n  port: 9100\n  prefix: registry\n", encoding="utf-8")

    with patch("cli_proxy.run_proxy_server_sync") as run_sync, \
            patch("cli_proxy.configure_logging"):
        main(["-c", str(path), "-p", "9200"])

    config = run_sync.call_args[0][0]
    assert config.port == 9200
    assert config.prefix == "registry"
    assert config.base_url == "http://127.0.0.1:9200/registry"


def test_main_rejects_external_bind():
    """main() refuses non-local binds without --allow-external."""
    with patch("cli_proxy.run_proxy_server_sync") as run_sync, \
            patch("cli_proxy.configure_logging"):
        with pytest.raises(SystemExit):
            main(["--host", "0.0.0.0"])
    run_sync.assert_not_called()


def test_main_rejects_null_prefix(tmp_path):
    """A config value of the wrong type is a file error, not a crash."""
    path = tmp_path / "npmcache.yml"
    path.write_text("proxy:\n  prefix: null\n", encoding="utf-8")

    with patch("cli_proxy.run_proxy_server_sync") as run_sync, \
            patch("cli_proxy.configure_logging"):
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(path)])
    assert exc_info.value.code == ExitCodes.FILE_ERROR.value
    run_sync.assert_not_called()
