"""Settings parsing and logging helper tests."""

from __future__ import annotations

import os

from services import logging_setup
from services.config import (
    DEFAULT_MAX_UPLOAD_MB,
    DEFAULT_PORT,
    env_bool,
    load_settings,
    prepare_root,
)


def test_defaults():
    s = load_settings({})
    assert s.root_dir == os.path.abspath("./data")
    assert s.port == DEFAULT_PORT
    assert s.max_upload_bytes == DEFAULT_MAX_UPLOAD_MB * 1024 * 1024
    assert s.search_max_results == 1000
    assert s.partial_ttl_seconds == 86400
    assert not s.auth_enabled


def test_values_from_environment(tmp_path):
    s = load_settings({
        "FILE_SERVER_ROOT": str(tmp_path),
        "AUTH_USERNAME": "u",
        "AUTH_PASSWORD": "p",
        "MUTTLEY_PORT": "8080",
        "MUTTLEY_MAX_UPLOAD_MB": "5",
        "MUTTLEY_MAX_WRITE_KB": "16",
        "MUTTLEY_SEARCH_MAX_RESULTS": "10",
    })
    assert s.root_dir == str(tmp_path)
    assert s.auth_enabled
    assert s.port == 8080
    assert s.max_upload_bytes == 5 * 1024 * 1024
    assert s.max_write_bytes == 16 * 1024
    assert s.search_max_results == 10


def test_malformed_numbers_fall_back():
    s = load_settings({"MUTTLEY_PORT": "http", "MUTTLEY_SEARCH_MAX_RESULTS": "-5"})
    assert s.port == DEFAULT_PORT
    assert s.search_max_results == 1


def test_blank_credentials_disable_auth():
    assert not load_settings({"AUTH_USERNAME": "u", "AUTH_PASSWORD": "  "}).auth_enabled


def test_env_bool():
    env = {"A": "yes", "B": "off", "C": "maybe"}
    assert env_bool(env, "A") is True
    assert env_bool(env, "B", default=True) is False
    assert env_bool(env, "C", default=True) is True
    assert env_bool(env, "MISSING") is False


def test_prepare_root_creates_directory(tmp_path):
    target = tmp_path / "nested" / "root"
    s = load_settings({"FILE_SERVER_ROOT": str(target)})
    assert prepare_root(s) == os.path.realpath(str(target))
    assert target.is_dir()


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
def test_core_log_never_raises():
    logging_setup.core_log("no-such-level", "message", key="value")
    logging_setup.core_log("info", "plain")


def test_access_log_line(client, monkeypatch):
    monkeypatch.setenv("MUTTLEY_LOG_ACCESS_ENABLE", "1")
    assert client.get("/api/config").status_code == 200
    _, access_path = logging_setup.get_paths()
    with open(access_path, encoding="utf-8") as fp:
        lines = fp.read().splitlines()
    assert any("GET /api/config -> 200" in line for line in lines)
