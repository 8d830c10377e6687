"""
Global Pytest Configuration and Fixtures.

This module sets up the testing environment, including:
1. Path manipulation so the flat 'muttley-ui' modules are importable.
2. A temporary Root directory, settings objects and a Flask test client.
"""

from __future__ import annotations

import os
import sys

import pytest

# -----------------------------------------------------------------------------
# Path Configuration
# -----------------------------------------------------------------------------
_APP_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "muttley-ui"))
if _APP_PATH not in sys.path:
    sys.path.insert(0, _APP_PATH)

# Keep test output clean; handlers are configured once per process.
os.environ.setdefault("MUTTLEY_LOG_CONSOLE", "0")

from app import create_app  # noqa: E402
from services.config import Settings  # noqa: E402
from services.uploads import ChunkUploadAssembler  # noqa: E402


# -----------------------------------------------------------------------------
# Filesystem Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture(scope="session")
def log_dir(tmp_path_factory) -> str:
    return str(tmp_path_factory.mktemp("logs"))


@pytest.fixture
def root(tmp_path) -> str:
    """Canonical, empty Root directory."""
    d = tmp_path / "data"
    d.mkdir()
    return os.path.realpath(str(d))


@pytest.fixture
def make_file(root):
    """Create ``rel`` (slash separated) under Root with ``data``."""
    def _make(rel: str, data: bytes = b"") -> str:
        path = os.path.join(root, *rel.split("/"))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fp:
            fp.write(data)
        return path
    return _make


# -----------------------------------------------------------------------------
# Application Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def settings(root, log_dir) -> Settings:
    return Settings(
        root_dir=root,
        log_dir=log_dir,
        max_upload_bytes=1024 * 1024,
        max_write_bytes=64 * 1024,
        search_max_results=50,
    )


@pytest.fixture
def assembler(root, settings) -> ChunkUploadAssembler:
    return ChunkUploadAssembler(
        root,
        max_chunk_bytes=settings.max_upload_bytes,
        max_write_bytes=settings.max_write_bytes,
        ttl_seconds=settings.partial_ttl_seconds,
    )


@pytest.fixture
def app(settings):
    flask_app = create_app(settings)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_settings(root, log_dir) -> Settings:
    return Settings(root_dir=root, log_dir=log_dir, auth_username="admin", auth_password="s3cret")
