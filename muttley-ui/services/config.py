"""Runtime settings for the file manager.

Everything is driven by environment variables and read once at startup.

Environment variables
- FILE_SERVER_ROOT: directory exposed to clients (default: ./data)
- AUTH_USERNAME / AUTH_PASSWORD: Basic auth credentials; auth is enabled
  only when both are set
- MUTTLEY_HOST / MUTTLEY_PORT: listen address (default: 0.0.0.0:3000)
- MUTTLEY_MAX_UPLOAD_MB: max size of a single upload chunk (default: 200)
- MUTTLEY_MAX_WRITE_KB: max size of a text editor save (default: 2048)
- MUTTLEY_SEARCH_MAX_RESULTS: search result cap (default: 1000)
- MUTTLEY_PARTIAL_TTL_SECONDS: idle time before an unfinished upload is
  discarded (default: 86400)
- MUTTLEY_LOG_DIR: directory for core/access logs (default: ./logs)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


DEFAULT_ROOT = "./data"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_MAX_UPLOAD_MB = 200
DEFAULT_MAX_WRITE_KB = 2048
DEFAULT_SEARCH_MAX_RESULTS = 1000
DEFAULT_PARTIAL_TTL_SECONDS = 24 * 3600
DEFAULT_LOG_DIR = "./logs"


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    v = env.get(name)
    if v is None:
        return default
    s = str(v).strip()
    return s or default


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    v = env.get(name)
    if v is None:
        return default
    try:
        n = int(float(str(v).strip()))
    except ValueError:
        return default
    return max(minimum, n)


def env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    v = env.get(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "on", "y"):
        return True
    if s in ("0", "false", "no", "off", "n"):
        return False
    return default


@dataclass(frozen=True)
class Settings:
    root_dir: str
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    auth_username: Optional[str] = None
    auth_password: Optional[str] = None
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_MB * 1024 * 1024
    max_write_bytes: int = DEFAULT_MAX_WRITE_KB * 1024
    search_max_results: int = DEFAULT_SEARCH_MAX_RESULTS
    partial_ttl_seconds: int = DEFAULT_PARTIAL_TTL_SECONDS
    log_dir: str = DEFAULT_LOG_DIR

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth_username) and bool(self.auth_password)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment (``os.environ`` by default)."""
    env = os.environ if environ is None else environ

    root = _env_str(env, "FILE_SERVER_ROOT", DEFAULT_ROOT)
    user = _env_str(env, "AUTH_USERNAME") or None
    password = _env_str(env, "AUTH_PASSWORD") or None

    return Settings(
        root_dir=os.path.abspath(os.path.expanduser(root)),
        host=_env_str(env, "MUTTLEY_HOST", DEFAULT_HOST),
        port=_env_int(env, "MUTTLEY_PORT", DEFAULT_PORT, minimum=1),
        auth_username=user,
        auth_password=password,
        max_upload_bytes=_env_int(env, "MUTTLEY_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB, minimum=1) * 1024 * 1024,
        max_write_bytes=_env_int(env, "MUTTLEY_MAX_WRITE_KB", DEFAULT_MAX_WRITE_KB, minimum=1) * 1024,
        search_max_results=_env_int(env, "MUTTLEY_SEARCH_MAX_RESULTS", DEFAULT_SEARCH_MAX_RESULTS, minimum=1),
        partial_ttl_seconds=_env_int(env, "MUTTLEY_PARTIAL_TTL_SECONDS", DEFAULT_PARTIAL_TTL_SECONDS, minimum=60),
        log_dir=_env_str(env, "MUTTLEY_LOG_DIR", DEFAULT_LOG_DIR),
    )


def prepare_root(settings: Settings) -> str:
    """Create Root if missing and return its canonical path."""
    os.makedirs(settings.root_dir, exist_ok=True)
    return os.path.realpath(settings.root_dir)
