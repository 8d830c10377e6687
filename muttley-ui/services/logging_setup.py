"""Centralized logging setup for the Muttley file manager.

Design goals
- Logging must never be required for functionality.
- Logs are split by purpose (core/access) and rotate by size.
- Levels and toggles are driven by env vars.

Environment variables
- MUTTLEY_LOG_DIR: directory for all logs (default: ./logs)
- MUTTLEY_LOG_CORE_LEVEL: ERROR|WARNING|INFO|DEBUG (default: INFO)
- MUTTLEY_LOG_CONSOLE: 0/1, mirror core log to stderr (default: 1)
- MUTTLEY_LOG_ACCESS_ENABLE: 0/1 (default: 0)
- MUTTLEY_LOG_ROTATE_MAX_MB: max size in MB for each log file (default: 2)
- MUTTLEY_LOG_ROTATE_BACKUPS: number of rotated files to keep (default: 3)

Setup is idempotent so app factories can be called repeatedly (tests).
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional, Tuple

from services.config import DEFAULT_LOG_DIR, env_bool


DEFAULT_CORE_LEVEL = "INFO"
DEFAULT_ROTATE_MAX_MB = 2
DEFAULT_ROTATE_BACKUPS = 3

CORE_LOGGER_NAME = "muttley"
ACCESS_LOGGER_NAME = "muttley.access"

_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

_STATE: Dict[str, object] = {
    "configured": False,
    "log_dir": None,
    "handlers": {},  # type: ignore
}


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def _parse_level(level_name: str) -> int:
    s = (level_name or "").strip().upper()
    if s in ("CRITICAL", "FATAL"):
        return logging.CRITICAL
    if s == "ERROR":
        return logging.ERROR
    if s in ("WARN", "WARNING"):
        return logging.WARNING
    if s == "DEBUG":
        return logging.DEBUG
    return logging.INFO


def get_log_dir(default_dir: Optional[str] = None) -> str:
    p = (os.environ.get("MUTTLEY_LOG_DIR") or "").strip()
    if p:
        return p
    return default_dir or DEFAULT_LOG_DIR


def _mk_rotating_handler(path: str) -> RotatingFileHandler:
    max_mb = max(1, _env_int("MUTTLEY_LOG_ROTATE_MAX_MB", DEFAULT_ROTATE_MAX_MB))
    backups = max(1, _env_int("MUTTLEY_LOG_ROTATE_BACKUPS", DEFAULT_ROTATE_BACKUPS))
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    h = RotatingFileHandler(
        path,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backups,
        encoding="utf-8",
        delay=True,
    )
    h.setFormatter(logging.Formatter(_FORMAT))
    return h


def setup_logging(log_dir: Optional[str] = None) -> None:
    """Configure core/access loggers with rotating file handlers."""
    if _STATE.get("configured"):
        refresh_runtime_from_env()
        return

    log_dir = log_dir or get_log_dir()
    os.makedirs(log_dir, exist_ok=True)

    handlers: Dict[str, logging.Handler] = {
        "core": _mk_rotating_handler(os.path.join(log_dir, "core.log")),
        "access": _mk_rotating_handler(os.path.join(log_dir, "access.log")),
    }
    if env_bool(os.environ, "MUTTLEY_LOG_CONSOLE", default=True):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_FORMAT))
        handlers["console"] = console

    core = logging.getLogger(CORE_LOGGER_NAME)
    core.propagate = False
    core.addHandler(handlers["core"])
    if "console" in handlers:
        core.addHandler(handlers["console"])

    access = logging.getLogger(ACCESS_LOGGER_NAME)
    access.propagate = False
    access.addHandler(handlers["access"])

    # Route Flask's app logger (unhandled exceptions) into core.
    flask_logger = logging.getLogger("flask.app")
    flask_logger.addHandler(handlers["core"])

    _STATE["configured"] = True
    _STATE["log_dir"] = log_dir
    _STATE["handlers"] = handlers

    refresh_runtime_from_env()


def refresh_runtime_from_env() -> None:
    """Apply runtime settings (levels / rotation params) from env."""
    if not _STATE.get("configured"):
        return

    handlers: Dict[str, logging.Handler] = _STATE.get("handlers") or {}  # type: ignore
    max_mb = max(1, _env_int("MUTTLEY_LOG_ROTATE_MAX_MB", DEFAULT_ROTATE_MAX_MB))
    backups = max(1, _env_int("MUTTLEY_LOG_ROTATE_BACKUPS", DEFAULT_ROTATE_BACKUPS))
    for h in handlers.values():
        if isinstance(h, RotatingFileHandler):
            h.maxBytes = max_mb * 1024 * 1024
            h.backupCount = backups

    lvl = _parse_level(os.environ.get("MUTTLEY_LOG_CORE_LEVEL", DEFAULT_CORE_LEVEL))
    logging.getLogger(CORE_LOGGER_NAME).setLevel(lvl)
    # The enable flag decides whether access lines are emitted at all.
    logging.getLogger(ACCESS_LOGGER_NAME).setLevel(logging.INFO)


def access_enabled() -> bool:
    return env_bool(os.environ, "MUTTLEY_LOG_ACCESS_ENABLE", default=False)


def get_paths(log_dir: Optional[str] = None) -> Tuple[str, str]:
    """Return (core_path, access_path)."""
    d = str(log_dir or _STATE.get("log_dir") or get_log_dir())
    return os.path.join(d, "core.log"), os.path.join(d, "access.log")


def core_logger() -> logging.Logger:
    return logging.getLogger(CORE_LOGGER_NAME)


def access_logger() -> logging.Logger:
    return logging.getLogger(ACCESS_LOGGER_NAME)


def core_log(level: str, msg: str, **extra) -> None:
    """Write ``msg | k=v, ...`` into core.log (never raises)."""
    logger = core_logger()
    try:
        if extra:
            tail = ", ".join(f"{k}={v}" for k, v in extra.items())
            full = f"{msg} | {tail}"
        else:
            full = msg
        fn = getattr(logger, str(level or "info").lower(), None)
        if callable(fn):
            fn(full)
        else:
            logger.info(full)
    except Exception:
        pass
