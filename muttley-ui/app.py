"""Muttley file manager: Flask application factory.

Wires settings, logging, the upload registry and the /api/fs blueprint into
one app. Access control is HTTP Basic auth, enabled only when both
AUTH_USERNAME and AUTH_PASSWORD are configured.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, render_template, request
from werkzeug.exceptions import HTTPException

from routes_fs import create_fs_blueprint
from services import catalog
from services.config import Settings, load_settings, prepare_root
from services.errors import FileManagerError
from services.logging_setup import (
    access_enabled as _access_enabled,
    access_logger as _get_access_logger,
    core_log,
    core_logger,
    setup_logging,
)
from services.uploads import ChunkUploadAssembler


AUTH_REALM = "Muttley"

# Multipart framing on top of a maximal chunk.
_FORM_OVERHEAD_BYTES = 1024 * 1024


def api_error(error: str, status: int = 400, *, ok: bool | None = None, **extra: Any):
    """Return a JSON error response in a consistent format.

    If ``ok`` is not None, include it in the payload (typically ``False``).
    """
    payload: Dict[str, Any] = {"error": error}
    if ok is not None:
        payload["ok"] = ok
    payload.update(extra)
    return jsonify(payload), status


def _credentials_match(settings: Settings, username: str, password: str) -> bool:
    user_ok = secrets.compare_digest(
        (username or "").encode("utf-8"), (settings.auth_username or "").encode("utf-8")
    )
    pass_ok = secrets.compare_digest(
        (password or "").encode("utf-8"), (settings.auth_password or "").encode("utf-8")
    )
    return user_ok and pass_ok


def create_app(settings: Optional[Settings] = None) -> Flask:
    settings = settings or load_settings()
    setup_logging(settings.log_dir)
    root = prepare_root(settings)

    app = Flask(__name__, template_folder="templates")
    app.config["MUTTLEY_SETTINGS"] = settings
    app.config["MUTTLEY_ROOT"] = root
    app.config["MAX_CONTENT_LENGTH"] = max(settings.max_upload_bytes, settings.max_write_bytes) + _FORM_OVERHEAD_BYTES

    assembler = ChunkUploadAssembler(
        root,
        max_chunk_bytes=settings.max_upload_bytes,
        max_write_bytes=settings.max_write_bytes,
        ttl_seconds=settings.partial_ttl_seconds,
    )
    app.extensions["muttley.uploads"] = assembler
    app.register_blueprint(create_fs_blueprint(root=root, settings=settings, assembler=assembler))

    # ---------- access control ----------

    @app.before_request
    def _auth_guard():
        if not settings.auth_enabled:
            return None
        auth = request.authorization
        if auth is not None and (auth.type or "").lower() == "basic":
            if _credentials_match(settings, auth.username or "", auth.password or ""):
                return None
        core_log(
            "warning", "auth.rejected",
            client=request.headers.get("X-Forwarded-For") or request.remote_addr or "",
            path=request.path,
        )
        resp, status = api_error("unauthorized", 401, ok=False, message="Authentication required")
        resp.headers["WWW-Authenticate"] = f'Basic realm="{AUTH_REALM}", charset="UTF-8"'
        return resp, status

    # ---------- access log ----------

    @app.before_request
    def _access_log_before_request():
        g._muttley_t0 = time.time()
        return None

    @app.after_request
    def _access_log_after_request(response):
        try:
            if not _access_enabled():
                return response
            method = request.method or ""
            status = getattr(response, "status_code", 0) or 0
            client = request.headers.get("X-Forwarded-For") or request.remote_addr or ""
            t0 = getattr(g, "_muttley_t0", None)
            if t0:
                dt_ms = int((time.time() - float(t0)) * 1000.0)
                line = f"{client} {method} {request.path} -> {status} ({dt_ms}ms)"
            else:
                line = f"{client} {method} {request.path} -> {status}"
            _get_access_logger().info(line)
        except Exception:
            # Logging must never affect response
            pass
        return response

    # ---------- pages / config ----------

    @app.get("/")
    def index():
        items = catalog.list_directory(root, root, hidden=assembler.is_partial)
        return render_template("index.html", items=items, root_path=root)

    @app.get("/api/config")
    def api_config():
        return jsonify({"ok": True, "root_path": root})

    # ---------- errors ----------

    @app.errorhandler(FileManagerError)
    def _on_fs_error(e: FileManagerError):
        return jsonify(e.payload()), e.status

    @app.errorhandler(Exception)
    def _on_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            if not request.path.startswith("/api/"):
                return e
            code = "too_large" if e.code == 413 else (e.name or "error").lower().replace(" ", "_")
            return api_error(code, e.code or 500, ok=False, message=e.description or "")
        core_logger().exception("unhandled error on %s %s", request.method, request.path)
        return api_error("internal_error", 500, ok=False)

    core_log(
        "info", "app.created",
        root=root,
        auth="on" if settings.auth_enabled else "off",
        max_upload_mb=settings.max_upload_bytes // (1024 * 1024),
    )
    return app
