"""Filesystem API for the browser file manager.

This blueprint exposes the UI endpoints under /api/fs/*. Handlers stay thin:
they read the request, let PathGuard resolve every client path, call into
``services`` and shape the JSON. Service errors (FileManagerError) are
rendered by the blueprint error handler as::

    {"ok": false, "error": <code>, "message": <text>, ...extra}

Bodies may be JSON or form-encoded; download endpoints also accept query
parameters so plain links and form posts both work.
"""

from __future__ import annotations

import os
from typing import Any, Mapping
from urllib.parse import quote as _url_quote

from flask import Blueprint, Response, jsonify, request, send_file

from services import archive, catalog, deletion, pathguard
from services.config import Settings
from services.errors import (
    AlreadyExistsError,
    FileManagerError,
    InvalidChunkError,
    MissingFieldError,
    NotAFileError,
    NotFoundError,
    from_os_error,
)
from services.logging_setup import core_log
from services.uploads import ChunkUploadAssembler


# --------------------------- Helpers ---------------------------

def _sanitize_download_filename(name: str, *, default: str = "download") -> str:
    """Sanitize filename for Content-Disposition header (prevent header injection)."""
    s = os.path.basename((name or "").strip())
    s = s.replace("\r", "").replace("\n", "").replace('"', "")
    if not s:
        s = default
    if len(s) > 180:
        s = s[:180]
    return s


def _content_disposition_attachment(filename: str) -> str:
    """Build a safe Content-Disposition attachment header value."""
    fn = _sanitize_download_filename(filename)
    # RFC 5987 filename* improves UTF-8 handling in modern browsers.
    fn_star = _url_quote(fn, safe="")
    return f'attachment; filename="{fn}"; filename*=UTF-8\'\'{fn_star}'


def _payload() -> Mapping[str, Any]:
    """Request fields from JSON body, form body or query string (in that order)."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    if request.form:
        return request.form
    return request.args


def _flag(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "yes", "on")


def _required(data: Mapping[str, Any], name: str) -> Any:
    v = data.get(name)
    if v is None or (isinstance(v, str) and not v.strip()):
        raise MissingFieldError(name)
    return v


def _present(data: Mapping[str, Any], name: str) -> str:
    """Field must be sent, but may be empty ('' means Root for directories)."""
    v = data.get(name)
    if v is None:
        raise MissingFieldError(name)
    return str(v)


def _as_int(data: Mapping[str, Any], name: str) -> int:
    v = _required(data, name)
    try:
        return int(str(v).strip())
    except ValueError:
        raise InvalidChunkError(f"{name} must be an integer", field=name)


def create_fs_blueprint(*, root: str, settings: Settings, assembler: ChunkUploadAssembler) -> Blueprint:
    """Create /api/fs/* blueprint.

    Args:
        root: canonical Root directory.
        settings: runtime settings (limits).
        assembler: shared chunk upload registry.
    """

    bp = Blueprint("fs", __name__)
    ROOT = pathguard.canonical_root(root)

    def _file_in(target_dir: Any, file_name: Any) -> str:
        """Resolve ``file_name`` inside ``target_dir`` and require a regular file."""
        safe_dir = pathguard.resolve(ROOT, target_dir)
        rp = pathguard.resolve(ROOT, os.path.join(safe_dir, str(file_name).replace("\\", "/")))
        rel = pathguard.relative(ROOT, rp)
        if not os.path.exists(rp):
            raise NotFoundError("File not found")
        if not os.path.isfile(rp):
            raise NotAFileError(f"{rel} is not a file")
        return rp

    @bp.errorhandler(FileManagerError)
    def _on_fs_error(e: FileManagerError) -> Any:
        level = "error" if e.status >= 500 else "info"
        core_log(level, "fs.error", path=request.path, code=e.code, message=e.message)
        return jsonify(e.payload()), e.status

    @bp.errorhandler(OSError)
    def _on_os_error(e: OSError) -> Any:
        err = from_os_error(e, "request target")
        core_log("error", "fs.os_error", path=request.path, code=err.code, errno=e.errno)
        return jsonify(err.payload()), err.status

    # ---------- listing / search ----------

    @bp.post("/api/fs/list")
    def api_fs_list() -> Any:
        data = _payload()
        rp = pathguard.navigate(ROOT, data.get("current_dir"), data.get("action"))
        items = catalog.list_directory(ROOT, rp, hidden=assembler.is_partial)
        return jsonify({
            "ok": True,
            "current_dir": pathguard.relative(ROOT, rp),
            "items": [i.to_dict() for i in items],
        })

    @bp.post("/api/fs/search")
    def api_fs_search() -> Any:
        data = _payload()
        query = str(_required(data, "query"))
        results, truncated = catalog.search(
            ROOT, query, max_results=settings.search_max_results, hidden=assembler.is_partial
        )
        return jsonify({
            "ok": True,
            "query": query,
            "results": [r.to_dict() for r in results],
            "truncated": truncated,
        })

    # ---------- upload ----------

    @bp.post("/api/fs/upload")
    def api_fs_upload() -> Any:
        """Chunked multipart upload, or a whole-file JSON save from the editor.

        multipart: file, chunk_index, total_chunks, original_filename, target_dir
        JSON:      {"file_name": "...", "content": "...", "target_dir": "..."}
        """
        if request.is_json:
            data = request.get_json(silent=True) or {}
            file_name = _required(data, "file_name")
            content = data.get("content")
            if not isinstance(content, str):
                raise MissingFieldError("content")
            safe_dir = pathguard.resolve(ROOT, data.get("target_dir") or "")
            res = assembler.write_whole(safe_dir, str(file_name), content)
            core_log("info", "fs.write", path=res.path, bytes=res.bytes)
            return jsonify(res.to_dict())

        form = request.form
        target_dir = _present(form, "target_dir")
        chunk_index = _as_int(form, "chunk_index")
        total_chunks = _as_int(form, "total_chunks")
        f = request.files.get("file")
        if f is None:
            raise MissingFieldError("file")
        original_filename = form.get("original_filename") or f.filename
        if not original_filename:
            raise MissingFieldError("original_filename")

        safe_dir = pathguard.resolve(ROOT, target_dir)
        if not os.path.isdir(safe_dir):
            raise NotFoundError("Target directory not found")
        res = assembler.receive(safe_dir, str(original_filename), chunk_index, total_chunks, f.stream)
        if res.completed:
            core_log("info", "fs.upload", path=res.path, bytes=res.bytes, chunks=total_chunks)
        return jsonify(res.to_dict())

    # ---------- download ----------

    @bp.route("/api/fs/download", methods=["GET", "POST"])
    def api_fs_download() -> Any:
        data = _payload()
        target_dir = _present(data, "target_dir")
        file_name = _required(data, "file_name")
        rp = _file_in(target_dir, file_name)
        resp = send_file(
            rp,
            as_attachment=True,
            download_name=_sanitize_download_filename(os.path.basename(rp)),
            mimetype="application/octet-stream",
            conditional=True,
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    @bp.route("/api/fs/download_zip", methods=["GET", "POST"])
    def api_fs_download_zip() -> Any:
        data = _payload()
        target_dir = _present(data, "target_dir")
        rp = pathguard.resolve(ROOT, target_dir)
        export = archive.export_zip(ROOT, rp, hidden=assembler.is_partial)
        core_log("info", "fs.zip", path=export.source)
        headers = {
            "Content-Disposition": _content_disposition_attachment(export.filename),
            "Cache-Control": "no-store",
            "X-Accel-Buffering": "no",
        }
        return Response(export.stream, mimetype="application/zip", headers=headers)

    @bp.get("/api/fs/serve_pdf")
    def api_fs_serve_pdf() -> Any:
        target_dir = _present(request.args, "target_dir")
        file_name = _required(request.args, "file_name")
        rp = _file_in(target_dir, file_name)
        return send_file(
            rp,
            mimetype="application/pdf",
            as_attachment=False,
            download_name=_sanitize_download_filename(os.path.basename(rp)),
            conditional=True,
        )

    # ---------- mutations ----------

    @bp.post("/api/fs/delete")
    def api_fs_delete() -> Any:
        data = _payload()
        target_dir = _present(data, "target_dir")
        items = data.getlist("items") if hasattr(data, "getlist") else data.get("items")
        if isinstance(items, str):
            items = [items]
        if not isinstance(items, (list, tuple)) or not all(isinstance(i, str) for i in items):
            raise MissingFieldError("items")
        force = _flag(data.get("force"))
        safe_dir = pathguard.resolve(ROOT, target_dir)
        results = deletion.delete_items(ROOT, safe_dir, items, force=force)
        core_log(
            "info", "fs.delete",
            dir=pathguard.relative(ROOT, safe_dir) or "/",
            items=",".join(r["name"] for r in results),
            force=force,
        )
        return jsonify({"ok": True, "deleted": results})

    @bp.post("/api/fs/create_dir")
    def api_fs_create_dir() -> Any:
        data = _payload()
        dirname = pathguard.safe_name(data.get("dirname"), field="dirname")
        safe_dir = pathguard.resolve(ROOT, data.get("target_dir") or "")
        ap = pathguard.resolve_entry(ROOT, safe_dir, dirname)
        rel = pathguard.relative(ROOT, ap)
        if os.path.lexists(ap):
            raise AlreadyExistsError("Directory already exists")
        try:
            os.mkdir(ap)
        except FileExistsError:
            raise AlreadyExistsError("Directory already exists")
        except OSError as e:
            raise from_os_error(e, rel) from e
        core_log("info", "fs.mkdir", path=rel)
        return jsonify({"ok": True, "path": rel})

    return bp
