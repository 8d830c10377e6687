"""Error taxonomy for file manager operations.

Every error carries:
  - code: stable machine-readable token (the UI branches on some of them,
    most importantly ``DIRECTORIES_NOT_EMPTY``)
  - status: HTTP status used by the blueprint error handler
  - extra: additional JSON fields merged into the error payload

Messages never contain absolute paths; callers pass Root-relative names.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class FileManagerError(Exception):
    code = "error"
    status = 400

    def __init__(self, message: str = "", *, code: Optional[str] = None, **extra: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.extra: Dict[str, Any] = dict(extra)

    def payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        out.update(self.extra)
        return out


class PathEscapeError(FileManagerError):
    code = "path_not_allowed"
    status = 403


class NotFoundError(FileManagerError):
    code = "not_found"
    status = 404


class NotDirectoryError(FileManagerError):
    code = "not_a_directory"
    status = 400


class NotAFileError(FileManagerError):
    code = "not_a_file"
    status = 400


class DirectoriesNotEmptyError(FileManagerError):
    """Negotiable precondition: retry with force=true to delete recursively."""

    code = "DIRECTORIES_NOT_EMPTY"
    status = 400

    def __init__(self, dirs: List[str]) -> None:
        super().__init__("Some directories are not empty", dirs=list(dirs))
        self.dirs = list(dirs)


class MissingFieldError(FileManagerError):
    code = "missing_field"
    status = 400

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} is missing", field=field)
        self.field = field


class StorageError(FileManagerError):
    code = "io_error"
    status = 500


class AccessError(FileManagerError):
    code = "access_denied"
    status = 403


class InvalidNameError(FileManagerError):
    code = "invalid_name"
    status = 400


class AlreadyExistsError(FileManagerError):
    code = "exists"
    status = 409


class InvalidChunkError(FileManagerError):
    code = "invalid_chunk"
    status = 400


class ChunkOrderError(FileManagerError):
    code = "chunk_out_of_order"
    status = 409

    def __init__(self, message: str, *, expected: int) -> None:
        super().__init__(message, expected_index=int(expected))
        self.expected = int(expected)


class UploadTooLargeError(FileManagerError):
    code = "too_large"
    status = 413


class PartialDeletionError(FileManagerError):
    code = "delete_failed"
    status = 500

    def __init__(self, results: List[Dict[str, Any]]) -> None:
        failed = [r["name"] for r in results if not r.get("ok")]
        super().__init__(f"Failed to delete: {', '.join(failed)}", results=list(results))
        self.results = list(results)


def from_os_error(exc: OSError, what: str) -> FileManagerError:
    """Translate a filesystem fault into the taxonomy.

    ``what`` is a Root-relative description of the target (never absolute).
    """
    reason = exc.strerror or exc.__class__.__name__
    if isinstance(exc, FileNotFoundError):
        return NotFoundError(f"{what} not found")
    if isinstance(exc, PermissionError):
        return AccessError(f"Permission denied: {what}")
    if isinstance(exc, NotADirectoryError):
        return NotDirectoryError(f"{what} is not a directory")
    if isinstance(exc, IsADirectoryError):
        return NotAFileError(f"{what} is a directory")
    return StorageError(f"{what}: {reason}")
