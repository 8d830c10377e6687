"""Path confinement for every filesystem operation.

All client-supplied paths go through this module before anything touches
the filesystem. Policy:

- Relative candidates are joined onto Root; absolute ones are taken as-is.
- Backslashes count as separators (``..\\..\\etc`` is traversal, not a name).
- The joined path is canonicalised with realpath (symlinks resolved) and
  must equal Root or live under ``Root + os.sep``.
- Error messages never echo the rejected absolute path.

``resolve_entry`` is the exception to symlink resolution: it keeps the final
component as-is so that deleting a symlink removes the link itself. Its
parent is still realpath-checked.
"""

from __future__ import annotations

import os
from typing import Optional

from services.errors import InvalidNameError, MissingFieldError, PathEscapeError


GO_BACK = "go_back"
GO_ROOT = "go_root"


def canonical_root(root: str) -> str:
    return os.path.realpath(os.path.abspath(root))


def is_within(root: str, path: str) -> bool:
    """True if ``path`` equals ``root`` or is a descendant of it (both canonical)."""
    if path == root:
        return True
    prefix = root.rstrip(os.sep) + os.sep
    return path.startswith(prefix)


def _clean(candidate: Optional[str]) -> str:
    s = "" if candidate is None else str(candidate)
    if "\x00" in s:
        raise PathEscapeError("Invalid path")
    return s.replace("\\", "/")


def _join(root: str, candidate: str) -> str:
    if not candidate:
        return root
    if os.path.isabs(candidate):
        return os.path.normpath(candidate)
    return os.path.normpath(os.path.join(root, candidate))


def resolve(root: str, candidate: Optional[str]) -> str:
    """Resolve ``candidate`` against ``root`` or raise PathEscapeError."""
    root = canonical_root(root)
    joined = _join(root, _clean(candidate))
    # Lexical check first so an escaping path is never handed to realpath.
    if not is_within(root, joined):
        raise PathEscapeError("Access outside the root directory is forbidden")
    rp = os.path.realpath(joined)
    if not is_within(root, rp):
        raise PathEscapeError("Access outside the root directory is forbidden")
    return rp


def safe_name(name: Optional[str], *, field: str = "name") -> str:
    """Validate a single path component."""
    if name is None:
        raise MissingFieldError(field)
    n = str(name)
    if not n.strip():
        raise MissingFieldError(field)
    if "/" in n or "\\" in n or "\x00" in n or n in (".", ".."):
        raise InvalidNameError(f"Invalid {field}")
    return n


def resolve_entry(root: str, parent_dir: str, name: str) -> str:
    """Resolve ``parent_dir/name`` without following the final component."""
    root = canonical_root(root)
    parent = resolve(root, parent_dir)
    n = safe_name(name)
    ap = os.path.join(parent, n)
    if not is_within(root, ap) or ap == root:
        raise PathEscapeError("Access outside the root directory is forbidden")
    return ap


def navigate(root: str, current: Optional[str], action: Optional[str] = None) -> str:
    """Apply a navigation verb on top of ``resolve``.

    ``go_back`` moves to the parent clamped to Root; ``go_root`` resets to Root.
    """
    root = canonical_root(root)
    act = (action or "").strip().lower()
    if act == GO_ROOT:
        return root
    here = resolve(root, current)
    if act == GO_BACK:
        if here == root:
            return root
        parent = os.path.dirname(here)
        return parent if is_within(root, parent) else root
    return here


def relative(root: str, path: str) -> str:
    """Client-visible, Root-relative form of a validated path ('' for Root)."""
    root = canonical_root(root)
    if path == root:
        return ""
    rel = os.path.relpath(path, root)
    return rel.replace(os.sep, "/")
