"""Directory listing, recursive sizing and search.

Symlinks are never followed while listing, sizing or searching: a link is
reported as a plain entry with its own lstat size. Sizing additionally
remembers visited (st_dev, st_ino) pairs so bind mounts or hard-linked
directories cannot make the walk loop.

Callers pass ``hidden(directory, name)`` to drop artifacts of uploads in
progress from listings, sizes and search results.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from services import pathguard
from services.errors import MissingFieldError, NotDirectoryError, from_os_error


log = logging.getLogger("muttley.catalog")

Hidden = Callable[[str, str], bool]

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def _nothing_hidden(directory: str, name: str) -> bool:
    return False


def format_size(size: int) -> str:
    value = float(size)
    i = 0
    while value >= 1024 and i < len(_SIZE_UNITS) - 1:
        value /= 1024
        i += 1
    return f"{value:.2f} {_SIZE_UNITS[i]}"


@dataclass
class DirectoryEntry:
    name: str
    is_dir: bool
    size: int
    last_modified: float
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "is_dir": self.is_dir,
            "size": self.size,
            "size_human": format_size(self.size),
            "last_modified": int(self.last_modified * 1000),
        }
        if self.path is not None:
            out["path"] = self.path
        return out


def sort_key(entry: DirectoryEntry) -> Tuple[bool, str, str]:
    """Directories first, then case-folded name, raw name as tiebreak."""
    return (not entry.is_dir, entry.name.casefold(), entry.name)


def tree_size(path: str, hidden: Optional[Hidden] = None) -> int:
    """Sum of regular-entry sizes below ``path`` (no symlink following)."""
    hidden = hidden or _nothing_hidden
    total = 0
    seen: Set[Tuple[int, int]] = set()
    stack = [path]
    while stack:
        d = stack.pop()
        try:
            st = os.lstat(d)
        except OSError:
            continue
        key = (st.st_dev, st.st_ino)
        if key in seen:
            continue
        seen.add(key)
        try:
            with os.scandir(d) as it:
                for entry in it:
                    if hidden(d, entry.name):
                        continue
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(entry.path)
                        else:
                            total += int(entry.stat(follow_symlinks=False).st_size)
                    except OSError as e:
                        log.debug("size walk skipped entry: %s (%s)", entry.name, e.strerror)
        except OSError as e:
            log.debug("size walk skipped directory (%s)", e.strerror)
    return total


def _scan(directory: str, hidden: Hidden) -> List[DirectoryEntry]:
    """Immediate children with lstat data; directory sizes are left at 0."""
    items: List[DirectoryEntry] = []
    with os.scandir(directory) as it:
        for entry in it:
            if hidden(directory, entry.name):
                continue
            try:
                st = entry.stat(follow_symlinks=False)
            except FileNotFoundError:
                # removed between readdir and stat
                continue
            is_dir = stat.S_ISDIR(st.st_mode)
            items.append(DirectoryEntry(
                name=entry.name,
                is_dir=is_dir,
                size=0 if is_dir else int(st.st_size),
                last_modified=float(st.st_mtime),
            ))
    items.sort(key=sort_key)
    return items


def list_directory(root: str, safe_dir: str, *, hidden: Optional[Hidden] = None) -> List[DirectoryEntry]:
    """List the immediate children of a PathGuard-validated directory."""
    hidden = hidden or _nothing_hidden
    rel = pathguard.relative(root, safe_dir) or "/"
    if not os.path.isdir(safe_dir):
        if os.path.lexists(safe_dir):
            raise NotDirectoryError(f"{rel} is not a directory")
    try:
        items = _scan(safe_dir, hidden)
    except OSError as e:
        raise from_os_error(e, rel) from e
    for item in items:
        if item.is_dir:
            item.size = tree_size(os.path.join(safe_dir, item.name), hidden)
    return items


def _walk_matches(root: str, directory: str, needle: str, hidden: Hidden) -> Iterator[DirectoryEntry]:
    try:
        children = _scan(directory, hidden)
    except OSError as e:
        log.debug("search skipped %s (%s)", pathguard.relative(root, directory) or "/", e.strerror)
        return
    for child in children:
        full = os.path.join(directory, child.name)
        if needle in child.name.lower():
            child.path = pathguard.relative(root, full)
            if child.is_dir:
                child.size = tree_size(full, hidden)
            yield child
        if child.is_dir:
            yield from _walk_matches(root, full, needle, hidden)


def search(
    root: str,
    term: Optional[str],
    *,
    max_results: int = 1000,
    hidden: Optional[Hidden] = None,
) -> Tuple[List[DirectoryEntry], bool]:
    """Recursive case-insensitive substring search over the whole tree.

    Returns (results, truncated). Matching directories are still descended.
    """
    needle = str(term or "").strip().lower()
    if not needle:
        raise MissingFieldError("query")
    root = pathguard.canonical_root(root)
    results: List[DirectoryEntry] = []
    for match in _walk_matches(root, root, needle, hidden or _nothing_hidden):
        if len(results) >= max_results:
            return results, True
        results.append(match)
    return results, False
