"""Streaming ZIP export of a directory subtree.

The archive is produced lazily by ``zipstream``: files are opened and
compressed while the response is being iterated, so neither memory nor /tmp
ever holds the whole archive.

- archive root = contents of the directory (no top-level folder)
- empty directories are kept as directory entries
- symlinks and artifacts of uploads in progress are skipped
- entries are added in sorted order so the stream is deterministic
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import zipstream

from services import pathguard
from services.catalog import Hidden
from services.errors import NotDirectoryError, NotFoundError


log = logging.getLogger("muttley.archive")


@dataclass
class ZipExport:
    filename: str
    source: str
    stream: Iterator[bytes]


def _collect(src_dir: str, hidden: Optional[Hidden] = None) -> List[Tuple[str, str]]:
    """Return (absolute path, archive name) pairs below ``src_dir``."""
    out: List[Tuple[str, str]] = []
    for dirpath, dirnames, filenames in os.walk(src_dir, topdown=True, followlinks=False):
        dirnames[:] = sorted(
            d for d in dirnames
            if not os.path.islink(os.path.join(dirpath, d)) and not (hidden and hidden(dirpath, d))
        )
        rel_dir = os.path.relpath(dirpath, src_dir)
        rel_dir = "" if rel_dir == "." else rel_dir

        files = sorted(
            f for f in filenames
            if not os.path.islink(os.path.join(dirpath, f)) and not (hidden and hidden(dirpath, f))
        )
        # Preserve empty directories (zipstream appends the trailing slash).
        if rel_dir and not files and not dirnames:
            out.append((dirpath, rel_dir.replace(os.sep, "/")))
        for fn in files:
            arc = os.path.join(rel_dir, fn).replace(os.sep, "/")
            out.append((os.path.join(dirpath, fn), arc))
    return out


def export_zip(root: str, safe_dir: str, *, hidden: Optional[Hidden] = None) -> ZipExport:
    """Prepare a streamed zip of a PathGuard-validated directory.

    Raises before any byte is produced if ``safe_dir`` is missing or not a
    directory. Errors while streaming propagate out of the iterator and
    abort the response.
    """
    rel = pathguard.relative(root, safe_dir) or "/"
    if not os.path.lexists(safe_dir):
        raise NotFoundError(f"{rel} not found")
    if not os.path.isdir(safe_dir):
        raise NotDirectoryError("Specified target is not a directory")

    zf = zipstream.ZipFile(mode="w", compression=zipstream.ZIP_DEFLATED, allowZip64=True)
    entries = _collect(safe_dir, hidden)
    for path, arcname in entries:
        zf.write(path, arcname=arcname)

    base = os.path.basename(safe_dir.rstrip(os.sep)) or "download"

    def _generate() -> Iterator[bytes]:
        sent = 0
        try:
            for chunk in zf:
                sent += len(chunk)
                yield chunk
        except OSError as e:
            log.error("zip stream aborted for %s after %d bytes (%s)", rel, sent, e.strerror or e)
            raise
        log.info("zip stream finished for %s (%d entries, %d bytes)", rel, len(entries), sent)

    return ZipExport(filename=f"{base}.zip", source=rel, stream=_generate())
