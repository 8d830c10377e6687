"""Chunked upload reassembly and whole-file writes.

An upload session is keyed by (target_dir, filename) and lives in an
in-process registry. Each key has its own lock, so two requests for the same
target are serialized while different targets never contend. Bytes
accumulate in a hidden partial artifact next to the final file:

    <target_dir>/.<filename>.part

Chunk protocol:
  - index 0 starts (or restarts) the session and truncates the partial
  - index == next expected is appended
  - index <  next expected is a retry and is acknowledged without appending
  - anything else is rejected with ChunkOrderError(expected=...)
  - the chunk with index total_chunks - 1 renames the partial over the final
    name (os.replace, overwriting an existing file)

Sessions idle for longer than ``ttl_seconds`` are dropped and their partial
removed; the purge runs opportunistically on every call.

Listings consult ``is_partial`` to hide artifacts of uploads in progress. A
partial left behind by a crashed process is an ordinary dotfile afterwards.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO, Any, Dict, Iterator, Optional, Set, Tuple

from services import pathguard
from services.errors import (
    ChunkOrderError,
    InvalidChunkError,
    NotAFileError,
    StorageError,
    UploadTooLargeError,
    from_os_error,
)


log = logging.getLogger("muttley.uploads")

COPY_BUFSIZE = 64 * 1024


def partial_name(filename: str) -> str:
    return f".{filename}.part"


@dataclass
class UploadSession:
    target_dir: str
    filename: str
    total_chunks: int
    partial_path: str
    next_index: int = 0
    bytes_received: int = 0
    updated_at: float = field(default_factory=time.time)


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


@dataclass
class UploadResult:
    completed: bool
    chunk_index: int
    path: Optional[str] = None
    bytes: int = 0
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ok": True,
            "completed": self.completed,
            "chunk_index": self.chunk_index,
            "bytes": self.bytes,
        }
        if self.path is not None:
            out["path"] = self.path
        if self.duplicate:
            out["duplicate"] = True
        return out


def _copy_limited(src: IO[bytes], dst: IO[bytes], max_bytes: int) -> int:
    total = 0
    while True:
        buf = src.read(COPY_BUFSIZE)
        if not buf:
            break
        total += len(buf)
        if total > max_bytes:
            raise UploadTooLargeError("Upload chunk is too large", max_bytes=max_bytes)
        dst.write(buf)
    return total


def _unlink_quiet(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("could not remove partial artifact (%s)", e.strerror)


class ChunkUploadAssembler:
    """Registry of in-progress uploads with per-key locking."""

    def __init__(self, root: str, *, max_chunk_bytes: int, max_write_bytes: int, ttl_seconds: int) -> None:
        self.root = pathguard.canonical_root(root)
        self.max_chunk_bytes = int(max_chunk_bytes)
        self.max_write_bytes = int(max_write_bytes)
        self.ttl_seconds = int(ttl_seconds)
        self._registry_lock = threading.Lock()
        self._locks: Dict[Tuple[str, str], _KeyLock] = {}
        self._sessions: Dict[Tuple[str, str], UploadSession] = {}
        # Absolute paths of partial and temp files owned by in-flight uploads.
        self._artifacts: Set[str] = set()

    # ---------- registry ----------

    @contextmanager
    def _locked(self, key: Tuple[str, str], *, blocking: bool = True) -> Iterator[bool]:
        """Hold the lock for ``key``; yields False if non-blocking and busy.

        Key locks are reference counted and forgotten once nobody holds or
        waits for them.
        """
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.users += 1
        acquired = entry.lock.acquire(blocking)
        try:
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    self._locks.pop(key, None)

    def _track(self, path: str) -> None:
        with self._registry_lock:
            self._artifacts.add(path)

    def _untrack(self, path: str) -> None:
        with self._registry_lock:
            self._artifacts.discard(path)

    def is_partial(self, directory: str, name: str) -> bool:
        """True if ``directory/name`` belongs to an upload or save in progress."""
        with self._registry_lock:
            return os.path.join(directory, name) in self._artifacts

    def session(self, target_dir: str, filename: str) -> Optional[UploadSession]:
        with self._registry_lock:
            return self._sessions.get((target_dir, filename))

    def active_sessions(self) -> int:
        with self._registry_lock:
            return len(self._sessions)

    def purge_stale(self, now: Optional[float] = None) -> int:
        """Drop sessions idle longer than ttl_seconds; returns how many."""
        now = time.time() if now is None else float(now)
        with self._registry_lock:
            stale = [k for k, s in self._sessions.items() if now - s.updated_at > self.ttl_seconds]
        purged = 0
        for key in stale:
            # Busy keys are not idle; leave them alone.
            with self._locked(key, blocking=False) as acquired:
                if not acquired:
                    continue
                with self._registry_lock:
                    s = self._sessions.get(key)
                    if s is None or now - s.updated_at <= self.ttl_seconds:
                        continue
                    del self._sessions[key]
                _unlink_quiet(s.partial_path)
                self._untrack(s.partial_path)
                purged += 1
                log.info("discarded stale upload %s", pathguard.relative(self.root, os.path.join(s.target_dir, s.filename)))
        return purged

    # ---------- chunked upload ----------

    def receive(
        self,
        target_dir: str,
        filename: str,
        chunk_index: int,
        total_chunks: int,
        stream: IO[bytes],
    ) -> UploadResult:
        """Accept one chunk for ``target_dir/filename``.

        ``target_dir`` must already be PathGuard-validated.
        """
        name = pathguard.safe_name(filename, field="original_filename")
        idx = int(chunk_index)
        total = int(total_chunks)
        if total < 1:
            raise InvalidChunkError("total_chunks must be at least 1")
        if idx < 0 or idx >= total:
            raise InvalidChunkError("chunk_index out of range", chunk_index=idx, total_chunks=total)

        self.purge_stale()

        final_path = pathguard.resolve_entry(self.root, target_dir, name)
        rel = pathguard.relative(self.root, final_path)
        key = (target_dir, name)
        with self._locked(key):
            return self._receive_locked(key, final_path, rel, idx, total, stream)

    def _receive_locked(
        self,
        key: Tuple[str, str],
        final_path: str,
        rel: str,
        idx: int,
        total: int,
        stream: IO[bytes],
    ) -> UploadResult:
        target_dir, name = key
        with self._registry_lock:
            sess = self._sessions.get(key)

        if idx == 0:
            if os.path.isdir(final_path):
                raise StorageError(f"{rel} is a directory", code="target_is_directory")
            sess = UploadSession(
                target_dir=target_dir,
                filename=name,
                total_chunks=total,
                partial_path=os.path.join(target_dir, partial_name(name)),
            )
            self._track(sess.partial_path)
            mode = "wb"
        else:
            if sess is None:
                raise ChunkOrderError("No upload in progress for this file", expected=0)
            if sess.total_chunks != total:
                raise ChunkOrderError("total_chunks changed during upload", expected=sess.next_index)
            if idx < sess.next_index:
                sess.updated_at = time.time()
                return UploadResult(completed=False, chunk_index=idx, bytes=sess.bytes_received, duplicate=True)
            if idx > sess.next_index:
                raise ChunkOrderError(f"Expected chunk {sess.next_index}", expected=sess.next_index)
            mode = "ab"

        try:
            with open(sess.partial_path, mode) as fp:
                written = _copy_limited(stream, fp, self.max_chunk_bytes)
        except UploadTooLargeError:
            self._abort(key, sess)
            raise
        except OSError as e:
            self._abort(key, sess)
            raise from_os_error(e, rel) from e

        sess.bytes_received += written
        sess.next_index = idx + 1
        sess.updated_at = time.time()

        if idx < total - 1:
            with self._registry_lock:
                self._sessions[key] = sess
            return UploadResult(completed=False, chunk_index=idx, bytes=sess.bytes_received)

        with self._registry_lock:
            self._sessions.pop(key, None)
        try:
            os.replace(sess.partial_path, final_path)
        except IsADirectoryError as e:
            _unlink_quiet(sess.partial_path)
            raise StorageError(f"{rel} is a directory", code="target_is_directory") from e
        except OSError as e:
            _unlink_quiet(sess.partial_path)
            raise from_os_error(e, rel) from e
        finally:
            self._untrack(sess.partial_path)
        log.info("upload complete: %s (%d bytes, %d chunks)", rel, sess.bytes_received, total)
        return UploadResult(completed=True, chunk_index=idx, path=rel, bytes=sess.bytes_received)

    def _abort(self, key: Tuple[str, str], sess: UploadSession) -> None:
        with self._registry_lock:
            self._sessions.pop(key, None)
        _unlink_quiet(sess.partial_path)
        self._untrack(sess.partial_path)

    # ---------- whole-file write ----------

    def write_whole(self, target_dir: str, filename: str, content: str) -> UploadResult:
        """Overwrite ``target_dir/filename`` with UTF-8 ``content`` atomically."""
        name = pathguard.safe_name(filename, field="file_name")
        raw = (content or "").encode("utf-8")
        if len(raw) > self.max_write_bytes:
            raise UploadTooLargeError("Content is too large", max_bytes=self.max_write_bytes)

        final_path = pathguard.resolve_entry(self.root, target_dir, name)
        rel = pathguard.relative(self.root, final_path)
        if os.path.isdir(final_path):
            raise NotAFileError(f"{rel} is a directory")

        tmp_path = os.path.join(target_dir, f".{name}.{uuid.uuid4().hex[:8]}.part")
        with self._locked((target_dir, name)):
            self._track(tmp_path)
            try:
                with open(tmp_path, "wb") as fp:
                    fp.write(raw)
                os.replace(tmp_path, final_path)
            except OSError as e:
                _unlink_quiet(tmp_path)
                raise from_os_error(e, rel) from e
            finally:
                self._untrack(tmp_path)
        log.info("file saved: %s (%d bytes)", rel, len(raw))
        return UploadResult(completed=True, chunk_index=0, path=rel, bytes=len(raw))
