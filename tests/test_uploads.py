"""Chunk reassembly and whole-file write tests for services.uploads."""

from __future__ import annotations

import io
import os
import threading

import pytest

from services.errors import (
    ChunkOrderError,
    FileManagerError,
    InvalidChunkError,
    InvalidNameError,
    NotAFileError,
    StorageError,
    UploadTooLargeError,
)
from services.uploads import ChunkUploadAssembler, partial_name


def _chunks(data: bytes, size: int):
    parts = [data[i:i + size] for i in range(0, len(data), size)]
    return parts or [b""]


def _read(path: str) -> bytes:
    with open(path, "rb") as fp:
        return fp.read()


def _send_all(assembler, root, name, data, size):
    parts = _chunks(data, size)
    res = None
    for i, part in enumerate(parts):
        res = assembler.receive(root, name, i, len(parts), io.BytesIO(part))
    return res


def test_partial_naming():
    assert partial_name("a.iso") == ".a.iso.part"


def test_only_live_artifacts_are_partial(assembler, root, make_file):
    make_file(".config.part", b"user data")
    assert not assembler.is_partial(root, ".config.part")

    assembler.receive(root, "a.iso", 0, 2, io.BytesIO(b"x"))
    assert assembler.is_partial(root, ".a.iso.part")
    assembler.receive(root, "a.iso", 1, 2, io.BytesIO(b"y"))
    assert not assembler.is_partial(root, ".a.iso.part")


# -----------------------------------------------------------------------------
# Reassembly
# -----------------------------------------------------------------------------
@pytest.mark.parametrize(
    "size, chunk",
    [(0, 1), (1, 1), (10, 3), (10, 10), (10, 64), (1000, 7), (4096, 1024)],
)
def test_in_order_chunks_reconstruct_file(assembler, root, size, chunk):
    data = bytes((i * 31) % 251 for i in range(size))
    res = _send_all(assembler, root, "blob.bin", data, chunk)
    assert res.completed
    assert res.path == "blob.bin"
    assert res.bytes == size
    assert _read(os.path.join(root, "blob.bin")) == data
    assert not os.path.exists(os.path.join(root, partial_name("blob.bin")))
    assert assembler.active_sessions() == 0


def test_intermediate_chunks_are_not_visible(assembler, root):
    res = assembler.receive(root, "f.bin", 0, 2, io.BytesIO(b"abc"))
    assert not res.completed
    assert not os.path.exists(os.path.join(root, "f.bin"))
    assert _read(os.path.join(root, ".f.bin.part")) == b"abc"
    sess = assembler.session(root, "f.bin")
    assert sess is not None and sess.next_index == 1


def test_final_chunk_overwrites_existing_file(assembler, root, make_file):
    make_file("f.txt", b"old content")
    _send_all(assembler, root, "f.txt", b"new", 2)
    assert _read(os.path.join(root, "f.txt")) == b"new"


def test_duplicate_chunk_is_not_appended_twice(assembler, root):
    assembler.receive(root, "f.bin", 0, 3, io.BytesIO(b"aa"))
    assembler.receive(root, "f.bin", 1, 3, io.BytesIO(b"bb"))
    dup = assembler.receive(root, "f.bin", 1, 3, io.BytesIO(b"bb"))
    assert dup.duplicate
    res = assembler.receive(root, "f.bin", 2, 3, io.BytesIO(b"cc"))
    assert res.completed
    assert _read(os.path.join(root, "f.bin")) == b"aabbcc"


def test_chunk_zero_restarts_upload(assembler, root):
    assembler.receive(root, "f.bin", 0, 2, io.BytesIO(b"first"))
    assembler.receive(root, "f.bin", 0, 2, io.BytesIO(b"AB"))
    assembler.receive(root, "f.bin", 1, 2, io.BytesIO(b"CD"))
    assert _read(os.path.join(root, "f.bin")) == b"ABCD"


def test_out_of_order_chunk_is_rejected_with_expected_index(assembler, root):
    assembler.receive(root, "f.bin", 0, 4, io.BytesIO(b"a"))
    with pytest.raises(ChunkOrderError) as exc:
        assembler.receive(root, "f.bin", 2, 4, io.BytesIO(b"c"))
    assert exc.value.expected == 1
    assert exc.value.payload()["expected_index"] == 1


def test_chunk_without_session_is_rejected(assembler, root):
    with pytest.raises(ChunkOrderError) as exc:
        assembler.receive(root, "f.bin", 1, 2, io.BytesIO(b"x"))
    assert exc.value.expected == 0


def test_changed_total_is_rejected(assembler, root):
    assembler.receive(root, "f.bin", 0, 3, io.BytesIO(b"a"))
    with pytest.raises(ChunkOrderError):
        assembler.receive(root, "f.bin", 1, 4, io.BytesIO(b"b"))


@pytest.mark.parametrize("idx, total", [(-1, 2), (2, 2), (0, 0)])
def test_invalid_chunk_parameters(assembler, root, idx, total):
    with pytest.raises(InvalidChunkError):
        assembler.receive(root, "f.bin", idx, total, io.BytesIO(b""))


def test_filename_with_separator_is_rejected(assembler, root):
    with pytest.raises(InvalidNameError):
        assembler.receive(root, "../evil.sh", 0, 1, io.BytesIO(b"x"))


def test_upload_onto_directory_is_rejected(assembler, root):
    os.mkdir(os.path.join(root, "d"))
    with pytest.raises(StorageError) as exc:
        assembler.receive(root, "d", 0, 1, io.BytesIO(b"x"))
    assert exc.value.code == "target_is_directory"


def test_oversized_chunk_aborts_session(root):
    small = ChunkUploadAssembler(root, max_chunk_bytes=4, max_write_bytes=4, ttl_seconds=60)
    with pytest.raises(UploadTooLargeError):
        small.receive(root, "f.bin", 0, 2, io.BytesIO(b"123456"))
    assert small.active_sessions() == 0
    assert not os.path.exists(os.path.join(root, ".f.bin.part"))


def test_sessions_are_independent_per_file(assembler, root):
    assembler.receive(root, "a.bin", 0, 2, io.BytesIO(b"A1"))
    assembler.receive(root, "b.bin", 0, 2, io.BytesIO(b"B1"))
    assembler.receive(root, "b.bin", 1, 2, io.BytesIO(b"B2"))
    assembler.receive(root, "a.bin", 1, 2, io.BytesIO(b"A2"))
    assert _read(os.path.join(root, "a.bin")) == b"A1A2"
    assert _read(os.path.join(root, "b.bin")) == b"B1B2"


# -----------------------------------------------------------------------------
# Stale sessions
# -----------------------------------------------------------------------------
def test_stale_session_is_purged(root):
    asm = ChunkUploadAssembler(root, max_chunk_bytes=1024, max_write_bytes=1024, ttl_seconds=60)
    asm.receive(root, "f.bin", 0, 2, io.BytesIO(b"abc"))
    sess = asm.session(root, "f.bin")
    assert asm.purge_stale(now=sess.updated_at + 30) == 0
    assert asm.purge_stale(now=sess.updated_at + 61) == 1
    assert asm.session(root, "f.bin") is None
    assert not os.path.exists(sess.partial_path)
    with pytest.raises(ChunkOrderError):
        asm.receive(root, "f.bin", 1, 2, io.BytesIO(b"def"))


# -----------------------------------------------------------------------------
# write_whole
# -----------------------------------------------------------------------------
def test_write_whole_creates_and_overwrites(assembler, root):
    res = assembler.write_whole(root, "notes.txt", "first")
    assert res.completed and res.path == "notes.txt"
    assembler.write_whole(root, "notes.txt", "привет")
    assert _read(os.path.join(root, "notes.txt")) == "привет".encode("utf-8")
    assert [n for n in os.listdir(root) if n.endswith(".part")] == []


def test_write_whole_onto_directory_is_rejected(assembler, root):
    os.mkdir(os.path.join(root, "d"))
    with pytest.raises(NotAFileError):
        assembler.write_whole(root, "d", "x")


def test_write_whole_size_limit(root):
    asm = ChunkUploadAssembler(root, max_chunk_bytes=10, max_write_bytes=3, ttl_seconds=60)
    with pytest.raises(UploadTooLargeError):
        asm.write_whole(root, "f.txt", "abcd")
    assert not os.path.exists(os.path.join(root, "f.txt"))


def test_filename_whitespace_is_kept(assembler, root):
    res = assembler.write_whole(root, " notes.txt ", "x")
    assert res.path == " notes.txt "
    assert os.listdir(root) == [" notes.txt "]


# -----------------------------------------------------------------------------
# Concurrency
# -----------------------------------------------------------------------------
def test_concurrent_chunks_for_same_file_stay_ordered(assembler, root):
    parts = [bytes([i]) * 4096 for i in range(40)]
    errors = []
    start = threading.Barrier(2)

    def _worker():
        start.wait()
        # Both workers send the same middle chunks; acked retries are no-ops.
        for i in range(1, len(parts) - 1):
            try:
                assembler.receive(root, "race.bin", i, len(parts), io.BytesIO(parts[i]))
            except FileManagerError as e:
                errors.append(e)

    assembler.receive(root, "race.bin", 0, len(parts), io.BytesIO(parts[0]))
    workers = [threading.Thread(target=_worker) for _ in range(2)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()

    assert errors == []
    last = len(parts) - 1
    res = assembler.receive(root, "race.bin", last, len(parts), io.BytesIO(parts[last]))
    assert res.completed
    assert _read(os.path.join(root, "race.bin")) == b"".join(parts)
