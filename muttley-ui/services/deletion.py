"""Two-phase batch deletion.

    Validate --(non-empty dirs and not force)--> Rejected
        |
        +--> Execute --> Done (per-item results)

Item names are reduced to their basename, so a batch can only touch direct
children of the (PathGuard-validated) target directory. Symlinks are removed
as links and never followed.

There is no rollback: every item is attempted, and if any of them fails the
batch raises PartialDeletionError with the per-item results (earlier
deletions stay applied).
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from services import pathguard
from services.errors import (
    AccessError,
    DirectoriesNotEmptyError,
    FileManagerError,
    InvalidNameError,
    MissingFieldError,
    NotFoundError,
    PartialDeletionError,
    from_os_error,
)


log = logging.getLogger("muttley.deletion")

KIND_FILE = "file"
KIND_DIR = "dir"
KIND_LINK = "link"


@dataclass
class PlannedItem:
    name: str
    path: str
    kind: str
    empty: bool = True


@dataclass
class DeletionPlan:
    target_dir: str
    items: List[PlannedItem] = field(default_factory=list)

    @property
    def non_empty_dirs(self) -> List[str]:
        return [i.name for i in self.items if i.kind == KIND_DIR and not i.empty]


def strip_to_basename(item: Any) -> str:
    s = str(item or "").replace("\\", "/").rstrip("/")
    return os.path.basename(s)


def _dir_is_empty(path: str) -> bool:
    with os.scandir(path) as it:
        for _ in it:
            return False
    return True


def plan(root: str, target_dir: str, items: Optional[Sequence[Any]]) -> DeletionPlan:
    """Validate phase: existence check and empty/non-empty classification."""
    if not items:
        raise MissingFieldError("items")

    batch = DeletionPlan(target_dir=target_dir)
    missing: List[str] = []
    seen = set()
    for raw in items:
        name = strip_to_basename(raw)
        if not name.strip():
            raise InvalidNameError("Invalid item name")
        path = pathguard.resolve_entry(root, target_dir, name)
        if name in seen:
            continue
        seen.add(name)
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            missing.append(name)
            continue
        except OSError as e:
            raise from_os_error(e, name) from e

        if stat.S_ISLNK(st.st_mode):
            batch.items.append(PlannedItem(name=name, path=path, kind=KIND_LINK))
        elif stat.S_ISDIR(st.st_mode):
            try:
                empty = _dir_is_empty(path)
            except OSError as e:
                raise from_os_error(e, name) from e
            batch.items.append(PlannedItem(name=name, path=path, kind=KIND_DIR, empty=empty))
        else:
            batch.items.append(PlannedItem(name=name, path=path, kind=KIND_FILE))

    if missing:
        raise NotFoundError(f"Item {missing[0]} not found", missing=missing)
    return batch


def _remove(item: PlannedItem, force: bool) -> None:
    if item.kind != KIND_DIR:
        os.unlink(item.path)
        return
    if os.path.ismount(item.path):
        raise AccessError(f"Refusing to delete mount point {item.name}")
    if force and not item.empty:
        shutil.rmtree(item.path)
    else:
        os.rmdir(item.path)


def execute(batch: DeletionPlan, *, force: bool = False) -> List[Dict[str, Any]]:
    """Execute phase. Rejects non-empty directories unless ``force``."""
    non_empty = batch.non_empty_dirs
    if non_empty and not force:
        raise DirectoriesNotEmptyError(non_empty)

    results: List[Dict[str, Any]] = []
    for item in batch.items:
        try:
            _remove(item, force)
        except FileManagerError as e:
            results.append({"name": item.name, "ok": False, "error": e.code, "message": e.message})
            continue
        except OSError as e:
            err = from_os_error(e, item.name)
            log.warning("delete failed for %s (%s)", item.name, err.message)
            results.append({"name": item.name, "ok": False, "error": err.code, "message": err.message})
            continue
        results.append({"name": item.name, "ok": True, "kind": item.kind})

    if any(not r["ok"] for r in results):
        raise PartialDeletionError(results)
    return results


def delete_items(root: str, target_dir: str, items: Optional[Sequence[Any]], *, force: bool = False) -> List[Dict[str, Any]]:
    """Validate then execute a deletion batch."""
    return execute(plan(root, target_dir, items), force=force)
