#!/usr/bin/env python3

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional

if os.name == "nt":
    import msvcrt
else:
    import fcntl


CATALOG_NAME = "index.json"


def write_json_atomic(path: Path, payload: object, indent: Optional[int] = None) -> None:
    """Write ``payload`` through a private temp file so readers never see a partial document."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=indent)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


@contextlib.contextmanager
def exclusive_lock(lock_path: Path) -> Iterator[None]:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a+b") as handle:
        if os.name == "nt":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            if os.name == "nt":
                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def catalog_sort_key(entry: Dict[str, object]) -> tuple:
    try:
        duration = float(entry.get("duration", 0.0))
    except (TypeError, ValueError):
        duration = 0.0
    try:
        neck = float(entry.get("neck", 0.0))
    except (TypeError, ValueError):
        neck = 0.0
    return (duration, neck)


class CatalogIndex:
    """Sorted listing of finished bakes, persisted as a JSON array.

    Entries are keyed by ``file``; an upsert replaces any entry with the same
    key and keeps the collection ordered by ``(duration, neck)``. Upserts from
    concurrent workers are serialised through a lock file beside the catalog.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(f".{self.path.name}.lock")

    @classmethod
    def in_directory(cls, bakes_dir: Path) -> "CatalogIndex":
        return cls(Path(bakes_dir) / CATALOG_NAME)

    def load(self) -> List[Dict[str, object]]:
        # A missing or damaged catalog reads as empty.
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return []
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, dict)]

    def save(self, entries: List[Dict[str, object]]) -> None:
        write_json_atomic(self.path, entries, indent=2)

    def upsert(self, entry: Dict[str, object]) -> List[Dict[str, object]]:
        key = entry.get("file")
        with exclusive_lock(self.lock_path):
            entries = [item for item in self.load() if item.get("file") != key]
            entries.append(dict(entry))
            entries.sort(key=catalog_sort_key)
            self.save(entries)
        return entries
