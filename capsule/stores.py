from __future__ import annotations

"""Collaborator interfaces for the backup subsystem, plus reference stores.

The exporter reads from a ``RecordSource`` and a ``BlobSource``; the
importer writes to a ``RecordSink`` and a ``BlobSink``. Applications plug
in their own database and file storage; the in-memory and directory
stores below back the CLI and the tests.
"""

import copy
import io
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Protocol, Sequence

from .constants import COLLECTION_SUFFIX
from .pathutil import norm_blob_name


STAGING_SUFFIX = ".partial"

logger = logging.getLogger(__name__)


class RecordSource(Protocol):
    def snapshot(self, collection: str) -> List[dict]:
        """Consistent point-in-time copy of every record in ``collection``."""


class RecordSink(Protocol):
    def replace_all(self, collection: str, records: Sequence[dict]) -> None:
        """Insert each record, overwriting any existing record with the same id."""


class BlobSource(Protocol):
    def open_blob(self, name: str) -> Optional[BinaryIO]:
        """Open the blob for reading, or return None when it does not exist."""


class BlobSink(Protocol):
    def open_sink(self, name: str) -> BinaryIO:
        """Open a staging stream for ``name``; nothing is visible until commit."""

    def commit(self, name: str) -> None:
        """Publish the staged content of ``name``."""

    def discard(self, name: str) -> None:
        """Drop the staged content of ``name`` if any."""


def _upsert(existing: List[dict], records: Sequence[dict]) -> List[dict]:
    by_id: Dict[int, dict] = {r["id"]: r for r in existing}
    for rec in records:
        by_id[rec["id"]] = copy.deepcopy(dict(rec))
    return list(by_id.values())


class MemoryRecordStore:
    """Thread-safe in-memory record store keyed by collection then id."""

    def __init__(self, collections: Optional[Dict[str, Sequence[dict]]] = None):
        self._lock = threading.RLock()
        self._data: Dict[str, List[dict]] = {}
        for name, records in (collections or {}).items():
            self.replace_all(name, records)

    def snapshot(self, collection: str) -> List[dict]:
        with self._lock:
            return copy.deepcopy(self._data.get(collection, []))

    def replace_all(self, collection: str, records: Sequence[dict]) -> None:
        with self._lock:
            self._data[collection] = _upsert(self._data.get(collection, []), records)

    def collections(self) -> List[str]:
        with self._lock:
            return list(self._data)


class JsonRecordStore:
    """Record store persisted as one ``<collection>.json`` array per collection."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._lock = threading.RLock()

    def _path(self, collection: str) -> Path:
        return self.directory / (norm_blob_name(collection) + COLLECTION_SUFFIX)

    def snapshot(self, collection: str) -> List[dict]:
        path = self._path(collection)
        with self._lock:
            if not path.exists():
                return []
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        if not isinstance(data, list):
            raise ValueError(f"{path} does not contain a JSON array")
        return data

    def replace_all(self, collection: str, records: Sequence[dict]) -> None:
        path = self._path(collection)
        with self._lock:
            merged = _upsert(self.snapshot(collection), records)
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix="." + path.name, suffix=".tmp", dir=str(self.directory))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(merged, fh, ensure_ascii=False, indent=2)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        logger.debug("Wrote %d record(s) to %s", len(merged), path)


class _StagedBuffer(io.BytesIO):
    def __init__(self, store: "MemoryBlobStore", name: str):
        super().__init__()
        self._store = store
        self._name = name

    def close(self):
        if not self.closed:
            self._store._staged[self._name] = self.getvalue()
        super().close()


class MemoryBlobStore:
    def __init__(self, blobs: Optional[Dict[str, bytes]] = None):
        self.blobs: Dict[str, bytes] = dict(blobs or {})
        self._staged: Dict[str, bytes] = {}

    def open_blob(self, name: str) -> Optional[BinaryIO]:
        data = self.blobs.get(name)
        return None if data is None else io.BytesIO(data)

    def open_sink(self, name: str) -> BinaryIO:
        return _StagedBuffer(self, norm_blob_name(name))

    def commit(self, name: str) -> None:
        self.blobs[name] = self._staged.pop(name)

    def discard(self, name: str) -> None:
        self._staged.pop(name, None)


class DirectoryBlobStore:
    """Blobs stored as flat files; staged writes go to ``.<name>.partial``.

    Names ending in ``.partial`` are reserved for staging and rejected.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        name = norm_blob_name(name)
        if name.endswith(STAGING_SUFFIX):
            raise ValueError(f"Blob name is reserved for staging: {name!r}")
        return self.directory / name

    def _staging_path(self, name: str) -> Path:
        path = self.path_for(name)
        return path.with_name(f".{path.name}{STAGING_SUFFIX}")

    def names(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(
            p.name for p in self.directory.iterdir() if p.is_file() and not p.name.endswith(STAGING_SUFFIX)
        )

    def open_blob(self, name: str) -> Optional[BinaryIO]:
        try:
            return open(self.path_for(name), "rb")
        except FileNotFoundError:
            return None

    def open_sink(self, name: str) -> BinaryIO:
        self.directory.mkdir(parents=True, exist_ok=True)
        return open(self._staging_path(name), "wb")

    def commit(self, name: str) -> None:
        os.replace(self._staging_path(name), self.path_for(name))

    def discard(self, name: str) -> None:
        try:
            os.unlink(self._staging_path(name))
        except FileNotFoundError:
            pass
