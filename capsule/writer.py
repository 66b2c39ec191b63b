from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Set

from .constants import (
    IO_BUFFER_SIZE,
    KIND_BLOB,
    KIND_RECORD_COLLECTION,
    MAX_CHUNK_PAYLOAD,
    RTYPE_ARCHIVE_END,
    RTYPE_CHUNK,
    RTYPE_ENTRY_BEGIN,
    RTYPE_ENTRY_END,
)
from .errors import ArchiveOrderError
from .hashutil import new_content_hasher
from .pathutil import norm_entry_name
from .records import (
    build_archive_end_ext,
    build_chunk_header_ext,
    build_entry_end_ext,
    write_record,
    write_stream_header,
)
from .tlv import dumps_entry


@dataclass
class EntryInfo:
    entry_id: int
    kind: int  # 0=record collection, 1=blob
    name: str
    size: int = 0
    chunk_count: int = 0
    digest32: Optional[bytes] = None


class ArchiveWriter:
    """Streaming writer for the entry container carried inside the cipher stream.

    Entries are framed as EntryBegin / Chunk* / EntryEnd records and the
    container ends with an ArchiveEnd terminator. Record collections must all
    be written before the first blob.
    """

    def __init__(self, sink: BinaryIO, chunk_size: int = IO_BUFFER_SIZE):
        if chunk_size <= 0 or chunk_size > MAX_CHUNK_PAYLOAD:
            raise ValueError(f"chunk_size must be in 1..{MAX_CHUNK_PAYLOAD}")
        self.f = sink
        self.chunk_size = chunk_size
        self.entries: List[EntryInfo] = []
        self._names: Set[str] = set()
        self._next_entry_id = 1
        self._blob_started = False
        self._opened = False
        self._closed = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self._closed = True

    def open(self):
        if self._opened:
            return
        write_stream_header(self.f)
        self._opened = True

    def close(self):
        """Write the ArchiveEnd terminator. Safe to call twice."""
        if self._closed:
            return
        self._ensure_writable()
        write_record(self.f, RTYPE_ARCHIVE_END, 0, build_archive_end_ext(len(self.entries)), b"")
        self._closed = True

    def write_record_collection(self, name: str, serialized_text: str, *, record_count: Optional[int] = None) -> EntryInfo:
        """Store one serialized record collection as a single entry."""
        self._ensure_writable()
        if self._blob_started:
            raise ArchiveOrderError(f"Record collection {name!r} written after blob entries")
        data = serialized_text.encode("utf-8")
        e = self._begin_entry(KIND_RECORD_COLLECTION, name, size=len(data), record_count=record_count)
        hasher = new_content_hasher()
        for pos in range(0, len(data), self.chunk_size):
            piece = data[pos : pos + self.chunk_size]
            hasher.update(piece)
            self._write_chunk(e, piece)
        e.size = len(data)
        e.digest32 = hasher.digest()
        self._end_entry(e)
        return e

    def write_blob(self, name: str, source: BinaryIO, buffer_size: Optional[int] = None) -> int:
        """Stream ``source`` into a blob entry until exhaustion; return bytes copied."""
        self._ensure_writable()
        bs = buffer_size or self.chunk_size
        if bs <= 0 or bs > MAX_CHUNK_PAYLOAD:
            raise ValueError(f"buffer_size must be in 1..{MAX_CHUNK_PAYLOAD}")
        self._blob_started = True
        e = self._begin_entry(KIND_BLOB, name)
        hasher = new_content_hasher()
        total = 0
        while True:
            piece = source.read(bs)
            if not piece:
                break
            hasher.update(piece)
            self._write_chunk(e, piece)
            total += len(piece)
        e.size = total
        e.digest32 = hasher.digest()
        self._end_entry(e)
        return total

    # internals
    def _ensure_writable(self):
        if not self._opened:
            raise RuntimeError("Archive not open")
        if self._closed:
            raise RuntimeError("Archive already closed")

    def _alloc_id(self) -> int:
        i = self._next_entry_id
        self._next_entry_id += 1
        return i

    def _begin_entry(self, kind: int, name: str, *, size: Optional[int] = None, record_count: Optional[int] = None) -> EntryInfo:
        arc_name = norm_entry_name(name)
        if arc_name in self._names:
            raise ValueError(f"Duplicate entry name: {arc_name}")
        self._names.add(arc_name)
        e = EntryInfo(entry_id=self._alloc_id(), kind=kind, name=arc_name)
        payload = dumps_entry(entry_id=e.entry_id, kind=kind, name=arc_name, size=size, record_count=record_count)
        write_record(self.f, RTYPE_ENTRY_BEGIN, 0, b"", payload)
        return e

    def _write_chunk(self, e: EntryInfo, piece: bytes):
        write_record(self.f, RTYPE_CHUNK, 0, build_chunk_header_ext(e.entry_id, e.chunk_count), piece)
        e.chunk_count += 1

    def _end_entry(self, e: EntryInfo):
        hdr_ext = build_entry_end_ext(e.entry_id, e.chunk_count, e.size, e.digest32 or b"\x00" * 32)
        write_record(self.f, RTYPE_ENTRY_END, 0, hdr_ext, b"")
        self.entries.append(e)


def begin_archive(sink: BinaryIO, chunk_size: int = IO_BUFFER_SIZE) -> ArchiveWriter:
    """Open an ArchiveWriter on ``sink`` (writes the stream header)."""
    w = ArchiveWriter(sink, chunk_size=chunk_size)
    w.open()
    return w
